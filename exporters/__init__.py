"""Markdown export package.

Package Structure:
- markdown_exporter: writes converted pages (single page, whole space, saved HTML) to disk
- image_processor: downloads attachment images and rewrites their references,
  keeping them locally or handing them to Wiki.js

Configuration Referenced:
- export.output_directory: Base output path for exported files
- export.download_images: Fetch attachment images into ``images/``
- export.html_tables: Keep tables as HTML
- export.save_raw_html: Store the storage-format body next to each file
"""

from .image_processor import ImageProcessor, LocalAssetSink, WikiJsAssetSink
from .markdown_exporter import MarkdownExporter

__all__ = [
    'MarkdownExporter',
    'ImageProcessor',
    'LocalAssetSink',
    'WikiJsAssetSink'
]
