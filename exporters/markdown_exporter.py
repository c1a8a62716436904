"""Export Confluence pages to local markdown files."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from config_loader import get_nested
from converters.filenames import sanitize_filename
from converters.markdown_converter import MarkdownConverter
from logger import ProgressTracker
from models import BatchResult, ConfluencePage, ConversionOptions, ImageProcessingResult
from .image_processor import ImageProcessor

IMAGES_DIRNAME = 'images'
WITH_IMAGES_SUFFIX = '_with_images'


def image_reference_prefix(images_dir: Path, markdown_dir: Path) -> str:
    """Path of ``images_dir`` as written in a markdown file stored in ``markdown_dir``."""
    relative = Path(os.path.relpath(Path(images_dir).resolve(), Path(markdown_dir).resolve())).as_posix()
    if relative.startswith('..'):
        return relative
    return f"./{relative}"


class MarkdownExporter:
    """
    Writes converted Confluence pages to disk.

    Each page becomes ``{title}.md`` with a YAML front matter block. With
    ``download_images`` the attachment images are fetched into an ``images``
    directory next to the file and the references rewritten to point there.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        confluence_client=None,
        converter: Optional[MarkdownConverter] = None,
        image_processor: Optional[ImageProcessor] = None,
        logger: Optional[logging.Logger] = None,
        output_dir: Optional[str] = None
    ):
        """
        Initialize the markdown exporter.

        Args:
            config: Configuration dictionary with export settings
            confluence_client: Client used to fetch pages (space and page exports only)
            converter: Markdown converter (built from config when omitted)
            image_processor: Image pipeline (built from the client when omitted)
            logger: Logger instance
            output_dir: Optional output directory override (takes precedence over config)
        """
        self.config = config
        self.client = confluence_client
        self.logger = logger or logging.getLogger('confluence_exporter.exporters.markdown_exporter')

        self.output_directory = Path(output_dir or get_nested(config, 'export.output_directory', './exports'))
        self.download_images = get_nested(config, 'export.download_images', False)
        self.html_tables = get_nested(config, 'export.html_tables', False)
        self.save_raw_html = get_nested(config, 'export.save_raw_html', False)
        self.progress_bars = get_nested(config, 'export.progress_bars', True)

        self.converter = converter or MarkdownConverter(logger=self.logger, config=config)
        self._image_processor = image_processor

    @property
    def base_url(self) -> Optional[str]:
        if self.client is not None:
            return self.client.base_url
        return get_nested(self.config, 'confluence.base_url')

    @property
    def image_processor(self) -> ImageProcessor:
        if self._image_processor is None:
            if self.client is not None:
                self._image_processor = ImageProcessor(
                    self.client.base_url,
                    self.client.auth_header,
                    verify_ssl=self.client.verify_ssl,
                    timeout=self.client.timeout,
                    logger=self.logger
                )
            else:
                self._image_processor = ImageProcessor(
                    self.base_url or '',
                    verify_ssl=get_nested(self.config, 'confluence.verify_ssl', True),
                    timeout=get_nested(self.config, 'advanced.request_timeout', 30),
                    logger=self.logger
                )
        return self._image_processor

    def export_page(self, page: ConfluencePage, output_dir: Optional[Path] = None) -> Path:
        """
        Convert a single page and write it to ``output_dir``.

        Errors propagate to the caller.

        Returns:
            Path of the written markdown file
        """
        output_dir = Path(output_dir or self.output_directory)
        options = ConversionOptions(preserve_html_tables=self.html_tables, page_id=page.id)

        file_path = self.converter.convert_page_to_file(page, output_dir, self.base_url, options)
        self.logger.info(f"Saved '{page.title}' to {file_path}")

        if self.save_raw_html:
            raw_path = file_path.with_suffix('.html')
            raw_path.write_text(page.body_storage, encoding='utf-8')
            self.logger.debug(f"Saved raw storage format to {raw_path}")

        if self.download_images:
            self._localize_images(file_path, file_path.parent / IMAGES_DIRNAME)

        return file_path

    def export_space(self, space_key: str, preserve_hierarchy: bool = False) -> BatchResult:
        """
        Export every page of a space into ``{output}/{space_key}``.

        A failing page is logged and counted; the remaining pages are still exported.

        Args:
            space_key: Confluence space key
            preserve_hierarchy: Nest files in directories named after their ancestors

        Returns:
            BatchResult tally
        """
        if self.client is None:
            raise ValueError("A Confluence client is required to export a space")

        space_dir = self.output_directory / space_key
        space_dir.mkdir(parents=True, exist_ok=True)

        pages = self.client.get_all_pages_from_space(space_key)
        self.logger.info(f"Exporting {len(pages)} pages from space '{space_key}' to {space_dir}")

        result = BatchResult()
        with ProgressTracker(total_items=len(pages), item_type='pages') as tracker:
            for page in tqdm(pages, desc=f"Exporting {space_key}", unit="page", disable=not self.progress_bars):
                target_dir = self._page_directory(space_dir, page) if preserve_hierarchy else space_dir
                try:
                    self.export_page(page, target_dir)
                    result.succeeded += 1
                    tracker.increment(success=True)
                except Exception as e:
                    self.logger.error(f"Error converting page '{page.title}': {e}", exc_info=True)
                    result.record_failure(page.title, e)
                    tracker.increment(success=False)

        return result

    def convert_html_file(
        self,
        input_path: Path,
        output_path: Optional[Path] = None,
        title: Optional[str] = None,
        preserve_html_tables: Optional[bool] = None
    ) -> Path:
        """
        Convert a saved storage-format/HTML file to markdown.

        Writes next to the input (``.md`` suffix) unless ``output_path`` is given.
        A front matter block is added when a title is given.
        """
        input_path = Path(input_path)
        html = input_path.read_text(encoding='utf-8')
        if preserve_html_tables is None:
            preserve_html_tables = self.html_tables

        markdown = self.converter.convert(html, ConversionOptions(preserve_html_tables=preserve_html_tables))
        if title:
            page = ConfluencePage(id='', title=title, body_storage=html)
            markdown = f"{self.converter.create_metadata_header(page)}\n\n{markdown}"

        output_path = Path(output_path) if output_path else input_path.with_suffix('.md')
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(markdown, encoding='utf-8')
        self.logger.info(f"Converted {input_path} -> {output_path}")
        return output_path

    def download_images_for_file(
        self,
        input_path: Path,
        images_dir: Optional[Path] = None,
        update: bool = False
    ) -> ImageProcessingResult:
        """
        Download the attachment images referenced by an exported markdown file.

        The rewritten markdown replaces the input when ``update`` is set and is
        written to ``{stem}_with_images.md`` otherwise.
        """
        input_path = Path(input_path)
        images_dir = Path(images_dir) if images_dir else input_path.parent / IMAGES_DIRNAME
        output_path = input_path if update else input_path.with_name(f"{input_path.stem}{WITH_IMAGES_SUFFIX}.md")
        return self._localize_images(input_path, images_dir, output_path)

    def _localize_images(
        self,
        file_path: Path,
        images_dir: Path,
        output_path: Optional[Path] = None
    ) -> ImageProcessingResult:
        output_path = output_path or file_path
        markdown = file_path.read_text(encoding='utf-8')
        result = self.image_processor.download_and_update_images(
            markdown, images_dir, image_reference_prefix(images_dir, output_path.parent)
        )
        output_path.write_text(result.markdown, encoding='utf-8')
        self.logger.info(
            f"Downloaded {result.download_count} images for {file_path.name}"
            + (f" ({len(result.failed)} failed)" if result.failed else "")
        )
        return result

    @staticmethod
    def _page_directory(space_dir: Path, page: ConfluencePage) -> Path:
        segments: List[str] = [sanitize_filename(title) for title in page.ancestor_titles]
        return space_dir.joinpath(*[segment for segment in segments if segment])
