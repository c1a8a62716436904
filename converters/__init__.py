"""Converters package for Confluence storage format to Markdown conversion.

Package Structure:
- macro_preprocessor: text-level rewriting of ``ac:`` macros into plain HTML
- link_processor: ``ac:link`` forms to anchors
- markdown_converter: markdownify rule table and the ``MarkdownConverter`` facade
- html_cleaner: cleanup of tables kept as raw HTML
- wikijs_formatter: final rewrite into Wiki.js markdown
- filenames: file name sanitizing shared with the image pipeline
"""

import logging

from .html_cleaner import HtmlCleaner
from .macro_preprocessor import MacroPreprocessor
from .markdown_converter import MarkdownConverter
from .wikijs_formatter import to_wikijs_markdown

logger = logging.getLogger('confluence_exporter.converters')


def convert_page(page, preserve_html_tables=False, config=None, logger=None):
    """
    Convenience function to convert a ConfluencePage to Markdown.

    Args:
        page: ConfluencePage with the storage format body
        preserve_html_tables: Keep tables as cleaned HTML
        config: Optional configuration dictionary for converter behavior
        logger: Optional logger instance (uses module logger if not provided)

    Returns:
        str: Markdown text

    Example:
        >>> from converters import convert_page
        >>> from models import ConfluencePage
        >>> page = ConfluencePage(id='123', title='Test', body_storage='<p>Hello</p>')
        >>> convert_page(page)
        'Hello\\n'
    """
    if logger is None:
        logger = logging.getLogger('confluence_exporter.converters')

    converter = MarkdownConverter(logger=logger, config=config)
    return converter.convert_page(page, preserve_html_tables)


__all__ = [
    'convert_page',
    'MarkdownConverter',
    'MacroPreprocessor',
    'HtmlCleaner',
    'to_wikijs_markdown'
]
