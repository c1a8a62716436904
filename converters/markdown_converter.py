"""Markdown converter for Confluence storage format content.

The conversion runs in two clearly separated phases: a text-level macro
pre-pass (``MacroPreprocessor``) followed by a DOM based conversion done by
markdownify subclasses whose ``convert_<tag>`` methods form the custom rule
table.
"""

import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, Comment, Tag
from markdownify import MarkdownConverter as MarkdownifyConverter

from config_loader import get_nested
from models import ConversionOptions, ConfluencePage, TableCell, DEFAULT_FENCE
from .filenames import extract_filename_from_url, is_attachment_url, sanitize_filename
from .html_cleaner import HtmlCleaner
from .macro_preprocessor import MacroPreprocessor

logger = logging.getLogger('confluence_exporter.converters.markdownconverter')

COMMENT_MARKER_ATTR = 'data-confluence-comment'
ADMONITION_CLASS_PREFIX = 'confluence-macro-'
GALLERY_CLASS = 'confluence-gallery'

HEADING_STYLES = {
    'atx': 'atx',
    'atx_closed': 'atx_closed',
    'setext': 'underlined',
    'underlined': 'underlined',
}

_BACKGROUND_COLOR = re.compile(r'background-color:\s*([^;]+)', re.IGNORECASE)
_RGB = re.compile(r'rgb\((\d+),\s*(\d+),\s*(\d+)\)', re.IGNORECASE)
_NON_ALNUM = re.compile(r'[^a-zA-Z0-9]')
_WHITESPACE = re.compile(r'\s+')
_EXCESS_NEWLINES = re.compile(r'\n{3,}')
_MARKDOWN_IMAGE = re.compile(r'!\[([^\]]*)\]\(([^)]+)\)')


def get_color_name(r: int, g: int, b: int) -> Optional[str]:
    """Map an RGB triple onto one of the common Confluence status colours."""
    if r >= 220 and g >= 240 and b >= 200:
        return 'success'
    if r >= 250 and g >= 240 and b >= 160:
        return 'warning'
    if r >= 250 and g >= 230 and b >= 220:
        return 'error'
    if r >= 240 and g >= 240 and b >= 240:
        return 'neutral'
    if r >= 220 and g >= 240 and b >= 250:
        return 'info'
    return None


def background_color_annotation(style: str) -> Optional[str]:
    """
    Build the ``{.name}`` token for a cell's ``background-color``.

    Returns the semantic colour name, ``color-R-G-B`` for unrecognized RGB
    values, ``bg-<token>`` for non-RGB colours, or None without a background.
    """
    match = _BACKGROUND_COLOR.search(style or '')
    if not match:
        return None

    color = match.group(1).strip()
    rgb = _RGB.search(color)
    if rgb:
        r, g, b = (int(value) for value in rgb.groups())
        return get_color_name(r, g, b) or f"color-{r}-{g}-{b}"
    return f"bg-{_NON_ALNUM.sub('-', color)}"


def preserve_comments(soup: BeautifulSoup) -> None:
    """Swap comment nodes for marker spans so they survive markdown conversion."""
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        marker = soup.new_tag('span', attrs={COMMENT_MARKER_ATTR: str(comment)})
        comment.replace_with(marker)


def restore_comments(element: Tag) -> None:
    for marker in element.find_all('span', attrs={COMMENT_MARKER_ATTR: True}):
        marker.replace_with(Comment(marker[COMMENT_MARKER_ATTR]))


class ConfluenceMarkdownify(MarkdownifyConverter):
    """
    markdownify converter carrying the Confluence rule table.

    Rules are the ``convert_<tag>`` methods; markdownify dispatches on tag
    name and each method decides on the node's shape (classes, children).
    """

    def __init__(self, fence: str = DEFAULT_FENCE, code_style: str = 'fenced', **kwargs):
        markdownify_options = {
            'heading_style': 'atx',
            'bullets': '-',
            'escape_asterisks': False,
            'escape_underscores': False,
        }
        markdownify_options.update(kwargs)
        super().__init__(**markdownify_options)
        self.fence = fence
        self.code_style = code_style

    # Code blocks

    def convert_pre(self, el, text, parent_tags=None, **kwargs):
        language = ''
        code = el.find('code')
        if code is not None:
            for cls in code.get('class', []):
                if cls.startswith('language-'):
                    language = cls[len('language-'):]
                    break

        content = el.get_text().strip('\n')
        if self.code_style == 'indented':
            indented = '\n'.join(f"    {line}" if line else '' for line in content.split('\n'))
            return f"\n\n{indented}\n\n"
        return f"\n\n{self.fence}{language}\n{content}\n{self.fence}\n\n"

    # Tables

    def convert_table(self, el, text, parent_tags=None, **kwargs):
        rows = [line.strip() for line in text.split('\n') if line.strip()]
        return '\n\n' + '\n'.join(rows) + '\n\n'

    def convert_th(self, el, text, parent_tags=None, **kwargs):
        return text.strip() + ' |'

    def convert_td(self, el, text, parent_tags=None, **kwargs):
        return text.strip() + ' |'

    def convert_thead(self, el, text, parent_tags=None, **kwargs):
        return text

    convert_tbody = convert_thead
    convert_tfoot = convert_thead

    def convert_tr(self, el, text, parent_tags=None, **kwargs):
        # Rebuilt from the DOM so cell styles can be inspected.
        cells = [self._table_cell(cell) for cell in el.find_all(['th', 'td'], recursive=False)]
        if not cells:
            return ''

        row = '| ' + ' | '.join(cell.render() for cell in cells) + ' |'
        if el.find('th', recursive=False) is not None and self._is_first_row(el):
            row += '\n| ' + ' | '.join(['---'] * len(cells)) + ' |'
        return row + '\n'

    @staticmethod
    def _table_cell(cell: Tag) -> TableCell:
        text = _WHITESPACE.sub(' ', cell.get_text()).strip().replace('|', '\\|')
        return TableCell(text=text, background_color_annotation=background_color_annotation(cell.get('style', '')))

    @staticmethod
    def _is_first_row(row: Tag) -> bool:
        table = row.find_parent('table')
        return table is not None and table.find('tr') is row

    # Images

    def convert_img(self, el, text, parent_tags=None, **kwargs):
        alt = el.get('alt', '')
        src = el.get('src', '')
        title = f' "{el["title"]}"' if el.get('title') else ''

        if is_attachment_url(src):
            filename = extract_filename_from_url(src) or 'unknown'
            return f"\n![{alt}]({src}{title})\n<!-- Confluence Attachment: {filename} -->\n"

        attrs = [f'{name}="{el[name]}"' for name in ('width', 'height', 'border') if el.get(name)]
        if attrs:
            return f"\n![{alt}]({src}{title})\n<!-- Image attributes: {', '.join(attrs)} -->\n"
        return f"\n![{alt}]({src}{title})\n"

    # Macros

    def convert_div(self, el, text, parent_tags=None, **kwargs):
        classes = el.get('class', [])
        for cls in classes:
            if cls.startswith(ADMONITION_CLASS_PREFIX):
                name = cls[len(ADMONITION_CLASS_PREFIX):]
                return f"\n\n<!-- Confluence Macro: {name} -->\n{text.strip()}\n<!-- End {name} -->\n\n"

        if GALLERY_CLASS in classes or el.get('ac:name') == 'gallery':
            return f"\n\n<!-- Confluence Gallery -->\n{text.strip()}\n<!-- End Gallery -->\n\n"

        text = text.strip()
        return f"\n\n{text}\n\n" if text else ''

    def convert_span(self, el, text, parent_tags=None, **kwargs):
        if el.has_attr(COMMENT_MARKER_ATTR):
            return f"<!--{el[COMMENT_MARKER_ATTR]}-->"
        return text


class HtmlTableMarkdownify(ConfluenceMarkdownify):
    """Converter variant that keeps tables as cleaned HTML."""

    def __init__(self, html_cleaner: Optional[HtmlCleaner] = None, **kwargs):
        super().__init__(**kwargs)
        self.html_cleaner = html_cleaner or HtmlCleaner()

    def convert_table(self, el, text, parent_tags=None, **kwargs):
        table = BeautifulSoup(str(el), 'lxml').find('table')
        restore_comments(table)
        return '\n\n' + self.html_cleaner.clean_table_html(str(table)) + '\n\n'

    # Section, row and cell output is discarded by convert_table.

    def convert_tr(self, el, text, parent_tags=None, **kwargs):
        return text

    convert_th = convert_tr
    convert_td = convert_tr
    convert_thead = convert_tr
    convert_tbody = convert_tr
    convert_tfoot = convert_tr


class MarkdownConverter:
    """
    Converts Confluence storage format into Markdown.

    Two engine instances are built once, one per table mode, and treated as
    read-only afterwards.
    """

    def __init__(self, logger: logging.Logger = None, config: Dict[str, Any] = None, fence: Optional[str] = None):
        """Initialize markdown converter; the fence defaults to ``export.fence`` from the configuration."""
        self.logger = logger or logging.getLogger('confluence_exporter.converters.markdownconverter')
        self.config = config or {}
        self.fence = fence or get_nested(self.config, 'export.fence', DEFAULT_FENCE)

        self.preprocessor = MacroPreprocessor(self.logger)
        self.html_cleaner = HtmlCleaner(self.logger)
        self.engine = ConfluenceMarkdownify(fence=self.fence)
        self.html_table_engine = HtmlTableMarkdownify(html_cleaner=self.html_cleaner, fence=self.fence)

    def convert(self, markup: str, options: Optional[ConversionOptions] = None) -> str:
        """
        Convert storage format markup to Markdown.

        Args:
            markup: Raw storage format
            options: Table mode and page identity

        Returns:
            Markdown text
        """
        options = options or ConversionOptions()
        return self.convert_html(self.preprocessor.preprocess(markup, options.page_id), options)

    def convert_html(self, html: str, options: Optional[ConversionOptions] = None) -> str:
        """Run only the rewrite engine, for HTML that needs no macro pre-pass."""
        return self._run_engine(self._engine_for(options or ConversionOptions()), html)

    def _engine_for(self, options: ConversionOptions) -> ConfluenceMarkdownify:
        fence = options.fence or self.fence
        custom_style = (
            fence != self.fence
            or options.heading_style.lower() != 'atx'
            or options.bullets != '-'
        )
        if not custom_style:
            return self.html_table_engine if options.preserve_html_tables else self.engine
        return self._build_engine(
            preserve_html_tables=options.preserve_html_tables,
            heading_style=options.heading_style,
            bullets=options.bullets,
            fence=fence
        )

    def _build_engine(
        self,
        preserve_html_tables: bool = False,
        heading_style: str = 'atx',
        bullets: str = '-',
        code_style: str = 'fenced',
        fence: str = DEFAULT_FENCE
    ) -> ConfluenceMarkdownify:
        engine_options = {
            'heading_style': HEADING_STYLES.get(heading_style.lower(), 'atx'),
            'bullets': bullets,
            'fence': fence,
            'code_style': code_style,
        }
        if preserve_html_tables:
            return HtmlTableMarkdownify(html_cleaner=self.html_cleaner, **engine_options)
        return ConfluenceMarkdownify(**engine_options)

    def convert_page(self, page: ConfluencePage, preserve_html_tables: bool = False) -> str:
        self.logger.info(f"Converting page {page.id} ({page.title}) to markdown")
        return self.convert(page.body_storage, ConversionOptions(
            preserve_html_tables=preserve_html_tables,
            page_id=page.id
        ))

    def test_conversion(
        self,
        markup: str,
        heading_style: str = 'atx',
        bullets: str = '-',
        code_style: str = 'fenced',
        fence: Optional[str] = None,
        preserve_html_tables: bool = False
    ) -> str:
        """Convert with a one-off engine using custom style options."""
        engine = self._build_engine(
            preserve_html_tables=preserve_html_tables,
            heading_style=heading_style,
            bullets=bullets,
            code_style=code_style,
            fence=fence or self.fence
        )
        return self._run_engine(engine, self.preprocessor.preprocess(markup))

    def _run_engine(self, engine: ConfluenceMarkdownify, html: str) -> str:
        soup = BeautifulSoup(html, 'lxml')
        preserve_comments(soup)
        markdown = engine.convert(str(soup))
        return _EXCESS_NEWLINES.sub('\n\n', markdown).strip() + '\n'

    @staticmethod
    def convert_image_urls(markdown: str, base_url: str) -> str:
        """Prefix relative ``/download/...`` image URLs with the Confluence base URL."""
        base_url = base_url.rstrip('/')

        def absolutize(match: re.Match) -> str:
            alt, url = match.group(1), match.group(2)
            if url.startswith('/download/'):
                return f"![{alt}]({base_url}{url})"
            return match.group(0)

        return _MARKDOWN_IMAGE.sub(absolutize, markdown)

    @staticmethod
    def create_metadata_header(page: ConfluencePage, created: Optional[datetime] = None) -> str:
        """Build the YAML front matter block placed at the top of exported files."""
        created = created or datetime.now(timezone.utc)
        lines: List[str] = [
            '---',
            f'title: "{_quote(page.title)}"',
            f'id: "{_quote(page.id)}"',
            f'confluence_url: "{_quote(page.webui_path)}"',
            f'created: "{created.isoformat()}"',
            '---',
        ]
        return '\n'.join(lines)

    def convert_page_to_file(
        self,
        page: ConfluencePage,
        output_dir: Path,
        base_url: Optional[str] = None,
        options: Optional[ConversionOptions] = None
    ) -> Path:
        """
        Convert a page and write ``{sanitized title}.md`` into ``output_dir``.

        Returns:
            Path of the written file
        """
        options = options or ConversionOptions()
        markdown = self.convert(page.body_storage, replace(options, page_id=page.id))
        if base_url:
            markdown = self.convert_image_urls(markdown, base_url)

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        file_path = output_dir / f"{sanitize_filename(page.title) or page.id}.md"
        file_path.write_text(f"{self.create_metadata_header(page)}\n\n{markdown}", encoding='utf-8')
        self.logger.debug(f"Wrote {file_path}")
        return file_path


def _quote(value: Optional[str]) -> str:
    return (value or '').replace('\\', '\\\\').replace('"', '\\"')
