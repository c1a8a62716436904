"""HTML cleaner for tables kept as raw HTML in the markdown output."""

import html
import logging
import re
from typing import List

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger('confluence_exporter.converters.htmlcleaner')

TABLE_SECTIONS = ('thead', 'tbody', 'tfoot')
CELL_TAGS = ('th', 'td')

DEFAULT_TABLE_STYLE = 'border-collapse: collapse; width: 100%;'
DEFAULT_TH_STYLE = 'border: 1px solid #ddd; padding: 8px; background-color: #f5f5f5; font-weight: bold;'
DEFAULT_TD_STYLE = 'border: 1px solid #ddd; padding: 8px;'

_HIGHLIGHT_CLASS = re.compile(r'^highlight-([#\w]+)$')
_WHITESPACE = re.compile(r'\s+')


class HtmlCleaner:
    """Strips Confluence markup from tables and lays them out with fixed indentation."""

    def __init__(self, logger: logging.Logger = None):
        """Initialize HTML cleaner with optional logger."""
        self.logger = logger or logging.getLogger('confluence_exporter.converters.htmlcleaner')

    def clean_table_html(self, table_html: str) -> str:
        """
        Clean a single ``<table>`` and return it as indented HTML.

        Highlight classes and ``data-highlight-colour`` attributes become inline
        ``background-color`` styles, Confluence classes are dropped and, when the
        table carries no styling at all, a minimal border/padding style is added.

        Args:
            table_html: Outer HTML of the table

        Returns:
            Cleaned, indented table HTML
        """
        soup = BeautifulSoup(table_html, 'lxml')
        table = soup.find('table')
        if table is None:
            self.logger.debug("No table element found, returning input unchanged")
            return table_html

        self.convert_confluence_highlights(table)
        self._strip_confluence_classes(table)

        if not self._has_styles(table):
            self._apply_default_styles(table)

        return '\n'.join(self._format_table(table))

    def convert_confluence_highlights(self, table: Tag) -> None:
        """Turn highlight classes/data attributes on cells into inline background colours."""
        for cell in table.find_all(CELL_TAGS):
            color = None
            for cls in cell.get('class', []):
                match = _HIGHLIGHT_CLASS.match(cls)
                if match:
                    color = match.group(1)
                    if not color.startswith('#'):
                        color = '#' + color

            if cell.get('data-highlight-colour'):
                color = cell['data-highlight-colour']

            if not color:
                continue

            style = cell.get('style', '').strip()
            if 'background-color' not in style:
                if style and not style.endswith(';'):
                    style += ';'
                cell['style'] = f"{style} background-color: {color};".strip()
            if cell.has_attr('data-highlight-colour'):
                del cell['data-highlight-colour']

    def _strip_confluence_classes(self, table: Tag) -> None:
        for element in [table] + table.find_all(True):
            if element.has_attr('data-highlight-colour'):
                del element['data-highlight-colour']
            if not element.has_attr('class'):
                continue
            kept = [
                cls for cls in element['class']
                if 'confluence' not in cls.lower() and not cls.startswith('highlight-')
            ]
            if kept:
                element['class'] = kept
            else:
                del element['class']

    @staticmethod
    def _has_styles(table: Tag) -> bool:
        if table.has_attr('style') or table.find('style'):
            return True
        return table.find(style=True) is not None

    @staticmethod
    def _apply_default_styles(table: Tag) -> None:
        table['style'] = DEFAULT_TABLE_STYLE
        for cell in table.find_all(CELL_TAGS):
            cell['style'] = DEFAULT_TH_STYLE if cell.name == 'th' else DEFAULT_TD_STYLE

    def _format_table(self, table: Tag) -> List[str]:
        lines = [f"<table{self._format_attrs(table)}>"]
        for child in table.children:
            if not isinstance(child, Tag):
                continue
            if child.name in TABLE_SECTIONS:
                lines.append(f"<{child.name}{self._format_attrs(child)}>")
                for row in child.find_all('tr', recursive=False):
                    lines.extend(self._format_row(row))
                lines.append(f"</{child.name}>")
            elif child.name == 'tr':
                lines.extend(self._format_row(child))
            else:
                lines.append(self._collapse(str(child)))
        lines.append("</table>")
        return lines

    def _format_row(self, row: Tag) -> List[str]:
        lines = [f"  <tr{self._format_attrs(row)}>"]
        for cell in row.find_all(CELL_TAGS, recursive=False):
            inner = self._collapse(cell.decode_contents())
            lines.append(f"    <{cell.name}{self._format_attrs(cell)}>{inner}</{cell.name}>")
        lines.append("  </tr>")
        return lines

    @staticmethod
    def _format_attrs(element: Tag) -> str:
        parts = []
        for name, value in element.attrs.items():
            if isinstance(value, list):
                value = ' '.join(value)
            parts.append(f' {name}="{html.escape(str(value), quote=True)}"')
        return ''.join(parts)

    @staticmethod
    def _collapse(text: str) -> str:
        return _WHITESPACE.sub(' ', text).strip()
