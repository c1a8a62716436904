"""Normalization of Confluence ``ac:link`` macros into plain HTML anchors."""

import logging
import re
from typing import Callable, List, Optional, Tuple
from urllib.parse import quote

logger = logging.getLogger('confluence_exporter.converters.linkprocessor')

_FLAGS = re.IGNORECASE

_SPACE_REF = r'<ri:space\s+ri:space-key="([^"]+)"'
_PAGE_REF = r'<ri:page\s+(?:ri:space-key="([^"]+)"\s+)?ri:content-title="([^"]+)"'
_CDATA_BODY = r'<ac:plain-text-link-body>\s*<!\[CDATA\[(.*?)\]\]>\s*</ac:plain-text-link-body>'
_EMPTY_BODY = r'<ac:plain-text-link-body>\s*</ac:plain-text-link-body>'

SPACE_WITH_CDATA = re.compile(rf'<ac:link>\s*{_SPACE_REF}\s*/>\s*{_CDATA_BODY}\s*</ac:link>', _FLAGS)
PAGE_WITH_CDATA = re.compile(rf'<ac:link>\s*{_PAGE_REF}\s*/>\s*{_CDATA_BODY}\s*</ac:link>', _FLAGS)
SPACE_EMPTY_BODY = re.compile(rf'<ac:link>\s*{_SPACE_REF}\s*/>\s*{_EMPTY_BODY}\s*</ac:link>', _FLAGS)
PAGE_EMPTY_BODY = re.compile(rf'<ac:link>\s*{_PAGE_REF}\s*/>\s*{_EMPTY_BODY}\s*</ac:link>', _FLAGS)
LEGACY_SPACE = re.compile(
    rf'<ac:link>\s*{_SPACE_REF}\s*(?:ri:content-title="([^"]*)")?\s*>\s*{_CDATA_BODY}\s*</ri:space>\s*</ac:link>',
    _FLAGS
)
LEGACY_PAGE = re.compile(rf'<ac:link>\s*{_PAGE_REF}\s*>\s*{_CDATA_BODY}\s*</ri:page>\s*</ac:link>', _FLAGS)
MINIMAL_PAGE = re.compile(rf'<ac:link>\s*{_PAGE_REF}\s*/>\s*</ac:link>', _FLAGS)
MINIMAL_SPACE = re.compile(rf'<ac:link>\s*{_SPACE_REF}\s*/>\s*</ac:link>', _FLAGS)
ANY_LINK = re.compile(r'<ac:link[^>]*>([\s\S]*?)</ac:link>', _FLAGS)

_CATCH_ALL_CDATA = re.compile(
    r'<ac:plain-text-link-body[^>]*>\s*<!\[CDATA\[(.*?)\]\]>\s*</ac:plain-text-link-body>', _FLAGS
)
_CATCH_ALL_TEXT = re.compile(r'<ac:plain-text-link-body[^>]*>(.*?)</ac:plain-text-link-body>', _FLAGS)
_CATCH_ALL_RICH = re.compile(r'<ac:link-body[^>]*>([\s\S]*?)</ac:link-body>', _FLAGS)
_CONTENT_TITLE = re.compile(r'ri:content-title="([^"]+)"')
_SPACE_KEY = re.compile(r'ri:space-key="([^"]+)"')
_ATTACHMENT_NAME = re.compile(r'ri:filename="([^"]+)"')
_TAGS = re.compile(r'<[^>]+>')

UNPROCESSED_LINK_COMMENT = '<!-- Unprocessed Confluence Link -->'


def space_href(space_key: str) -> str:
    return f"/spaces/{space_key}"


def page_href(title: str, space_key: Optional[str] = None) -> str:
    """Build the href of a page link, percent-encoding the title."""
    encoded = quote(title, safe='')
    if space_key:
        return f"/spaces/{space_key}/pages/{encoded}"
    return f"/pages/{encoded}"


def _anchor(href: str, text: str) -> str:
    return f'<a href="{href}">{text}</a>'


def _space_with_text(match: re.Match) -> str:
    space_key, link_text = match.group(1), match.group(2)
    return _anchor(space_href(space_key), link_text.strip() or space_key)


def _page_with_text(match: re.Match) -> str:
    space_key, title, link_text = match.group(1), match.group(2), match.group(3)
    return _anchor(page_href(title, space_key), link_text.strip() or title)


def _space_only(match: re.Match) -> str:
    space_key = match.group(1)
    return _anchor(space_href(space_key), space_key)


def _page_only(match: re.Match) -> str:
    space_key, title = match.group(1), match.group(2)
    return _anchor(page_href(title, space_key), title)


def _legacy_space(match: re.Match) -> str:
    space_key, title, link_text = match.group(1), match.group(2), match.group(3)
    return _anchor(space_href(space_key), link_text.strip() or title or space_key)


def _unmatched_link(match: re.Match) -> str:
    content = match.group(1)
    logger.debug(f"Falling back to text for unrecognized link: {match.group(0)[:200]}")

    text = ''
    cdata = _CATCH_ALL_CDATA.search(content)
    if cdata:
        text = cdata.group(1).strip()
    else:
        plain = _CATCH_ALL_TEXT.search(content) or _CATCH_ALL_RICH.search(content)
        if plain:
            text = _TAGS.sub('', plain.group(1)).strip()

    if not text:
        for pattern in (_CONTENT_TITLE, _SPACE_KEY, _ATTACHMENT_NAME):
            found = pattern.search(content)
            if found:
                text = found.group(1)
                break

    if not text:
        if not content.strip():
            return UNPROCESSED_LINK_COMMENT
        text = 'Link'
    return text


# Precedence matters: each form is a subset or superset of a later one.
LINK_RULES: List[Tuple[re.Pattern, Callable[[re.Match], str]]] = [
    (SPACE_WITH_CDATA, _space_with_text),
    (PAGE_WITH_CDATA, _page_with_text),
    (SPACE_EMPTY_BODY, _space_only),
    (PAGE_EMPTY_BODY, _page_only),
    (LEGACY_SPACE, _legacy_space),
    (LEGACY_PAGE, _page_with_text),
    (MINIMAL_PAGE, _page_only),
    (MINIMAL_SPACE, _space_only),
    (ANY_LINK, _unmatched_link),
]


def process_confluence_links(html: str) -> str:
    """
    Rewrite every ``ac:link`` macro into an ``<a href>`` (or bare text).

    Args:
        html: Storage format markup

    Returns:
        Markup with no ``ac:link`` elements left
    """
    for pattern, handler in LINK_RULES:
        html = pattern.sub(handler, html)
    return html


__all__ = ['process_confluence_links', 'page_href', 'space_href', 'UNPROCESSED_LINK_COMMENT']
