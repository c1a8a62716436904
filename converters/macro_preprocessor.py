"""Text-level rewriting of Confluence storage format macros into plain HTML.

Each pass is a pure ``str -> str`` function handling one macro family. The
passes run in a fixed order because later ones rely on the earlier ones
having normalized their input (table macros must be unwrapped before the
generic macro pass would swallow them).
"""

import html
import logging
import re
from typing import Optional
from urllib.parse import quote

from .link_processor import process_confluence_links

logger = logging.getLogger('confluence_exporter.converters.macropreprocessor')

ADMONITION_MACROS = ('info', 'warning', 'note', 'tip')
PAGE_ID_PLACEHOLDER = 'PAGE_ID'
MAX_NESTING_PASSES = 20

_FLAGS = re.IGNORECASE

# Tables
TABLE_MACRO = re.compile(
    r'<ac:structured-macro\b[^>]*?\bac:name="table"[^>]*>([\s\S]*?)</ac:structured-macro>', _FLAGS
)
RICH_TEXT_BODY = re.compile(r'<ac:rich-text-body>([\s\S]*?)</ac:rich-text-body>', _FLAGS)
CELL_CLASS = re.compile(r'<(th|td)([^>]*?)class="[^"]*confluenceT[hd][^"]*"([^>]*?)>', _FLAGS)
EMPTY_CELL = re.compile(r'<(th|td)([^>]*?)>\s*</\1>', _FLAGS)
EMPTY_TABLE = re.compile(r'<table([^>]*?)>\s*<tbody>\s*</tbody>\s*</table>', _FLAGS)
SIMPLE_CELL = re.compile(r'<(th|td)([^>]*?)>\s*([^<]*?)\s*</\1>', _FLAGS)

# Code / noformat
CODE_MACRO = re.compile(
    r'<ac:structured-macro\b[^>]*?\bac:name="(code|noformat)"[^>]*>([\s\S]*?)</ac:structured-macro>', _FLAGS
)
LANGUAGE_PARAM = re.compile(r'<ac:parameter\s+ac:name="language"[^>]*>([^<]*)</ac:parameter>', _FLAGS)
PLAIN_TEXT_BODY = re.compile(
    r'<ac:plain-text-body>\s*<!\[CDATA\[([\s\S]*?)\]\]>\s*</ac:plain-text-body>', _FLAGS
)

# Images
IMAGE_MACRO = re.compile(r'<ac:image([^>]*)>([\s\S]*?)</ac:image>', _FLAGS)
IMAGE_WIDTH = re.compile(r'ac:width="([^"]+)"', _FLAGS)
IMAGE_HEIGHT = re.compile(r'ac:height="([^"]+)"', _FLAGS)
IMAGE_ATTACHMENT = re.compile(r'<ri:attachment\s+ri:filename="([^"]+)"', _FLAGS)
IMAGE_URL = re.compile(r'<ri:url\s+ri:value="([^"]+)"', _FLAGS)

# Generic macros; the body may not contain another macro so nesting resolves inside out
GENERIC_MACRO = re.compile(
    r'<ac:structured-macro\b[^>]*?\bac:name="([^"]+)"[^>]*?(?<!/)>'
    r'((?:(?!<ac:structured-macro\b)[\s\S])*?)</ac:structured-macro>',
    _FLAGS
)
SELF_CLOSING_MACRO = re.compile(r'<ac:structured-macro\b[^>]*?\bac:name="([^"]+)"[^>]*/>', _FLAGS)
GALLERY_INCLUDE = re.compile(r'<ac:parameter\s+ac:name="include"[^>]*>([^<]*)</ac:parameter>', _FLAGS)


def escape_html(text: str) -> str:
    """Escape ``& < > " '`` for embedding literal code in HTML."""
    return html.escape(text, quote=True).replace('&#x27;', '&#039;')


def preprocess_confluence_tables(markup: str) -> str:
    """Unwrap table macros and normalize cell markup, keeping inline styles."""
    def unwrap(match: re.Match) -> str:
        body = RICH_TEXT_BODY.search(match.group(1))
        if body:
            return body.group(1)
        logger.debug("Table macro without rich-text body left untouched")
        return match.group(0)

    markup = TABLE_MACRO.sub(unwrap, markup)
    markup = CELL_CLASS.sub(r'<\1\2\3>', markup)
    markup = SIMPLE_CELL.sub(r'<\1\2>\3</\1>', markup)
    markup = EMPTY_CELL.sub(r'<\1\2> </\1>', markup)
    markup = EMPTY_TABLE.sub('', markup)
    return markup


def convert_code_macros(markup: str) -> str:
    """Turn ``code``/``noformat`` macros into ``<pre><code class="language-...">`` blocks."""
    def replace(match: re.Match) -> str:
        macro_name, content = match.group(1), match.group(2)
        language = LANGUAGE_PARAM.search(content)
        lang = language.group(1).strip() if language else ''

        body = PLAIN_TEXT_BODY.search(content)
        if not body:
            logger.debug(f"No body found in {macro_name} macro")
            return f"<!-- Confluence {macro_name} macro (content not extracted) -->\n"

        code = escape_html(body.group(1).strip())
        return f'<pre><code class="language-{lang}">{code}</code></pre>\n'

    return CODE_MACRO.sub(replace, markup)


def convert_image_macros(markup: str, page_id: Optional[str] = None) -> str:
    """Turn ``ac:image`` macros into ``<img>`` tags pointing at the attachment download path."""
    def replace(match: re.Match) -> str:
        attrs, content = match.group(1), match.group(2)
        width = IMAGE_WIDTH.search(attrs)
        height = IMAGE_HEIGHT.search(attrs)
        size = ''
        if width:
            size += f' width="{width.group(1)}"'
        if height:
            size += f' height="{height.group(1)}"'

        attachment = IMAGE_ATTACHMENT.search(content)
        if attachment:
            filename = html.unescape(attachment.group(1))
            src = f"/download/attachments/{page_id or PAGE_ID_PLACEHOLDER}/{quote(filename, safe='')}"
            alt = html.escape(filename, quote=True)
            return f'\n<img src="{src}" alt="{alt}"{size} />\n'

        external = IMAGE_URL.search(content)
        if external:
            return f'\n<img src="{external.group(1)}" alt=""{size} />\n'

        logger.debug("Could not extract attachment from image macro")
        return "<!-- Confluence Image (could not extract attachment) -->\n"

    return IMAGE_MACRO.sub(replace, markup)


def convert_generic_macros(markup: str, page_id: Optional[str] = None) -> str:
    """
    Unwrap admonition macros into ``div``s and annotate everything else with comments.

    Gallery macros become a ``confluence-gallery`` div listing their included
    attachments. Nested macros are resolved from the innermost outwards.
    """
    def replace(match: re.Match) -> str:
        macro_name, content = match.group(1), match.group(2)
        name = macro_name.lower()
        if name in ADMONITION_MACROS:
            body = RICH_TEXT_BODY.search(content)
            if body:
                return f'<div class="confluence-macro-{name}">{body.group(1)}</div>'
        if name == 'gallery':
            return _gallery_div(content, page_id)
        logger.debug(f"Annotating unsupported macro: {macro_name}")
        return f"<!-- Confluence Macro: {macro_name} -->{content}<!-- End {macro_name} -->"

    markup = SELF_CLOSING_MACRO.sub(
        lambda m: f"<!-- Confluence Macro: {m.group(1)} --><!-- End {m.group(1)} -->", markup
    )
    for _ in range(MAX_NESTING_PASSES):
        updated = GENERIC_MACRO.sub(replace, markup)
        if updated == markup:
            break
        markup = updated
    return markup


def _gallery_div(content: str, page_id: Optional[str]) -> str:
    include = GALLERY_INCLUDE.search(content)
    filenames = [name.strip() for name in include.group(1).split(',')] if include else []
    images = ''.join(
        f'<img src="/download/attachments/{page_id or PAGE_ID_PLACEHOLDER}/{quote(name, safe="")}" '
        f'alt="{html.escape(name, quote=True)}" />'
        for name in filenames if name
    )
    return f'<div class="confluence-gallery">{images}</div>'


class MacroPreprocessor:
    """Runs the macro rewrite passes over raw storage format markup."""

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger('confluence_exporter.converters.macropreprocessor')

    def preprocess(self, markup: str, page_id: Optional[str] = None) -> str:
        """
        Normalize storage format markup into plain HTML.

        Args:
            markup: Raw storage format (``body.storage.value``)
            page_id: Page identity used to build attachment URLs

        Returns:
            Intermediate HTML ready for the markdown engine
        """
        self.logger.debug(f"Preprocessing {len(markup)} characters (page_id={page_id})")
        markup = preprocess_confluence_tables(markup)
        markup = convert_code_macros(markup)
        markup = convert_image_macros(markup, page_id)
        markup = convert_generic_macros(markup, page_id)
        markup = process_confluence_links(markup)
        return markup
