"""Final rewrite of exported markdown into the Wiki.js markdown dialect."""

import re

ADMONITION_LABELS = {
    'info': 'Info',
    'warning': 'Warning',
    'note': 'Note',
    'tip': 'Tip',
}

MACRO_BLOCK = re.compile(
    r'<!--\s*Confluence Macro:\s*([\w-]+)\s*-->[ \t]*\n?((?:(?!<!--\s*Confluence Macro:).)*?)\n?[ \t]*<!--\s*End\s+\1\s*-->\n?',
    re.DOTALL
)
HTML_COMMENT = re.compile(r'<!--.*?-->\n?', re.DOTALL)
EXCESS_NEWLINES = re.compile(r'\n{3,}')


def macro_label(name: str) -> str:
    return ADMONITION_LABELS.get(name.lower(), name)


def _blockquote(match: re.Match) -> str:
    label = macro_label(match.group(1))
    body = HTML_COMMENT.sub('', match.group(2)).strip('\n')
    if not body.strip():
        return ''
    lines = [f"> **{label}**"]
    for line in body.split('\n'):
        lines.append(f"> {line}" if line.strip() else '>')
    return '\n'.join(lines) + '\n\n'


def to_wikijs_markdown(markdown: str) -> str:
    """
    Turn converted Confluence markdown into clean Wiki.js markdown.

    Macro comment pairs become ``> **Label**`` blockquotes (empty pairs are dropped), every other HTML
    comment is dropped, runs of blank lines collapse to one and the result is
    trimmed. Applying it twice gives the same result as applying it once.

    Args:
        markdown: Markdown produced by the converter

    Returns:
        Wiki.js flavoured markdown
    """
    # Innermost pairs first, so nested macros become nested blockquotes.
    result, previous = markdown, None
    while result != previous:
        previous, result = result, MACRO_BLOCK.sub(_blockquote, result)
    result = HTML_COMMENT.sub('', result)
    result = EXCESS_NEWLINES.sub('\n\n', result)
    return result.strip()
