"""Filename helpers shared by the converter and the image pipeline."""

import re
from typing import Optional
from urllib.parse import unquote

MAX_FILENAME_LENGTH = 200

_INVALID_CHARS = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r'\s+')
_UNDERSCORES = re.compile(r'_+')
_ATTACHMENT_PATH = re.compile(r'/download/(?:attachments|thumbnails)/\d+/([^?#]+)')


def sanitize_filename(name: str, max_length: int = MAX_FILENAME_LENGTH) -> str:
    """
    Make a string safe to use as a file name.

    Filesystem-reserved characters and whitespace become ``_``, runs of
    ``_`` collapse to one and leading/trailing ``_`` are stripped.

    Args:
        name: Original name (page title, attachment name, ...)
        max_length: Maximum length of the result

    Returns:
        Sanitized file name
    """
    cleaned = _INVALID_CHARS.sub('_', name)
    cleaned = _WHITESPACE.sub('_', cleaned)
    cleaned = _UNDERSCORES.sub('_', cleaned)
    cleaned = cleaned.strip('_')
    return cleaned[:max_length]


def sanitize_image_filename(name: str, max_length: int = MAX_FILENAME_LENGTH) -> str:
    """
    Sanitize an attachment file name while keeping its extension.

    The extension is everything after the last ``.``. Only the stem is
    rewritten, and truncation eats into the stem so the extension survives.
    """
    dot = name.rfind('.')
    if dot <= 0:
        return sanitize_filename(name, max_length)

    stem, ext = name[:dot], _INVALID_CHARS.sub('_', name[dot + 1:])
    suffix = f".{ext}"
    if len(suffix) >= max_length:
        return sanitize_filename(name, max_length)

    budget = max_length - len(suffix)
    clean_stem = (sanitize_filename(stem, budget) or 'file')[:budget]
    return f"{clean_stem}{suffix}"


def extract_filename_from_url(url: str) -> Optional[str]:
    """Return the decoded attachment file name of a ``/download/...`` URL, or None."""
    match = _ATTACHMENT_PATH.search(url)
    if not match:
        return None
    return unquote(match.group(1))


def is_attachment_url(url: str) -> bool:
    return '/download/attachments/' in url or '/download/thumbnails/' in url
