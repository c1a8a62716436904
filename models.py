"""Data models for the Confluence to Markdown export pipeline."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger('confluence_exporter')


DEFAULT_FENCE = '```'


@dataclass
class ConversionOptions:
    """Options that select the rewrite engine configuration for a conversion."""

    preserve_html_tables: bool = False
    page_id: Optional[str] = None
    fence: Optional[str] = None
    heading_style: str = 'ATX'
    bullets: str = '-'


@dataclass
class ConfluencePage:
    """A Confluence page as returned by the REST API (storage format body)."""

    id: str
    title: str
    body_storage: str
    webui_path: str = ''
    space_key: Optional[str] = None
    ancestors: List[Dict[str, str]] = field(default_factory=list)
    version: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'ConfluencePage':
        """Build a page from a ``/content`` API response item."""
        body = data.get('body', {}).get('storage', {}).get('value', '') or ''
        space = data.get('space') or {}
        version = data.get('version') or {}
        ancestors = [
            {'id': str(a.get('id', '')), 'title': a.get('title', '')}
            for a in data.get('ancestors') or []
        ]
        return cls(
            id=str(data.get('id', '')),
            title=data.get('title', ''),
            body_storage=body,
            webui_path=data.get('_links', {}).get('webui', ''),
            space_key=space.get('key'),
            ancestors=ancestors,
            version=version.get('number')
        )

    @property
    def ancestor_titles(self) -> List[str]:
        return [a['title'] for a in self.ancestors if a.get('title')]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize page to dictionary."""
        return {
            'id': self.id,
            'title': self.title,
            'webui_path': self.webui_path,
            'space_key': self.space_key,
            'ancestors': list(self.ancestors),
            'version': self.version
        }


@dataclass
class ConfluenceSpace:
    """A Confluence space summary."""

    key: str
    name: str
    id: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'ConfluenceSpace':
        return cls(key=data.get('key', ''), name=data.get('name', ''), id=str(data.get('id', '')) or None)


@dataclass
class ImageReference:
    """An image reference discovered in converted markdown.

    ``type`` is either ``markdown`` (``![alt](url)``) or ``html-tag`` (``<img src=...>``).
    """

    type: str
    full_match: str
    alt_text: str
    url: str


@dataclass
class DownloadedAsset:
    """A file fetched by the image pipeline."""

    original_filename: str
    sanitized_filename: str
    local_path: str
    byte_size: int


@dataclass
class TableCell:
    """Cell text plus an optional background colour annotation."""

    text: str
    background_color_annotation: Optional[str] = None

    def render(self) -> str:
        text = self.text or ' '
        if self.background_color_annotation:
            return f"{text} {{.{self.background_color_annotation}}}"
        return text


@dataclass
class WikiJsAsset:
    """An asset stored in Wiki.js."""

    filename: str
    hash: Optional[str] = None
    ext: Optional[str] = None
    folder: Optional[str] = None
    id: Optional[int] = None
    mime: Optional[str] = None
    file_size: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any], folder: Optional[str] = None) -> 'WikiJsAsset':
        return cls(
            filename=data.get('filename', ''),
            hash=data.get('hash'),
            ext=data.get('ext'),
            folder=folder,
            id=data.get('id'),
            mime=data.get('mime'),
            file_size=data.get('fileSize')
        )


@dataclass
class NavigationItem:
    """A node of the Wiki.js navigation tree."""

    label: str
    path: str
    children: List['NavigationItem'] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'label': self.label,
            'path': self.path,
            'children': [child.to_dict() for child in self.children]
        }


@dataclass
class ImageProcessingResult:
    """Outcome of one image pipeline run over a markdown document."""

    markdown: str
    downloaded: List[DownloadedAsset] = field(default_factory=list)
    uploaded: List[WikiJsAsset] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def download_count(self) -> int:
        return len(self.downloaded)


@dataclass
class BatchResult:
    """Success/failure tally of a batch command."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def record_failure(self, item: str, error: Exception) -> None:
        self.failed += 1
        self.errors.append(f"{item}: {error}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'errors': list(self.errors)
        }


class WikiJsApiError(Exception):
    """Wiki.js rejected a request (``responseResult`` failure or GraphQL error)."""

    def __init__(self, error_code: str, slug: str, message: str):
        self.error_code = error_code
        self.slug = slug
        self.message = message
        super().__init__(f"[{error_code}] {slug}: {message}")

    def __str__(self) -> str:
        return f"WikiJsApiError(code={self.error_code}, slug={self.slug}, message={self.message})"


class WikiJsConnectionError(Exception):
    """Wiki.js could not be reached (transport failure)."""
