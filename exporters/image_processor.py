"""Image pipeline: find attachment images in markdown, fetch them and rewrite references.

One routine (``ImageProcessor.process``) does discovery, classification,
download and rewriting; what happens to a downloaded file is decided by an
``AssetSink``: keep it next to the markdown, or upload it to Wiki.js and
drop the local copy.
"""

import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import unquote, urlparse

import requests
import urllib3

from converters.filenames import extract_filename_from_url, sanitize_image_filename
from models import (
    DownloadedAsset,
    ImageProcessingResult,
    ImageReference,
    WikiJsApiError,
    WikiJsAsset,
    WikiJsConnectionError
)

logger = logging.getLogger('confluence_exporter.exporters.image_processor')

DEFAULT_TIMEOUT = 30
DEFAULT_MAX_REDIRECTS = 5
LOCAL_IMAGE_PREFIX = './images'

MARKDOWN_IMAGE = re.compile(r'!\[([^\]]*)\]\(([^)\s]+)(?:\s+"[^"]*")?\)')
HTML_IMAGE = re.compile(r'<img[^>]+src=["\']([^"\']+)["\'][^>]*>')
HTML_ALT = re.compile(r'alt=["\']([^"\']*)["\']')
HTML_SRC = re.compile(r'src=["\'][^"\']+["\']')
ANY_MARKDOWN_IMAGE = re.compile(r'!\[([^\]]*)\]\(([^)]+)\)')

LOCAL = 'local'
EXTERNAL = 'external'
NOT_ATTACHMENT = 'not-attachment'
ATTACHMENT = 'attachment'


def find_image_references(markdown: str) -> List[ImageReference]:
    """Return every markdown image and HTML ``<img>`` tag, markdown images first."""
    references = [
        ImageReference(type='markdown', full_match=m.group(0), alt_text=m.group(1), url=m.group(2))
        for m in MARKDOWN_IMAGE.finditer(markdown)
    ]
    for m in HTML_IMAGE.finditer(markdown):
        alt = HTML_ALT.search(m.group(0))
        references.append(ImageReference(
            type='html-tag',
            full_match=m.group(0),
            alt_text=alt.group(1) if alt else '',
            url=m.group(1)
        ))
    return references


def classify_image_url(url: str, base_url: str) -> str:
    """Classify an image URL as local, external, not-attachment or attachment."""
    if url.startswith('./') or url.startswith('../'):
        return LOCAL
    if url.startswith('http') and base_url not in url:
        return EXTERNAL
    if '/download/' not in url:
        return NOT_ATTACHMENT
    return ATTACHMENT


def remove_images(markdown: str) -> str:
    """Replace every image with a comment naming it."""
    markdown = ANY_MARKDOWN_IMAGE.sub(lambda m: f"<!-- Image removed: {m.group(1) or m.group(2)} -->", markdown)

    def html_replacement(match: re.Match) -> str:
        alt = HTML_ALT.search(match.group(0))
        return f"<!-- Image removed: {alt.group(1) if alt and alt.group(1) else match.group(1)} -->"

    return HTML_IMAGE.sub(html_replacement, markdown)


class AssetSink:
    """Decides where a downloaded image ends up and what the new reference is."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.uploaded: List[WikiJsAsset] = []

    def prepare(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def store(self, asset: DownloadedAsset) -> str:
        raise NotImplementedError


class LocalAssetSink(AssetSink):
    """Keeps images on disk, referenced as ``./images/<name>``."""

    def __init__(self, directory: Path, reference_prefix: str = LOCAL_IMAGE_PREFIX):
        super().__init__(directory)
        self.reference_prefix = reference_prefix.rstrip('/')

    def store(self, asset: DownloadedAsset) -> str:
        return f"{self.reference_prefix}/{asset.sanitized_filename}"


class WikiJsAssetSink(AssetSink):
    """Uploads images to Wiki.js, then deletes the local copy."""

    def __init__(self, directory: Path, wikijs_client, upload_path: str):
        super().__init__(directory)
        self.wikijs_client = wikijs_client
        self.upload_path = upload_path

    def store(self, asset: DownloadedAsset) -> str:
        try:
            uploaded = self.wikijs_client.upload_asset(asset.local_path, self.upload_path)
        finally:
            Path(asset.local_path).unlink(missing_ok=True)

        self.uploaded.append(uploaded)
        filename = uploaded.filename or asset.sanitized_filename
        return f"{self.upload_path.rstrip('/')}/{filename}"


class ImageProcessor:
    """Downloads Confluence attachment images referenced from markdown."""

    def __init__(
        self,
        base_url: str,
        auth_header: Optional[str] = None,
        verify_ssl: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        session: Optional[requests.Session] = None,
        logger: logging.Logger = None
    ):
        """
        Initialize the image processor.

        Args:
            base_url: Confluence base URL, used to absolutize and to tell internal from external URLs
            auth_header: Value of the ``Authorization`` header sent with each download
            verify_ssl: Verify TLS certificates
            timeout: Per-request timeout in seconds
            max_redirects: Redirects followed per download
            session: Optional pre-configured session, used as given (``max_redirects`` only applies to the default one)
            logger: Logger instance
        """
        self.base_url = base_url.rstrip('/')
        self.auth_header = auth_header
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.logger = logger or logging.getLogger('confluence_exporter.exporters.image_processor')

        if session is None:
            session = requests.Session()
            session.max_redirects = max_redirects
        self.session = session
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def download_and_update_images(
        self,
        markdown: str,
        image_dir: Path,
        reference_prefix: str = LOCAL_IMAGE_PREFIX
    ) -> ImageProcessingResult:
        """Download attachment images into ``image_dir`` and point the markdown at them."""
        return self.process(markdown, LocalAssetSink(image_dir, reference_prefix))

    def process_images_for_wikijs(
        self,
        markdown: str,
        temp_dir: Path,
        wikijs_client,
        upload_path: str
    ) -> ImageProcessingResult:
        """Download attachment images, upload them to Wiki.js and point the markdown at the assets."""
        return self.process(markdown, WikiJsAssetSink(temp_dir, wikijs_client, upload_path))

    def process(self, markdown: str, sink: AssetSink) -> ImageProcessingResult:
        """
        Run discovery, download and rewriting with the given sink.

        Failed images are logged and left untouched; the rest of the document
        is still processed.

        Args:
            markdown: Converted markdown
            sink: Where downloaded files go

        Returns:
            ImageProcessingResult with the rewritten markdown
        """
        sink.prepare()
        references = find_image_references(markdown)
        self.logger.info(f"Found {len(references)} image references")

        result = ImageProcessingResult(markdown=markdown)
        rewritten: Dict[str, str] = {}

        for reference in references:
            kind = classify_image_url(reference.url, self.base_url)
            if kind != ATTACHMENT:
                self.logger.debug(f"Skipping {kind} image: {reference.url}")
                continue

            try:
                new_url = rewritten.get(reference.url)
                if new_url is None:
                    asset = self._download(reference.url, sink.directory)
                    new_url = sink.store(asset)
                    rewritten[reference.url] = new_url
                    result.downloaded.append(asset)
            except (requests.exceptions.RequestException, OSError, WikiJsApiError, WikiJsConnectionError) as e:
                self._log_failure(reference.url, e)
                result.failed.append(reference.url)
                continue

            result.markdown = result.markdown.replace(
                reference.full_match, self._rewrite(reference, new_url), 1
            )

        result.uploaded.extend(sink.uploaded)
        self.logger.info(
            f"Images: {len(references)} found, {result.download_count} downloaded, {len(result.failed)} failed"
        )
        return result

    def _download(self, url: str, directory: Path) -> DownloadedAsset:
        full_url = url if url.startswith('http') else f"{self.base_url}{url}"
        original = self._filename_for(url)
        sanitized = sanitize_image_filename(original)
        local_path = Path(directory) / sanitized

        headers = {'Authorization': self.auth_header} if self.auth_header else {}
        self.logger.debug(f"Downloading {full_url} -> {local_path}")
        response = self.session.get(full_url, headers=headers, timeout=self.timeout, verify=self.verify_ssl)
        response.raise_for_status()

        try:
            local_path.write_bytes(response.content)
        except OSError:
            local_path.unlink(missing_ok=True)
            raise

        size = local_path.stat().st_size
        self.logger.info(f"Downloaded {sanitized} ({size} bytes)")
        return DownloadedAsset(
            original_filename=original,
            sanitized_filename=sanitized,
            local_path=str(local_path),
            byte_size=size
        )

    @staticmethod
    def _filename_for(url: str) -> str:
        name = extract_filename_from_url(url)
        if name:
            return name
        return unquote(os.path.basename(urlparse(url).path)) or 'image'

    @staticmethod
    def _rewrite(reference: ImageReference, new_url: str) -> str:
        if reference.type == 'markdown':
            return f"![{reference.alt_text}]({new_url})"
        return HTML_SRC.sub(f'src="{new_url}"', reference.full_match, count=1)

    def _log_failure(self, url: str, error: Exception) -> None:
        self.logger.error(f"Failed to process image {url}: {error}")
        response = getattr(error, 'response', None)
        if response is not None:
            self.logger.error(f"HTTP Status: {response.status_code} {response.reason}")
            self.logger.debug(f"Response headers: {dict(response.headers)}")
        errno = getattr(error, 'errno', None) or getattr(error, 'error_code', None)
        if errno:
            self.logger.error(f"Error code: {errno}")
