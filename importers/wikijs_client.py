"""
Wiki.js API client for publishing exported Confluence pages.

Pages, asset folders and navigation go through the GraphQL API; file uploads
use the multipart ``/u`` endpoint, which GraphQL does not cover.
"""

import json
import logging
import mimetypes
import re
import time
import unicodedata
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from gql import gql, Client
from gql.transport.requests import RequestsHTTPTransport
from gql.transport.exceptions import (
    TransportServerError,
    TransportQueryError,
    TransportProtocolError
)

from models import ConfluencePage, NavigationItem, WikiJsApiError, WikiJsAsset, WikiJsConnectionError


logger = logging.getLogger('confluence_exporter.importers.wikijs_client')


# Constants
DEFAULT_LOCALE = "en"
DEFAULT_EDITOR = "markdown"
DEFAULT_UPLOAD_PATH = "/uploads"
DEFAULT_TIMEOUT = 30
DEFAULT_MAX_RETRIES = 3
ROOT_FOLDER_ID = 0

GERMAN_TRANSLITERATION = {
    'ä': 'ae', 'ö': 'oe', 'ü': 'ue', 'ß': 'ss',
    'Ä': 'Ae', 'Ö': 'Oe', 'Ü': 'Ue',
}

PAGE_FIELDS = """
    id
    path
    title
    description
    content
    contentType
    isPublished
    isPrivate
    editor
    createdAt
    updatedAt
    locale
"""

RESPONSE_RESULT = """
    responseResult {
        succeeded
        errorCode
        slug
        message
    }
"""


class WikiJsClient:
    """Client for Wiki.js page, asset and navigation operations."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        verify_ssl: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        rate_limit: float = 0.0,
        default_locale: str = DEFAULT_LOCALE,
        default_editor: str = DEFAULT_EDITOR,
        upload_path: str = DEFAULT_UPLOAD_PATH,
        lowercase_asset_filenames: bool = True,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize Wiki.js API client.

        Args:
            base_url: Wiki.js instance URL (e.g., https://wiki.example.com)
            api_key: JWT API key from Wiki.js admin panel (API Access section)
            verify_ssl: Enable SSL certificate verification (default: True)
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Maximum number of retries for failed requests (default: 3)
            rate_limit: Minimum seconds between requests (default: 0.0, disabled)
            default_locale: Default locale for pages (default: "en")
            default_editor: Editor recorded on created pages (default: "markdown")
            upload_path: Asset folder used when none is given (default: "/uploads")
            lowercase_asset_filenames: Lowercase names before upload; Wiki.js stores them lowercased
            session: Optional session used for multipart uploads
        """
        if not base_url or not api_key:
            raise ValueError("Wiki.js base_url and api_key are required")

        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.rate_limit = rate_limit
        self.default_locale = default_locale
        self.default_editor = default_editor
        self.upload_path = upload_path
        self.lowercase_asset_filenames = lowercase_asset_filenames
        self._last_request_time = 0.0
        self._folder_ids: Dict[str, int] = {}

        # Note: retries parameter expects an integer, not a Retry object
        self.transport = RequestsHTTPTransport(
            url=f"{self.base_url}/graphql",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json"
            },
            verify=verify_ssl,
            timeout=timeout,
            retries=max_retries
        )
        self.client = Client(
            transport=self.transport,
            fetch_schema_from_transport=False  # Avoid startup latency
        )

        self.session = session or requests.Session()
        self.session.headers['Authorization'] = f"Bearer {api_key}"
        self.session.verify = verify_ssl

        logger.info(f"Initialized Wiki.js client for {self.base_url} "
                    f"(retries={max_retries}, rate_limit={rate_limit}s, upload_path={upload_path})")

    # ========================================================================
    # Pages
    # ========================================================================

    def get_page_by_path(self, path: str, locale: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Get a page by its path.

        Args:
            path: Page path (e.g., "docs/example")
            locale: Locale (defaults to the client's locale)

        Returns:
            Page dictionary or None if not found
        """
        query = gql(f"""
            query GetPageByPath($path: String!, $locale: String!) {{
                pages {{
                    singleByPath(path: $path, locale: $locale) {{
                        {PAGE_FIELDS}
                    }}
                }}
            }}
        """)
        variables = {
            "path": path.lstrip('/'),
            "locale": locale or self.default_locale
        }

        try:
            result = self._execute(query, variables, 'get_page_by_path')
        except WikiJsApiError as e:
            # singleByPath reports a missing page as an error
            message = str(e).lower()
            if "not found" in message or "does not exist" in message:
                return None
            raise
        return result['pages']['singleByPath'] or None

    def create_page(
        self,
        path: str,
        title: str,
        content: str,
        description: str = "",
        editor: Optional[str] = None,
        is_published: bool = True,
        is_private: bool = False,
        locale: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        Create a new page.

        Args:
            path: Page path; a leading slash is removed
            title: Page title
            content: Page content in markdown
            description: Optional description
            editor: Editor type (defaults to the client's editor)
            is_published: Whether page is published (default: True)
            is_private: Whether page is private (default: False)
            locale: Locale (optional, defaults to instance default)
            tags: List of tags (optional)

        Returns:
            Created page dictionary with id, path, title
        """
        mutation = gql(f"""
            mutation CreatePage($content: String!, $description: String!, $editor: String!, $isPublished: Boolean!,
                               $isPrivate: Boolean!, $locale: String!, $path: String!,
                               $tags: [String]!, $title: String!) {{
                pages {{
                    create(content: $content, description: $description, editor: $editor, isPublished: $isPublished,
                          isPrivate: $isPrivate, locale: $locale, path: $path, tags: $tags, title: $title) {{
                        {RESPONSE_RESULT}
                        page {{
                            id
                            path
                            title
                        }}
                    }}
                }}
            }}
        """)
        variables = {
            "path": path.lstrip('/'),
            "title": title,
            "content": content,
            "description": description,
            "editor": editor or self.default_editor,
            "isPublished": is_published,
            "isPrivate": is_private,
            "locale": locale or self.default_locale,
            "tags": tags or []
        }

        result = self._execute(mutation, variables, 'create_page')
        create_result = result['pages']['create']
        self._check_response(create_result['responseResult'], 'Unknown error creating page')
        logger.info(f"Created Wiki.js page: {variables['path']}")
        return create_result['page']

    def update_page(
        self,
        page_id: int,
        content: Optional[str] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        editor: Optional[str] = None,
        is_published: Optional[bool] = None,
        is_private: Optional[bool] = None,
        locale: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        Update an existing page. Only the given fields are sent.

        Args:
            page_id: Wiki.js page ID
            content: Updated content (optional)
            title: Updated title (optional)
            description: Updated description (optional)
            editor: Editor type (optional)
            is_published: Published status (optional)
            is_private: Private status (optional)
            locale: Locale (optional)
            tags: Updated tags (optional)

        Returns:
            Updated page dictionary
        """
        mutation = gql(f"""
            mutation UpdatePage($id: Int!, $content: String, $description: String, $editor: String,
                               $isPublished: Boolean, $isPrivate: Boolean, $locale: String,
                               $tags: [String], $title: String) {{
                pages {{
                    update(id: $id, content: $content, description: $description, editor: $editor,
                          isPublished: $isPublished, isPrivate: $isPrivate, locale: $locale,
                          tags: $tags, title: $title) {{
                        {RESPONSE_RESULT}
                        page {{
                            {PAGE_FIELDS}
                        }}
                    }}
                }}
            }}
        """)
        fields = {
            "content": content,
            "title": title,
            "description": description,
            "editor": editor,
            "isPublished": is_published,
            "isPrivate": is_private,
            "locale": locale,
            "tags": tags,
        }
        variables = {"id": page_id}
        variables.update({key: value for key, value in fields.items() if value is not None})

        result = self._execute(mutation, variables, 'update_page')
        update_result = result['pages']['update']
        self._check_response(update_result['responseResult'], 'Unknown error updating page')
        logger.info(f"Updated Wiki.js page {page_id}")
        return update_result['page']

    # ========================================================================
    # Assets
    # ========================================================================

    def upload_asset(self, local_path: str, upload_path: Optional[str] = None) -> WikiJsAsset:
        """
        Upload a file into an asset folder.

        The folder named by ``upload_path`` (e.g. "/uploads/images") is created
        when missing.

        Args:
            local_path: File to upload
            upload_path: Target asset folder (defaults to the client's upload path)

        Returns:
            The stored asset

        Raises:
            WikiJsConnectionError: If the upload request fails
            WikiJsApiError: If folder resolution fails
        """
        local_path = Path(local_path)
        folder_path = (upload_path or self.upload_path).strip('/')
        folder_id = self.resolve_folder_id(folder_path)

        filename = local_path.name.lower() if self.lowercase_asset_filenames else local_path.name
        mime = mimetypes.guess_type(filename)[0] or 'application/octet-stream'

        self._apply_rate_limit()
        logger.debug(f"Uploading {local_path} to folder '{folder_path}' (id={folder_id}) as {filename}")
        try:
            with open(local_path, 'rb') as handle:
                response = self.session.post(
                    f"{self.base_url}/u",
                    files=[
                        ('mediaUpload', (None, json.dumps({'folderId': folder_id}), 'application/json')),
                        ('mediaUpload', (filename, handle, mime)),
                    ],
                    timeout=self.timeout
                )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise WikiJsConnectionError(f"Failed to upload asset {filename}: {e}")

        logger.info(f"Uploaded asset {filename} to /{folder_path}")
        asset = self._find_asset(folder_id, filename)
        if asset is None:
            return WikiJsAsset(filename=filename, folder=folder_path, mime=mime)
        asset.folder = folder_path
        return asset

    def resolve_folder_id(self, folder_path: str) -> int:
        """Return the id of an asset folder path, creating missing folders along the way."""
        folder_path = folder_path.strip('/')
        if not folder_path:
            return ROOT_FOLDER_ID
        if folder_path in self._folder_ids:
            return self._folder_ids[folder_path]

        parent_id = ROOT_FOLDER_ID
        for slug in folder_path.split('/'):
            slug = slug.lower() if self.lowercase_asset_filenames else slug
            folder = self._find_folder(parent_id, slug)
            if folder is None:
                self._create_folder(parent_id, slug)
                folder = self._find_folder(parent_id, slug)
                if folder is None:
                    raise WikiJsApiError('FOLDER_NOT_FOUND', 'folder_not_found',
                                         f"Asset folder '{slug}' not found after creation")
            parent_id = int(folder['id'])

        self._folder_ids[folder_path] = parent_id
        return parent_id

    def _find_folder(self, parent_id: int, slug: str) -> Optional[Dict[str, Any]]:
        query = gql("""
            query AssetFolders($parentFolderId: Int!) {
                assets {
                    folders(parentFolderId: $parentFolderId) {
                        id
                        name
                        slug
                    }
                }
            }
        """)
        result = self._execute(query, {"parentFolderId": parent_id}, 'folders')
        for folder in result['assets']['folders'] or []:
            if folder.get('slug') == slug:
                return folder
        return None

    def _create_folder(self, parent_id: int, slug: str) -> None:
        mutation = gql(f"""
            mutation CreateFolder($parentFolderId: Int!, $slug: String!) {{
                assets {{
                    createFolder(parentFolderId: $parentFolderId, slug: $slug) {{
                        {RESPONSE_RESULT}
                    }}
                }}
            }}
        """)
        result = self._execute(mutation, {"parentFolderId": parent_id, "slug": slug}, 'create_folder')
        self._check_response(result['assets']['createFolder']['responseResult'], 'Unknown error creating folder')
        logger.info(f"Created asset folder '{slug}' (parent={parent_id})")

    def _find_asset(self, folder_id: int, filename: str) -> Optional[WikiJsAsset]:
        query = gql("""
            query AssetList($folderId: Int!, $kind: AssetKind!) {
                assets {
                    list(folderId: $folderId, kind: $kind) {
                        id
                        filename
                        ext
                        kind
                        mime
                        fileSize
                    }
                }
            }
        """)
        result = self._execute(query, {"folderId": folder_id, "kind": "ALL"}, 'list_assets')
        for item in result['assets']['list'] or []:
            if item.get('filename') == filename:
                return WikiJsAsset.from_api(item)
        return None

    @staticmethod
    def get_asset_url(base_url: str, asset: WikiJsAsset, folder_name: Optional[str] = None) -> str:
        """
        Public URL of an asset.

        Uses ``{base}/{hash}{.ext}`` when Wiki.js reported a hash, otherwise
        ``{base}/{folder}/{filename}``.
        """
        base = base_url.rstrip('/')
        if asset.hash:
            ext = asset.ext or ''
            if ext and not ext.startswith('.'):
                ext = '.' + ext
            return f"{base}/{asset.hash}{ext}"
        folder = (folder_name or asset.folder or '').strip('/')
        if folder:
            return f"{base}/{folder}/{asset.filename}"
        return f"{base}/{asset.filename}"

    # ========================================================================
    # Navigation
    # ========================================================================

    def create_navigation(self, items: List[NavigationItem], locale: Optional[str] = None) -> None:
        """
        Replace the navigation of a locale with the given tree.

        Wiki.js navigation is flat: top-level items with children become a
        header followed by links to the item and its descendants.
        """
        mutation = gql(f"""
            mutation UpdateNavigation($tree: [NavigationTreeInput]!) {{
                navigation {{
                    updateTree(tree: $tree) {{
                        {RESPONSE_RESULT}
                    }}
                }}
            }}
        """)
        entries = self.flatten_navigation(items)
        variables = {"tree": [{"locale": locale or self.default_locale, "items": entries}]}

        result = self._execute(mutation, variables, 'create_navigation')
        self._check_response(result['navigation']['updateTree']['responseResult'],
                             'Unknown error updating navigation')
        logger.info(f"Updated navigation with {len(entries)} entries")

    @staticmethod
    def flatten_navigation(items: List[NavigationItem]) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []

        def entry(kind: str, label: str, target: str = '') -> Dict[str, Any]:
            return {
                'id': str(uuid.uuid4()),
                'kind': kind,
                'label': label,
                'icon': 'mdi-file-document-outline' if kind == 'link' else '',
                'targetType': 'page' if kind == 'link' else '',
                'target': target,
                'visibilityMode': 'all',
                'visibilityGroups': []
            }

        def walk(item: NavigationItem) -> None:
            entries.append(entry('link', item.label, item.path))
            for child in item.children:
                walk(child)

        for item in items:
            if item.children:
                entries.append(entry('header', item.label))
            walk(item)
        return entries

    # ========================================================================
    # Paths
    # ========================================================================

    @staticmethod
    def sanitize_page_path(title: str, prefix: Optional[str] = None, locale: Optional[str] = None) -> str:
        """
        Convert a page title into a Wiki.js path segment.

        Umlauts are transliterated for German ("ä" -> "ae"); for every locale
        remaining accents are stripped ("é" -> "e"). The result is lowercase
        ``[a-z0-9-]`` with single hyphens. A prefix is lowercased and prepended.
        """
        text = title or ''
        if locale and locale.lower().startswith('de'):
            for char, replacement in GERMAN_TRANSLITERATION.items():
                text = text.replace(char, replacement)
        text = unicodedata.normalize('NFKD', text).encode('ascii', 'ignore').decode('ascii')

        path = text.lower()
        path = re.sub(r'[^a-z0-9\s-]', '', path)
        path = re.sub(r'\s+', '-', path)
        path = re.sub(r'-+', '-', path)
        path = path.strip('-')

        if prefix:
            path = f"{prefix.strip('/').lower()}/{path}"
        return path

    @classmethod
    def create_hierarchical_path(
        cls,
        page: ConfluencePage,
        prefix: Optional[str] = None,
        locale: Optional[str] = None
    ) -> str:
        """Path made of the sanitized ancestor titles and the page title."""
        segments = [cls.sanitize_page_path(title, locale=locale) for title in page.ancestor_titles]
        segments.append(cls.sanitize_page_path(page.title, locale=locale))
        path = '/'.join(segment for segment in segments if segment)
        if prefix:
            path = f"{prefix.strip('/').lower()}/{path}"
        return path

    @classmethod
    def build_navigation_tree(
        cls,
        pages: List[ConfluencePage],
        prefix: Optional[str] = None,
        locale: Optional[str] = None
    ) -> List[NavigationItem]:
        """
        Arrange pages under their nearest exported ancestor.

        Pages whose parent is not among ``pages`` become top-level items.
        """
        nodes = {
            page.id: NavigationItem(
                label=page.title,
                path='/' + cls.create_hierarchical_path(page, prefix, locale)
            )
            for page in pages
        }
        roots: List[NavigationItem] = []
        for page in pages:
            parent_id = page.ancestors[-1]['id'] if page.ancestors else None
            if parent_id in nodes and parent_id != page.id:
                nodes[parent_id].children.append(nodes[page.id])
            else:
                roots.append(nodes[page.id])
        return roots

    # ========================================================================
    # Internal Helper Methods
    # ========================================================================

    def _execute(self, document, variables: Dict[str, Any], operation: str) -> Dict[str, Any]:
        self._apply_rate_limit()
        try:
            return self.client.execute(document, variable_values=variables)
        except TransportQueryError as e:
            self._handle_graphql_error(e)
        except (TransportServerError, TransportProtocolError) as e:
            raise WikiJsConnectionError(f"Connection error during {operation}: {e}")
        except requests.exceptions.RequestException as e:
            raise WikiJsConnectionError(f"Connection error during {operation}: {e}")

    @staticmethod
    def _check_response(response_result: Dict[str, Any], default_message: str) -> None:
        if not response_result['succeeded']:
            raise WikiJsApiError(
                error_code=response_result.get('errorCode', 'UNKNOWN'),
                slug=response_result.get('slug', 'unknown_error'),
                message=response_result.get('message', default_message)
            )

    def _apply_rate_limit(self):
        """Apply rate limiting between requests."""
        if self.rate_limit <= 0:
            return

        time_since_last = time.time() - self._last_request_time
        if time_since_last < self.rate_limit:
            sleep_duration = self.rate_limit - time_since_last
            logger.debug(f"Rate limiting: sleeping {sleep_duration:.2f}s")
            time.sleep(sleep_duration)

        self._last_request_time = time.time()

    def _handle_graphql_error(self, error: TransportQueryError):
        """Convert GraphQL errors into WikiJsApiError."""
        errors = getattr(error, 'errors', None)
        if errors and isinstance(errors, list):
            err = errors[0]
            message = err.get('message', str(error))
            extensions = err.get('extensions', {})
            code = extensions.get('code', 'GRAPHQL_ERROR')

            # Extract Wiki.js specific error info
            error_code = extensions.get('error', {}).get('code', code)
            slug = extensions.get('error', {}).get('slug', 'unknown_error')
            error_message = extensions.get('error', {}).get('message', message)

            logger.error(f"Wiki.js GraphQL Error: {error_code} - {slug}: {error_message}")
            raise WikiJsApiError(error_code, slug, error_message)

        # Fallback for non-standard errors
        raise WikiJsApiError("GRAPHQL_ERROR", "unknown_error", str(error))

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'WikiJsClient':
        """
        Initialize Wiki.js client from configuration dictionary.

        Args:
            config: Configuration dictionary with wikijs and advanced settings

        Returns:
            WikiJsClient instance
        """
        wikijs_config = config.get('wikijs', {})
        advanced_config = config.get('advanced', {})

        return cls(
            base_url=wikijs_config.get('base_url'),
            api_key=wikijs_config.get('api_key'),
            verify_ssl=wikijs_config.get('verify_ssl', True),
            timeout=advanced_config.get('request_timeout', DEFAULT_TIMEOUT),
            max_retries=advanced_config.get('max_retries', DEFAULT_MAX_RETRIES),
            rate_limit=advanced_config.get('rate_limit', 0),
            default_locale=wikijs_config.get('namespace', DEFAULT_LOCALE),
            default_editor=wikijs_config.get('default_editor', DEFAULT_EDITOR),
            upload_path=wikijs_config.get('upload_path', DEFAULT_UPLOAD_PATH),
            lowercase_asset_filenames=wikijs_config.get('lowercase_asset_filenames', True)
        )
