"""Confluence REST API client with retry logic and error handling."""

import base64
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

import requests
import truststore
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from models import ConfluencePage, ConfluenceSpace

logger = logging.getLogger('confluence_exporter.client')

DEFAULT_API_PATH = '/wiki/rest/api'
PAGE_EXPAND = 'body.storage,version,ancestors'
SEARCH_EXPAND = 'content.body.storage,content.version,content.ancestors'
PAGE_SIZE = 50

SYSTEM_CA_ENV = 'USE_SYSTEM_CA'


def use_system_ca_if_requested() -> bool:
    """Verify TLS against the operating system trust store when USE_SYSTEM_CA is set."""
    if os.getenv(SYSTEM_CA_ENV, '').lower() not in ('1', 'true', 'yes'):
        return False
    truststore.inject_into_ssl()
    logger.info("Using system CA certificate store")
    return True


class ConfluenceClient:
    """Confluence REST API client with authentication, retries and rate limiting."""

    def __init__(
        self,
        base_url: str,
        auth_type: str = 'basic',
        username: Optional[str] = None,
        password: Optional[str] = None,
        api_token: Optional[str] = None,
        api_path: str = DEFAULT_API_PATH,
        verify_ssl: bool = True,
        timeout: int = 30,
        max_retries: int = 3,
        retry_backoff_factor: float = 2.0,
        rate_limit: float = 0.0
    ):
        """
        Initialize Confluence client with authentication and retry configuration.

        Args:
            base_url: Confluence base URL (e.g., "https://example.atlassian.net")
            auth_type: "basic" or "bearer" authentication
            username: Username for basic auth
            password: Password or API token for basic auth
            api_token: Token for bearer auth
            api_path: REST API root below the base URL
            verify_ssl: Whether to verify SSL certificates
            timeout: HTTP request timeout in seconds
            max_retries: Maximum retry attempts for transient errors
            retry_backoff_factor: Exponential backoff factor
            rate_limit: Minimum seconds between requests (0.0 = no rate limiting)
        """
        if not base_url:
            raise ValueError("Confluence base_url is required")

        self.base_url = base_url.rstrip('/')
        self.api_url = f"{self.base_url}/{api_path.strip('/')}"
        self.auth_type = auth_type
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.rate_limit = rate_limit
        self.last_request_time = 0.0

        self.session = requests.Session()
        self.session.headers.update({'Accept': 'application/json'})

        if auth_type == 'basic':
            if not username or not password:
                raise ValueError("Basic auth requires username and password")
            self.session.auth = (username, password)
            token = base64.b64encode(f"{username}:{password}".encode('utf-8')).decode('ascii')
            self._auth_header = f"Basic {token}"
        elif auth_type == 'bearer':
            if not api_token:
                raise ValueError("Bearer auth requires api_token")
            self._auth_header = f"Bearer {api_token}"
            self.session.headers['Authorization'] = self._auth_header
        else:
            raise ValueError(f"Unsupported auth_type: {auth_type}")
        logger.info(f"Initialized Confluence client with {auth_type} auth for {self.base_url}")

        self.session.verify = verify_ssl
        if not verify_ssl:
            logger.warning("SSL verification disabled - this is insecure!")
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=retry_backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "OPTIONS"]
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        logger.debug(f"Client configured with timeout={timeout}s, max_retries={max_retries}, "
                     f"backoff_factor={retry_backoff_factor}, rate_limit={rate_limit}s")

    @property
    def auth_header(self) -> str:
        """Value of the ``Authorization`` header, for downloads made outside this session."""
        return self._auth_header

    def _enforce_rate_limit(self) -> None:
        if self.rate_limit <= 0:
            return

        time_since_last = time.time() - self.last_request_time
        if time_since_last < self.rate_limit:
            sleep_time = self.rate_limit - time_since_last
            logger.debug(f"Rate limiting: sleeping for {sleep_time:.2f}s")
            time.sleep(sleep_time)

    def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        GET an API endpoint and return the decoded JSON body.

        Raises:
            requests.exceptions.HTTPError: For HTTP errors
            requests.exceptions.RequestException: For other request errors
        """
        self._enforce_rate_limit()
        url = f"{self.api_url}/{endpoint.lstrip('/')}"

        start_time = time.time()
        logger.debug(f"API Request: GET {url} params={params}")
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            logger.debug(f"API Response: {response.status_code} {url} ({time.time() - start_time:.3f}s)")
            response.raise_for_status()
            return response.json()

        except requests.exceptions.Timeout:
            logger.error(f"Request timeout after {self.timeout}s: GET {url}")
            raise

        except requests.exceptions.HTTPError as e:
            logger.error(f"HTTP Error {e.response.status_code}: GET {url}")
            try:
                logger.error(f"Error details: {json.dumps(e.response.json(), indent=2)}")
            except ValueError:
                logger.error(f"Error response: {e.response.text[:500]}")
            raise

        except requests.exceptions.RequestException as e:
            logger.error(f"Request error: GET {url} - {str(e)}")
            raise

        finally:
            self.last_request_time = time.time()

    def get_spaces(self) -> List[ConfluenceSpace]:
        """Fetch the spaces visible to the authenticated user."""
        data = self._get('/space')
        spaces = [ConfluenceSpace.from_api(item) for item in data.get('results', [])]
        logger.info(f"Fetched {len(spaces)} spaces")
        return spaces

    def get_pages_from_space(self, space_key: str, limit: int = PAGE_SIZE, start: int = 0) -> List[ConfluencePage]:
        """
        Fetch one page of content from a space, with storage bodies.

        Args:
            space_key: Confluence space key
            limit: Maximum number of pages returned
            start: Offset of the first page

        Returns:
            List of pages
        """
        data = self._get(
            f'/space/{space_key}/content',
            params={'limit': limit, 'start': start, 'expand': PAGE_EXPAND}
        )
        # /space/{key}/content groups results by content type
        results = data.get('page', data).get('results', [])
        return [self._page(item, space_key) for item in results]

    def get_all_pages_from_space(self, space_key: str) -> List[ConfluencePage]:
        """Fetch every page of a space, paginating until a short page is returned."""
        pages: List[ConfluencePage] = []
        start = 0

        while True:
            batch = self.get_pages_from_space(space_key, PAGE_SIZE, start)
            pages.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
            start += PAGE_SIZE
            logger.debug(f"Fetched {len(pages)} pages so far from space '{space_key}'...")

        logger.info(f"Found {len(pages)} pages in space '{space_key}'")
        return pages

    def get_page(self, page_id: str) -> ConfluencePage:
        """
        Fetch a single page with storage body, version and ancestors.

        Raises:
            requests.exceptions.HTTPError: For 404 or other HTTP errors
        """
        data = self._get(f'/content/{page_id}', params={'expand': PAGE_EXPAND})
        return ConfluencePage.from_api(data)

    def search_pages(self, cql: str, limit: int = PAGE_SIZE) -> List[ConfluencePage]:
        """
        Search content using Confluence Query Language (CQL).

        Args:
            cql: CQL search query
            limit: Maximum number of results

        Returns:
            Matching pages
        """
        data = self._get('/search', params={'cql': cql, 'limit': limit, 'expand': SEARCH_EXPAND})
        pages = [
            ConfluencePage.from_api(item['content'])
            for item in data.get('results', []) if item.get('content')
        ]
        logger.info(f"CQL search returned {len(pages)} results for query: {cql}")
        return pages

    def test_connection(self) -> bool:
        """Return True when the API answers an authenticated request."""
        try:
            self._get('/space', params={'limit': 1})
        except requests.exceptions.RequestException as e:
            logger.error(f"Confluence connection test failed: {e}")
            return False
        logger.info(f"Connected to Confluence at {self.base_url}")
        return True

    @staticmethod
    def _page(item: Dict[str, Any], space_key: str) -> ConfluencePage:
        page = ConfluencePage.from_api(item)
        if not page.space_key:
            page.space_key = space_key
        return page

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ConfluenceClient':
        """
        Initialize Confluence client from configuration dictionary.

        Args:
            config: Configuration dictionary with confluence and advanced settings

        Returns:
            ConfluenceClient instance
        """
        confluence_config = config.get('confluence', {})
        advanced_config = config.get('advanced', {})

        return cls(
            base_url=confluence_config.get('base_url'),
            auth_type=confluence_config.get('auth_type', 'basic'),
            username=confluence_config.get('username'),
            password=confluence_config.get('password'),
            api_token=confluence_config.get('api_token'),
            api_path=confluence_config.get('api_path', DEFAULT_API_PATH),
            verify_ssl=confluence_config.get('verify_ssl', True),
            timeout=advanced_config.get('request_timeout', 30),
            max_retries=advanced_config.get('max_retries', 3),
            retry_backoff_factor=advanced_config.get('retry_backoff_factor', 2.0),
            rate_limit=advanced_config.get('rate_limit', 0.0)
        )
