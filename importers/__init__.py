"""Wiki.js import package.

Package Structure:
- wikijs_client: GraphQL client for pages, asset folders and navigation, plus asset upload
- wikijs_importer: publishes a Confluence space to Wiki.js

Configuration Referenced:
- wikijs.*: Wiki.js API settings, upload path, namespace
"""

from .wikijs_client import WikiJsClient, WikiJsApiError, WikiJsConnectionError
from .wikijs_importer import WikiJsImporter

__all__ = [
    'WikiJsImporter',
    'WikiJsClient',
    'WikiJsApiError',
    'WikiJsConnectionError'
]
