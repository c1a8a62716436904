"""
Publish Confluence spaces to Wiki.js.

Each page goes through conversion, image handling and the Wiki.js formatter,
then is created (or updated) at a path derived from its title or hierarchy.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from config_loader import get_nested
from converters.markdown_converter import MarkdownConverter
from converters.wikijs_formatter import to_wikijs_markdown
from exporters.image_processor import ImageProcessor, find_image_references, remove_images
from logger import ProgressTracker
from models import BatchResult, ConfluencePage, ConversionOptions
from .wikijs_client import WikiJsClient, WikiJsApiError, WikiJsConnectionError


logger = logging.getLogger('confluence_exporter.importers.wikijs_importer')

IMPORT_TAG = 'confluence-import'

# Image handling modes for export_space_to_wikijs
IMAGES_UPLOAD = 'upload'
IMAGES_SKIP = 'skip'
IMAGES_KEEP = 'keep'


class WikiJsImporter:
    """Imports Confluence pages into Wiki.js."""

    def __init__(
        self,
        config: Dict[str, Any],
        confluence_client=None,
        wikijs_client: Optional[WikiJsClient] = None,
        converter: Optional[MarkdownConverter] = None,
        image_processor: Optional[ImageProcessor] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize Wiki.js importer.

        Args:
            config: Configuration dictionary
            confluence_client: Source of pages (space exports only)
            wikijs_client: Wiki.js client (space exports only)
            converter: Markdown converter
            image_processor: Image pipeline (built from the Confluence client when omitted)
            logger: Logger instance
        """
        self.config = config
        self.confluence = confluence_client
        self.wikijs = wikijs_client
        self.logger = logger or logging.getLogger('confluence_exporter.importers.wikijs_importer')
        self.converter = converter or MarkdownConverter(logger=self.logger, config=config)
        self._image_processor = image_processor
        self.progress_bars = get_nested(config, 'export.progress_bars', True)

    @property
    def image_processor(self) -> ImageProcessor:
        if self._image_processor is None:
            self._image_processor = ImageProcessor(
                self.confluence.base_url,
                self.confluence.auth_header,
                verify_ssl=self.confluence.verify_ssl,
                timeout=self.confluence.timeout,
                logger=self.logger
            )
        return self._image_processor

    def export_space_to_wikijs(
        self,
        space_key: str,
        upload_path: Optional[str] = None,
        page_prefix: Optional[str] = None,
        namespace: Optional[str] = None,
        preserve_html_tables: bool = False,
        preserve_hierarchy: bool = False,
        images: str = IMAGES_KEEP,
        update: bool = True,
        dry_run: bool = False,
        create_navigation: bool = False
    ) -> BatchResult:
        """
        Export every page of a Confluence space into Wiki.js.

        Args:
            space_key: Confluence space key
            upload_path: Wiki.js asset folder for images (defaults to config)
            page_prefix: First path segment of every page (defaults to the space key)
            namespace: Wiki.js locale (defaults to config)
            preserve_html_tables: Keep tables as HTML
            preserve_hierarchy: Nest page paths under their ancestors
            images: "upload", "skip" or "keep"
            update: Overwrite pages that already exist; skip them otherwise
            dry_run: Log what would happen without writing anything
            create_navigation: Replace the locale's navigation with the exported tree

        Returns:
            BatchResult tally
        """
        if self.confluence is None or self.wikijs is None:
            raise ValueError("Confluence and Wiki.js clients are required to export a space")

        upload_path = upload_path or get_nested(self.config, 'wikijs.upload_path', '/uploads')
        namespace = (namespace or get_nested(self.config, 'wikijs.namespace', 'en')).strip()
        prefix = page_prefix or space_key

        pages = self.confluence.get_all_pages_from_space(space_key)
        self.logger.info(f"Exporting {len(pages)} pages from '{space_key}' to Wiki.js "
                         f"(namespace={namespace}, images={images}, update={update}, dry_run={dry_run})")

        result = BatchResult()
        published: List[ConfluencePage] = []
        temp_dir = Path(tempfile.mkdtemp(prefix='confluence-images-'))

        try:
            with ProgressTracker(total_items=len(pages), item_type='pages') as tracker:
                for page in tqdm(pages, desc="Importing to Wiki.js", unit="page", disable=not self.progress_bars):
                    try:
                        status = self._export_page(
                            page, space_key, prefix, namespace, upload_path, temp_dir,
                            preserve_html_tables, preserve_hierarchy, images, update, dry_run
                        )
                    except Exception as e:
                        self.logger.error(f"Error processing page '{page.title}': {e}", exc_info=True)
                        result.record_failure(page.title, e)
                        tracker.increment(success=False)
                        continue

                    if status == 'skipped':
                        result.skipped += 1
                    else:
                        result.succeeded += 1
                        published.append(page)
                    tracker.increment(skipped=status == 'skipped')
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        if create_navigation and not dry_run and published:
            self._create_navigation(published, prefix, namespace)

        return result

    def _export_page(
        self,
        page: ConfluencePage,
        space_key: str,
        prefix: str,
        namespace: str,
        upload_path: str,
        temp_dir: Path,
        preserve_html_tables: bool,
        preserve_hierarchy: bool,
        images: str,
        update: bool,
        dry_run: bool
    ) -> str:
        markdown = self.converter.convert(
            page.body_storage,
            ConversionOptions(preserve_html_tables=preserve_html_tables, page_id=page.id)
        )
        markdown = self.converter.convert_image_urls(markdown, self.confluence.base_url)

        if preserve_hierarchy:
            path = WikiJsClient.create_hierarchical_path(page, prefix, namespace)
        else:
            path = WikiJsClient.sanitize_page_path(page.title, prefix, namespace)

        existing = self.wikijs.get_page_by_path(path, namespace)

        if dry_run:
            image_count = len(find_image_references(markdown))
            if existing and not update:
                self.logger.info(f"[DRY RUN] Would skip existing page: /{path}")
                return 'skipped'
            action = 'update existing' if existing else 'create new'
            self.logger.info(f"[DRY RUN] Would {action} page: /{path} "
                             f"({len(to_wikijs_markdown(markdown))} characters, {image_count} images)")
            return 'dry-run'

        if existing and not update:
            self.logger.info(f"Skipping existing page at /{path} (use --update to overwrite)")
            return 'skipped'

        if images == IMAGES_UPLOAD:
            processed = self.image_processor.process_images_for_wikijs(markdown, temp_dir, self.wikijs, upload_path)
            markdown = processed.markdown
            self.logger.info(f"Uploaded {len(processed.uploaded)} images for '{page.title}'")
        elif images == IMAGES_SKIP:
            markdown = remove_images(markdown)

        content = to_wikijs_markdown(markdown)
        fields = {
            'title': page.title,
            'content': content,
            'description': f"Imported from Confluence page {page.id}",
            'locale': namespace,
            'tags': [space_key.lower(), IMPORT_TAG],
        }

        if existing:
            self.logger.info(f"Updating existing page at /{path}")
            self.wikijs.update_page(existing['id'], **fields)
            return 'updated'

        self.logger.info(f"Creating new page at /{path}")
        self.wikijs.create_page(path, **fields)
        return 'created'

    def _create_navigation(self, pages: List[ConfluencePage], prefix: str, namespace: str) -> None:
        tree = WikiJsClient.build_navigation_tree(pages, prefix, namespace)
        if not tree:
            self.logger.info("No navigation structure to create")
            return
        try:
            self.wikijs.create_navigation(tree, namespace)
        except (WikiJsApiError, WikiJsConnectionError) as e:
            self.logger.error(f"Failed to create navigation: {e}")

    def convert_file_to_wikijs(self, input_path: Path, output_path: Optional[Path] = None) -> Path:
        """
        Rewrite an exported markdown file into Wiki.js markdown.

        Writes ``{stem}_wikijs.md`` next to the input unless ``output_path`` is given.
        """
        input_path = Path(input_path)
        content = to_wikijs_markdown(input_path.read_text(encoding='utf-8'))

        output_path = Path(output_path) if output_path else input_path.with_name(f"{input_path.stem}_wikijs.md")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(content + '\n', encoding='utf-8')
        self.logger.info(f"Converted {input_path} -> {output_path}")
        return output_path
