#!/usr/bin/env python3
"""
Confluence to Markdown Export Tool - command line entry point.

Exports Confluence pages (storage format) to markdown files, converts saved
HTML files and publishes spaces to Wiki.js.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import requests
import yaml

from config_loader import ConfigLoader, get_nested, set_nested
from confluence_client import ConfluenceClient, use_system_ca_if_requested
from converters.markdown_converter import MarkdownConverter
from exporters.markdown_exporter import MarkdownExporter
from importers.wikijs_client import WikiJsClient, WikiJsApiError, WikiJsConnectionError
from importers.wikijs_importer import WikiJsImporter, IMAGES_KEEP, IMAGES_SKIP, IMAGES_UPLOAD
from logger import setup_logging, log_section, log_config
from models import BatchResult

__version__ = "1.0.0"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for CLI."""
    parser = argparse.ArgumentParser(
        description="Export Confluence pages to Markdown files or Wiki.js",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Export a whole space with images
  python export.py export-space --space DOCS --download-images

  # Export one page, keeping tables as HTML
  python export.py export-page --page-id 123456 --html-tables

  # Publish a space to Wiki.js
  python export.py export-to-wikijs --space DOCS --upload-images --create-navigation

  # Convert a saved storage-format file
  python export.py convert-html --input page.html --title "My Page"
        """
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', type=str, help='Path to configuration YAML file')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Increase verbosity (-v for INFO, -vv for DEBUG)')
    parser.add_argument('--log-file', type=str, help='Write logs to this file as well')
    parser.add_argument('--ignore-ssl', action='store_true',
                        help='Ignore SSL certificate errors (self-signed certificates)')

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    cmd = subparsers.add_parser('export-space', help='Export all pages from a Confluence space')
    cmd.add_argument('-s', '--space', help='Confluence space key (defaults to SPACE_KEY)')
    cmd.add_argument('-o', '--output', help='Output directory')
    cmd.add_argument('--download-images', action='store_true', help='Download and save images locally')
    cmd.add_argument('--html-tables', action='store_true', help='Preserve tables as HTML')
    cmd.add_argument('--preserve-hierarchy', action='store_true',
                     help='Mirror the Confluence page hierarchy in the output directories')
    cmd.set_defaults(func=cmd_export_space, needs_confluence=True)

    cmd = subparsers.add_parser('export-page', help='Export a specific page by ID')
    cmd.add_argument('-p', '--page-id', required=True, help='Confluence page ID')
    cmd.add_argument('-o', '--output', help='Output directory')
    cmd.add_argument('--download-images', action='store_true', help='Download and save images locally')
    cmd.add_argument('--html-tables', action='store_true', help='Preserve tables as HTML')
    cmd.set_defaults(func=cmd_export_page, needs_confluence=True)

    cmd = subparsers.add_parser('list-spaces', help='List available spaces')
    cmd.set_defaults(func=cmd_list_spaces, needs_confluence=True)

    cmd = subparsers.add_parser('search', help='Search for pages with CQL')
    cmd.add_argument('-q', '--cql', '--query', dest='cql', required=True, help='CQL search query')
    cmd.add_argument('-l', '--limit', type=int, default=10, help='Maximum number of results (default: 10)')
    cmd.set_defaults(func=cmd_search, needs_confluence=True)

    cmd = subparsers.add_parser('convert-html', help='Convert a storage-format/HTML file to Markdown')
    cmd.add_argument('-i', '--input', required=True, help='Input HTML file')
    cmd.add_argument('-o', '--output', help='Output markdown file')
    cmd.add_argument('-t', '--title', help='Page title for the front matter')
    cmd.add_argument('--html-tables', action='store_true', help='Preserve tables as HTML')
    cmd.set_defaults(func=cmd_convert_html, needs_confluence=False)

    cmd = subparsers.add_parser('convert-advanced', help='Convert an HTML file with custom markdown style')
    cmd.add_argument('-i', '--input', required=True, help='Input HTML file')
    cmd.add_argument('-o', '--output', help='Output markdown file')
    cmd.add_argument('--heading-style', choices=['atx', 'setext'], default='atx', help='Heading style')
    cmd.add_argument('--bullet-marker', choices=['-', '*', '+'], default='-', help='Bullet list marker')
    cmd.add_argument('--code-style', choices=['fenced', 'indented'], default='fenced', help='Code block style')
    cmd.add_argument('--fence', choices=['```', '~~~'], help='Code fence (default: export.fence or ```)')
    cmd.add_argument('--html-tables', action='store_true', help='Preserve tables as HTML')
    cmd.add_argument('--preview', action='store_true', help='Print the result instead of saving it')
    cmd.set_defaults(func=cmd_convert_advanced, needs_confluence=False)

    cmd = subparsers.add_parser('download-images', help='Download the images referenced by a markdown file')
    cmd.add_argument('-i', '--input', required=True, help='Input markdown file')
    cmd.add_argument('-d', '--images-dir', help='Directory to save images (default: ./images next to input)')
    cmd.add_argument('--update', action='store_true', help='Rewrite the input file instead of *_with_images.md')
    cmd.set_defaults(func=cmd_download_images, needs_confluence=True)

    cmd = subparsers.add_parser('export-to-wikijs', help='Export a Confluence space to Wiki.js')
    cmd.add_argument('-s', '--space', help='Confluence space key (defaults to SPACE_KEY)')
    cmd.add_argument('--upload-path', help='Wiki.js asset folder for images')
    cmd.add_argument('--page-prefix', help='Prefix for Wiki.js page paths (defaults to the space key)')
    cmd.add_argument('--namespace', help='Wiki.js locale, e.g. "de"')
    cmd.add_argument('--html-tables', action='store_true', help='Preserve tables as HTML')
    cmd.add_argument('--preserve-hierarchy', action='store_true', help='Nest page paths under ancestors')
    images = cmd.add_mutually_exclusive_group()
    images.add_argument('--upload-images', dest='images', action='store_const', const=IMAGES_UPLOAD,
                        help='Download images from Confluence and upload them to Wiki.js')
    images.add_argument('--skip-images', dest='images', action='store_const', const=IMAGES_SKIP,
                        help='Replace images with comments')
    cmd.add_argument('--update', action=argparse.BooleanOptionalAction, default=True,
                     help='Update existing pages (default) or skip them with --no-update')
    cmd.add_argument('--dry-run', action='store_true', help='Log what would be done without writing')
    cmd.add_argument('--create-navigation', action='store_true',
                     help='Create Wiki.js navigation from the page hierarchy')
    cmd.set_defaults(func=cmd_export_to_wikijs, needs_confluence=True, needs_wikijs=True, images=IMAGES_KEEP)

    cmd = subparsers.add_parser('convert-to-wikijs', help='Rewrite an exported markdown file for Wiki.js')
    cmd.add_argument('-i', '--input', required=True, help='Input markdown file')
    cmd.add_argument('-o', '--output', help='Output file (default: *_wikijs.md next to input)')
    cmd.set_defaults(func=cmd_convert_to_wikijs, needs_confluence=False)

    cmd = subparsers.add_parser('test-connection', help='Test the Confluence (and Wiki.js) connection')
    cmd.add_argument('--wikijs', action='store_true', help='Also test the Wiki.js connection')
    cmd.set_defaults(func=cmd_test_connection, needs_confluence=True)

    return parser


def batch_exit_code(result: BatchResult) -> int:
    """Batch commands fail only when every item failed."""
    if result.failed and not (result.succeeded or result.skipped):
        return EXIT_FAILURE
    return EXIT_OK


def print_batch_summary(result: BatchResult, item_type: str = 'pages') -> None:
    print(f"\nSucceeded: {result.succeeded} {item_type}")
    if result.skipped:
        print(f"Skipped:   {result.skipped} {item_type}")
    if result.failed:
        print(f"Failed:    {result.failed} {item_type}")
        for error in result.errors:
            print(f"  - {error}")


def _space_key(args: argparse.Namespace, config: dict) -> str:
    space_key = args.space or get_nested(config, 'export.space_key')
    if not space_key:
        raise ValueError("Space key is required. Use --space or set SPACE_KEY")
    return space_key


def cmd_export_space(args: argparse.Namespace, config: dict, logger: logging.Logger) -> int:
    space_key = _space_key(args, config)
    exporter = MarkdownExporter(config, ConfluenceClient.from_config(config), output_dir=args.output)
    result = exporter.export_space(space_key, preserve_hierarchy=args.preserve_hierarchy)
    print_batch_summary(result)
    return batch_exit_code(result)


def cmd_export_page(args: argparse.Namespace, config: dict, logger: logging.Logger) -> int:
    client = ConfluenceClient.from_config(config)
    exporter = MarkdownExporter(config, client, output_dir=args.output)
    page = client.get_page(args.page_id)
    logger.info(f"Found page: {page.title}")
    file_path = exporter.export_page(page)
    print(f"Saved to: {file_path}")
    return EXIT_OK


def cmd_list_spaces(args: argparse.Namespace, config: dict, logger: logging.Logger) -> int:
    spaces = ConfluenceClient.from_config(config).get_spaces()
    print(f"Found {len(spaces)} spaces:")
    for space in spaces:
        print(f"  {space.key} - {space.name}")
    return EXIT_OK


def cmd_search(args: argparse.Namespace, config: dict, logger: logging.Logger) -> int:
    pages = ConfluenceClient.from_config(config).search_pages(args.cql, args.limit)
    print(f"Found {len(pages)} pages:")
    for page in pages:
        print(f"  {page.id} - {page.title}")
    return EXIT_OK


def cmd_convert_html(args: argparse.Namespace, config: dict, logger: logging.Logger) -> int:
    exporter = MarkdownExporter(config)
    output = exporter.convert_html_file(
        Path(args.input),
        Path(args.output) if args.output else None,
        title=args.title,
        preserve_html_tables=args.html_tables
    )
    print(f"Saved to: {output}")
    return EXIT_OK


def cmd_convert_advanced(args: argparse.Namespace, config: dict, logger: logging.Logger) -> int:
    input_path = Path(args.input)
    markdown = MarkdownConverter(config=config).test_conversion(
        input_path.read_text(encoding='utf-8'),
        heading_style=args.heading_style,
        bullets=args.bullet_marker,
        code_style=args.code_style,
        fence=args.fence,
        preserve_html_tables=args.html_tables
    )
    if args.preview:
        print(markdown)
        return EXIT_OK

    output = Path(args.output) if args.output else input_path.with_suffix('.md')
    output.write_text(markdown, encoding='utf-8')
    print(f"Saved to: {output}")
    return EXIT_OK


def cmd_download_images(args: argparse.Namespace, config: dict, logger: logging.Logger) -> int:
    exporter = MarkdownExporter(config, ConfluenceClient.from_config(config))
    result = exporter.download_images_for_file(
        Path(args.input),
        Path(args.images_dir) if args.images_dir else None,
        update=args.update
    )
    print(f"Downloaded {result.download_count} images ({len(result.failed)} failed)")
    return EXIT_FAILURE if result.failed and not result.downloaded else EXIT_OK


def cmd_export_to_wikijs(args: argparse.Namespace, config: dict, logger: logging.Logger) -> int:
    space_key = _space_key(args, config)
    importer = WikiJsImporter(
        config,
        confluence_client=ConfluenceClient.from_config(config),
        wikijs_client=WikiJsClient.from_config(config)
    )
    result = importer.export_space_to_wikijs(
        space_key,
        upload_path=args.upload_path,
        page_prefix=args.page_prefix,
        namespace=args.namespace,
        preserve_html_tables=args.html_tables,
        preserve_hierarchy=args.preserve_hierarchy,
        images=args.images,
        update=args.update,
        dry_run=args.dry_run,
        create_navigation=args.create_navigation
    )
    print_batch_summary(result)
    return batch_exit_code(result)


def cmd_convert_to_wikijs(args: argparse.Namespace, config: dict, logger: logging.Logger) -> int:
    output = WikiJsImporter(config).convert_file_to_wikijs(
        Path(args.input),
        Path(args.output) if args.output else None
    )
    print(f"Saved to: {output}")
    return EXIT_OK


def cmd_test_connection(args: argparse.Namespace, config: dict, logger: logging.Logger) -> int:
    print(f"Testing Confluence API connection to {get_nested(config, 'confluence.base_url')}...")
    if not ConfluenceClient.from_config(config).test_connection():
        print("Confluence connection test failed")
        return EXIT_FAILURE
    print("Confluence connection test successful")

    if args.wikijs:
        ConfigLoader.validate(config, require_wikijs=True)
        client = WikiJsClient.from_config(config)
        try:
            client.get_page_by_path('home')
        except (WikiJsApiError, WikiJsConnectionError) as e:
            print(f"Wiki.js connection test failed: {e}")
            return EXIT_FAILURE
        print("Wiki.js connection test successful")
    return EXIT_OK


def apply_global_options(config: dict, args: argparse.Namespace) -> dict:
    """Merge CLI options into the configuration; CLI takes precedence."""
    if args.ignore_ssl:
        set_nested(config, 'confluence.verify_ssl', False)
        set_nested(config, 'wikijs.verify_ssl', False)
    if getattr(args, 'download_images', False):
        set_nested(config, 'export.download_images', True)
    if getattr(args, 'html_tables', False):
        set_nested(config, 'export.html_tables', True)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    use_system_ca_if_requested()

    try:
        config = apply_global_options(ConfigLoader.load(args.config), args)
        logger = setup_logging(
            verbosity=args.verbose,
            log_file=args.log_file or get_nested(config, 'logging.file'),
            level=None if args.verbose else get_nested(config, 'logging.level')
        )
        log_section(f"Confluence to Markdown Export Tool {__version__}")

        if args.needs_confluence:
            ConfigLoader.validate(config, require_wikijs=getattr(args, 'needs_wikijs', False))
            log_config(config)
    except FileNotFoundError as e:
        print(f"ERROR: File not found: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except (ValueError, yaml.YAMLError) as e:
        print(f"ERROR: Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        return args.func(args, config, logger)

    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except (OSError, requests.exceptions.RequestException, WikiJsApiError, WikiJsConnectionError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"ERROR: Unexpected error: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
