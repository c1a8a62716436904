"""Tests for the command line interface wiring and exit codes."""

from unittest.mock import MagicMock, patch

import pytest

import export
from config_loader import ENV_OVERRIDES
from importers.wikijs_importer import IMAGES_KEEP, IMAGES_SKIP, IMAGES_UPLOAD
from models import BatchResult


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in list(ENV_OVERRIDES) + ['IGNORE_SSL_ERRORS', 'USE_SYSTEM_CA']:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def parser():
    return export.create_argument_parser()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(
        'confluence:\n'
        '  base_url: https://confluence.example.com\n'
        '  username: u\n'
        '  password: p\n'
        'wikijs:\n'
        '  base_url: https://wiki.example.com\n'
        '  api_key: k\n'
        f'export:\n'
        f'  output_directory: {tmp_path / "exports"}\n'
        '  progress_bars: false\n',
        encoding='utf-8'
    )
    return str(path)


class TestArgumentParser:
    """Subcommand wiring."""

    def test_export_to_wikijs_defaults(self, parser):
        """Images are kept and pages updated unless told otherwise."""
        args = parser.parse_args(['export-to-wikijs', '--space', 'DOCS'])
        assert args.images == IMAGES_KEEP
        assert args.update is True
        assert args.dry_run is False
        assert args.func is export.cmd_export_to_wikijs
        assert args.needs_wikijs is True

    def test_export_to_wikijs_options(self, parser):
        """Image mode and update flags are parsed."""
        args = parser.parse_args(['export-to-wikijs', '-s', 'DOCS', '--upload-images', '--no-update',
                                  '--namespace', 'de', '--create-navigation'])
        assert args.images == IMAGES_UPLOAD
        assert args.update is False
        assert args.namespace == 'de'
        assert args.create_navigation is True

        args = parser.parse_args(['export-to-wikijs', '--skip-images'])
        assert args.images == IMAGES_SKIP

    def test_image_modes_are_exclusive(self, parser):
        """Uploading and skipping images cannot be combined."""
        with pytest.raises(SystemExit):
            parser.parse_args(['export-to-wikijs', '--upload-images', '--skip-images'])

    def test_export_page_requires_id(self, parser):
        """export-page needs a page id."""
        with pytest.raises(SystemExit):
            parser.parse_args(['export-page'])

    def test_search_options(self, parser):
        """--query is an alias of --cql."""
        args = parser.parse_args(['search', '--query', 'type=page', '-l', '3'])
        assert args.cql == 'type=page'
        assert args.limit == 3

    def test_global_options(self, parser):
        """Global flags come before the subcommand."""
        args = parser.parse_args(['-vv', '--ignore-ssl', 'list-spaces'])
        assert args.verbose == 2
        assert args.ignore_ssl is True
        assert args.needs_confluence is True

    def test_command_required(self, parser):
        """A subcommand must be given."""
        with pytest.raises(SystemExit):
            parser.parse_args([])


class TestHelpers:
    """Exit codes and option merging."""

    @pytest.mark.parametrize('succeeded,failed,skipped,code', [
        (3, 0, 0, export.EXIT_OK),
        (2, 1, 0, export.EXIT_OK),
        (0, 0, 0, export.EXIT_OK),
        (0, 2, 0, export.EXIT_FAILURE),
        (0, 1, 1, export.EXIT_OK),
    ])
    def test_batch_exit_code(self, succeeded, failed, skipped, code):
        """Batches fail only when every item failed."""
        assert export.batch_exit_code(BatchResult(succeeded, failed, skipped)) == code

    def test_apply_global_options(self, parser):
        """CLI flags override configuration."""
        args = parser.parse_args(['--ignore-ssl', 'export-space', '--download-images', '--html-tables'])
        config = export.apply_global_options({}, args)
        assert config['confluence']['verify_ssl'] is False
        assert config['wikijs']['verify_ssl'] is False
        assert config['export']['download_images'] is True
        assert config['export']['html_tables'] is True

    def test_space_key_from_config(self, parser):
        """The space key falls back to configuration."""
        args = parser.parse_args(['export-space'])
        assert export._space_key(args, {'export': {'space_key': 'DOCS'}}) == 'DOCS'
        with pytest.raises(ValueError):
            export._space_key(args, {})


class TestMain:
    """End to end command runs with mocked services."""

    def test_convert_html(self, tmp_path, capsys):
        """Offline conversions need no Confluence settings."""
        source = tmp_path / 'page.html'
        source.write_text('<h1>Hello</h1>', encoding='utf-8')

        assert export.main(['convert-html', '--input', str(source)]) == export.EXIT_OK
        assert (tmp_path / 'page.md').read_text(encoding='utf-8') == '# Hello\n'
        assert 'Saved to:' in capsys.readouterr().out

    def test_convert_advanced_preview(self, tmp_path, capsys):
        """Preview prints instead of writing."""
        source = tmp_path / 'page.html'
        source.write_text('<h1>Hello</h1><ul><li>item</li></ul>', encoding='utf-8')

        code = export.main(['convert-advanced', '-i', str(source), '--heading-style', 'setext',
                            '--bullet-marker', '*', '--preview'])

        assert code == export.EXIT_OK
        out = capsys.readouterr().out
        assert 'Hello\n=====' in out
        assert '* item' in out
        assert not (tmp_path / 'page.md').exists()

    def test_convert_to_wikijs(self, tmp_path):
        """Exported files can be rewritten for Wiki.js."""
        source = tmp_path / 'page.md'
        source.write_text('<!-- Confluence Macro: note -->\nRead me\n<!-- End note -->', encoding='utf-8')

        assert export.main(['convert-to-wikijs', '-i', str(source)]) == export.EXIT_OK
        assert (tmp_path / 'page_wikijs.md').read_text(encoding='utf-8') == '> **Note**\n> Read me\n'

    def test_missing_input_file(self, tmp_path):
        """File errors during a command exit with a failure."""
        assert export.main(['convert-to-wikijs', '-i', str(tmp_path / 'missing.md')]) == export.EXIT_FAILURE

    def test_missing_configuration(self):
        """Commands that talk to Confluence need its settings."""
        assert export.main(['list-spaces']) == export.EXIT_CONFIG_ERROR

    def test_missing_config_file(self, tmp_path):
        """An unknown config file is a configuration error."""
        assert export.main(['--config', str(tmp_path / 'nope.yaml'), 'list-spaces']) == export.EXIT_CONFIG_ERROR

    def test_missing_space_key(self, config_file):
        """Space commands need a key."""
        assert export.main(['--config', config_file, 'export-space']) == export.EXIT_CONFIG_ERROR

    def test_export_space(self, config_file, capsys):
        """A space export reports its tally."""
        exporter = MagicMock()
        exporter.export_space.return_value = BatchResult(succeeded=2, failed=1, errors=['Bad: boom'])

        with patch.object(export, 'ConfluenceClient'), \
                patch.object(export, 'MarkdownExporter', return_value=exporter):
            code = export.main(['--config', config_file, 'export-space', '--space', 'DOCS',
                                '--preserve-hierarchy'])

        assert code == export.EXIT_OK
        exporter.export_space.assert_called_once_with('DOCS', preserve_hierarchy=True)
        out = capsys.readouterr().out
        assert 'Succeeded: 2 pages' in out
        assert 'Bad: boom' in out

    def test_export_space_all_failed(self, config_file):
        """A batch where every page failed exits with a failure."""
        exporter = MagicMock()
        exporter.export_space.return_value = BatchResult(failed=2)

        with patch.object(export, 'ConfluenceClient'), \
                patch.object(export, 'MarkdownExporter', return_value=exporter):
            assert export.main(['--config', config_file, 'export-space', '-s', 'DOCS']) == export.EXIT_FAILURE

    def test_export_to_wikijs_requires_wikijs_settings(self, tmp_path):
        """Wiki.js commands validate the Wiki.js section."""
        path = tmp_path / 'config.yaml'
        path.write_text('confluence:\n  base_url: https://c.example.com\n  username: u\n  password: p\n',
                        encoding='utf-8')
        assert export.main(['--config', str(path), 'export-to-wikijs', '-s', 'DOCS']) == export.EXIT_CONFIG_ERROR

    def test_export_to_wikijs(self, config_file):
        """Parsed options reach the importer."""
        importer = MagicMock()
        importer.export_space_to_wikijs.return_value = BatchResult(succeeded=1)

        with patch.object(export, 'ConfluenceClient'), patch.object(export, 'WikiJsClient'), \
                patch.object(export, 'WikiJsImporter', return_value=importer):
            code = export.main(['--config', config_file, 'export-to-wikijs', '-s', 'DOCS',
                                '--skip-images', '--dry-run', '--page-prefix', 'kb'])

        assert code == export.EXIT_OK
        kwargs = importer.export_space_to_wikijs.call_args.kwargs
        assert kwargs['images'] == IMAGES_SKIP
        assert kwargs['dry_run'] is True
        assert kwargs['page_prefix'] == 'kb'
        assert kwargs['update'] is True

    def test_connection_failure(self, config_file):
        """A failed connection test exits with a failure."""
        with patch.object(export, 'ConfluenceClient') as client_class:
            client_class.from_config.return_value.test_connection.return_value = False
            assert export.main(['--config', config_file, 'test-connection']) == export.EXIT_FAILURE
