"""Tests for writing converted pages to disk."""

from unittest.mock import MagicMock, patch

import pytest

from exporters.image_processor import ImageProcessor
from exporters.markdown_exporter import MarkdownExporter, image_reference_prefix
from models import ConfluencePage

BASE_URL = 'https://confluence.example.com'


def make_page(page_id, title, body='<p>Body</p>', ancestors=()):
    return ConfluencePage(
        id=page_id,
        title=title,
        body_storage=body,
        webui_path=f'/display/DOCS/{page_id}',
        ancestors=[{'id': a_id, 'title': a_title} for a_id, a_title in ancestors]
    )


@pytest.fixture
def client():
    client = MagicMock()
    client.base_url = BASE_URL
    client.auth_header = 'Basic abc'
    client.verify_ssl = True
    client.timeout = 30
    return client


@pytest.fixture
def image_session():
    response = MagicMock(content=b'image-bytes')
    response.raise_for_status.return_value = None
    session = MagicMock()
    session.get.return_value = response
    return session


def make_exporter(tmp_path, client=None, **export_settings):
    config = {'export': dict({'progress_bars': False}, **export_settings)}
    return MarkdownExporter(config, client, output_dir=str(tmp_path))


class TestExportPage:
    """Single page exports."""

    def test_writes_front_matter_and_markdown(self, tmp_path, client):
        """The file has a front matter block followed by the converted body."""
        exporter = make_exporter(tmp_path, client)
        path = exporter.export_page(make_page('1', 'Getting Started', '<h1>Intro</h1><p>Hello</p>'))

        assert path == tmp_path / 'Getting_Started.md'
        content = path.read_text(encoding='utf-8')
        assert content.startswith('---\ntitle: "Getting Started"\nid: "1"\n')
        assert '# Intro' in content
        assert 'Hello' in content

    def test_save_raw_html(self, tmp_path, client):
        """The storage format can be kept next to the markdown."""
        exporter = make_exporter(tmp_path, client, save_raw_html=True)
        exporter.export_page(make_page('1', 'Raw', '<p>raw</p>'))
        assert (tmp_path / 'Raw.html').read_text(encoding='utf-8') == '<p>raw</p>'

    def test_download_images(self, tmp_path, client, image_session):
        """Images are fetched into images/ next to the page."""
        exporter = make_exporter(tmp_path, client, download_images=True)
        exporter._image_processor = ImageProcessor(BASE_URL, 'Basic abc', session=image_session)
        body = '<p>See</p><ac:image><ri:attachment ri:filename="chart.png"/></ac:image>'

        path = exporter.export_page(make_page('77', 'Charts', body))

        assert (tmp_path / 'images' / 'chart.png').read_bytes() == b'image-bytes'
        assert '![chart.png](./images/chart.png)' in path.read_text(encoding='utf-8')
        image_session.get.assert_called_once()
        assert image_session.get.call_args.args[0] == f'{BASE_URL}/download/attachments/77/chart.png'

    def test_image_processor_built_from_client(self, tmp_path, client):
        """The image pipeline reuses the client's credentials."""
        exporter = make_exporter(tmp_path, client)
        assert exporter.image_processor.base_url == BASE_URL
        assert exporter.image_processor.auth_header == 'Basic abc'


class TestExportSpace:
    """Whole space exports."""

    def test_export_space(self, tmp_path, client):
        """Every page lands in the space directory."""
        client.get_all_pages_from_space.return_value = [make_page('1', 'One'), make_page('2', 'Two')]
        result = make_exporter(tmp_path, client).export_space('DOCS')

        assert result.succeeded == 2
        assert result.failed == 0
        assert (tmp_path / 'DOCS' / 'One.md').exists()
        assert (tmp_path / 'DOCS' / 'Two.md').exists()

    def test_failing_page_does_not_stop_export(self, tmp_path, client):
        """One failing page is counted and the rest are exported."""
        client.get_all_pages_from_space.return_value = [make_page('1', 'One'), make_page('2', 'Two')]
        exporter = make_exporter(tmp_path, client)
        real_export = exporter.export_page

        def export_page(page, output_dir=None):
            if page.id == '1':
                raise RuntimeError('conversion failed')
            return real_export(page, output_dir)

        with patch.object(exporter, 'export_page', side_effect=export_page):
            result = exporter.export_space('DOCS')

        assert result.succeeded == 1
        assert result.failed == 1
        assert result.errors == ['One: conversion failed']
        assert (tmp_path / 'DOCS' / 'Two.md').exists()

    def test_preserve_hierarchy(self, tmp_path, client):
        """Ancestors become nested directories."""
        client.get_all_pages_from_space.return_value = [
            make_page('3', 'Child', ancestors=[('1', 'Top Level'), ('2', 'Sub: Section')])
        ]
        make_exporter(tmp_path, client).export_space('DOCS', preserve_hierarchy=True)
        assert (tmp_path / 'DOCS' / 'Top_Level' / 'Sub_Section' / 'Child.md').exists()

    def test_requires_client(self, tmp_path):
        """Space exports need a Confluence client."""
        with pytest.raises(ValueError):
            make_exporter(tmp_path).export_space('DOCS')


class TestFileCommands:
    """Conversions of files already on disk."""

    def test_convert_html_file(self, tmp_path):
        """A saved HTML file is converted next to itself."""
        source = tmp_path / 'page.html'
        source.write_text('<h2>Usage</h2><p>Run it</p>', encoding='utf-8')

        output = make_exporter(tmp_path).convert_html_file(source)

        assert output == tmp_path / 'page.md'
        assert output.read_text(encoding='utf-8') == '## Usage\n\nRun it\n'

    def test_convert_html_file_with_title(self, tmp_path):
        """A title adds front matter."""
        source = tmp_path / 'page.html'
        source.write_text('<p>Run it</p>', encoding='utf-8')

        output = make_exporter(tmp_path).convert_html_file(source, tmp_path / 'out' / 'x.md', title='Usage')

        content = output.read_text(encoding='utf-8')
        assert content.startswith('---\ntitle: "Usage"\n')
        assert content.endswith('Run it\n')

    def test_download_images_for_file(self, tmp_path, image_session):
        """Images referenced by a markdown file are fetched into a separate copy."""
        source = tmp_path / 'page.md'
        source.write_text('![a](https://confluence.example.com/download/attachments/1/a.png)\n', encoding='utf-8')
        exporter = make_exporter(tmp_path)
        exporter._image_processor = ImageProcessor(BASE_URL, session=image_session)

        result = exporter.download_images_for_file(source)

        assert result.download_count == 1
        assert (tmp_path / 'images' / 'a.png').exists()
        assert (tmp_path / 'page_with_images.md').read_text(encoding='utf-8') == '![a](./images/a.png)\n'
        assert source.read_text(encoding='utf-8').startswith('![a](https://')

    def test_download_images_in_place(self, tmp_path, image_session):
        """With update the input file itself is rewritten."""
        source = tmp_path / 'page.md'
        source.write_text('![a](/download/attachments/1/a.png)', encoding='utf-8')
        exporter = make_exporter(tmp_path)
        exporter._image_processor = ImageProcessor(BASE_URL, session=image_session)

        exporter.download_images_for_file(source, tmp_path / 'media', update=True)

        assert source.read_text(encoding='utf-8') == '![a](./media/a.png)'
        assert (tmp_path / 'media' / 'a.png').exists()
        assert not (tmp_path / 'page_with_images.md').exists()


class TestImageReferencePrefix:
    """Relative image folder references."""

    def test_sibling_directory(self, tmp_path):
        """A folder next to the file gets a ./ prefix."""
        assert image_reference_prefix(tmp_path / 'images', tmp_path) == './images'

    def test_parent_directory(self, tmp_path):
        """A folder outside the file's directory keeps its .. segments."""
        assert image_reference_prefix(tmp_path / 'media', tmp_path / 'docs') == '../media'
