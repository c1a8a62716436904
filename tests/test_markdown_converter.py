"""Tests for the markdown rewrite engine and its Confluence rules."""

import re
from datetime import datetime, timezone

import pytest

from converters.markdown_converter import (
    MarkdownConverter,
    background_color_annotation,
    get_color_name,
)
from models import ConfluencePage, ConversionOptions, TableCell

SEPARATOR_LINE = re.compile(r'^\|( *---+ *\|)+$')

CODE_MACRO = (
    '<ac:structured-macro ac:name="code">'
    '<ac:parameter ac:name="language">python</ac:parameter>'
    '<ac:plain-text-body><![CDATA[print("hi")]]></ac:plain-text-body>'
    '</ac:structured-macro>'
)

HEADER_TABLE = (
    '<table><tbody>'
    '<tr><th>Name</th><th>Value</th></tr>'
    '<tr><td>alpha</td><td>1</td></tr>'
    '<tr><td>beta</td><td>2</td></tr>'
    '</tbody></table>'
)


@pytest.fixture
def converter():
    return MarkdownConverter()


class TestCodeBlocks:
    """Code and noformat macros become fenced blocks."""

    def test_code_macro_fenced_with_language(self, converter):
        """Opening fence carries the language, body and closing fence follow on their own lines."""
        lines = converter.convert(CODE_MACRO).splitlines()
        start = lines.index('```python')
        assert lines[start + 1] == 'print("hi")'
        assert lines[start + 2] == '```'

    def test_custom_fence(self, converter):
        """The fence string is configurable."""
        result = converter.convert(CODE_MACRO, ConversionOptions(fence='~~~'))
        assert '~~~python\nprint("hi")\n~~~' in result

    def test_fence_from_config(self):
        """export.fence is the default, per-call options still win."""
        converter = MarkdownConverter(config={'export': {'fence': '~~~'}})
        assert '~~~python\nprint("hi")\n~~~' in converter.convert(CODE_MACRO)
        assert '~~~python\n' in converter.test_conversion(CODE_MACRO)
        assert '```python\n' in converter.convert(CODE_MACRO, ConversionOptions(fence='```'))

    def test_indented_code_style(self, converter):
        """Indented code style prefixes each line with four spaces."""
        result = converter.test_conversion('<p>Intro</p>' + CODE_MACRO, code_style='indented')
        assert '    print("hi")' in result
        assert '```' not in result


class TestTables:
    """Markdown table rendering."""

    def test_separator_follows_header_row(self, converter):
        """Exactly one separator line, directly after the first row."""
        lines = [line for line in converter.convert(HEADER_TABLE).splitlines() if line.startswith('|')]
        separators = [i for i, line in enumerate(lines) if SEPARATOR_LINE.match(line)]
        assert separators == [1]
        assert lines[0] == '| Name | Value |'
        assert lines[2] == '| alpha | 1 |'

    def test_header_row_inside_thead(self, converter):
        """A th row in thead is still the first row of the table."""
        html = (
            '<table><thead><tr><th>A</th><th>B</th></tr></thead>'
            '<tbody><tr><td>1</td><td>2</td></tr></tbody></table>'
        )
        result = converter.convert(html)
        assert '| A | B |\n| --- | --- |\n| 1 | 2 |' in result

    def test_table_without_header_has_no_separator(self, converter):
        """Rows made only of td cells never get a separator."""
        html = '<table><tbody><tr><td>1</td><td>2</td></tr><tr><td>3</td><td>4</td></tr></tbody></table>'
        result = converter.convert(html)
        assert '---' not in result
        assert '| 1 | 2 |\n| 3 | 4 |' in result

    def test_pipe_in_cell_is_escaped(self, converter):
        """Pipes inside cell text cannot break the row."""
        html = '<table><tbody><tr><td>a|b</td></tr></tbody></table>'
        assert '| a\\|b |' in converter.convert(html)

    def test_cell_background_colour_annotation(self, converter):
        """Recognized colours become semantic names, others keep their RGB values."""
        html = (
            '<table><tbody><tr>'
            '<td style="background-color: rgb(230,245,210);">OK</td>'
            '<td style="background-color: rgb(10,10,10);">Dark</td>'
            '</tr></tbody></table>'
        )
        result = converter.convert(html)
        assert '| OK {.success} | Dark {.color-10-10-10} |' in result

    def test_html_table_mode(self, converter):
        """Tables are kept as cleaned, indented HTML."""
        html = (
            '<table class="confluenceTable"><tbody>'
            '<tr><th class="confluenceTh">Name</th></tr>'
            '<tr><td data-highlight-colour="#e3fcef">alpha</td></tr>'
            '</tbody></table>'
        )
        result = converter.convert(html, ConversionOptions(preserve_html_tables=True))
        assert '<table' in result
        assert '    <th>Name</th>' in result
        assert 'background-color: #e3fcef;' in result
        assert 'confluence' not in result
        assert '---' not in result


class TestColourHelpers:
    """Background colour annotation helpers."""

    @pytest.mark.parametrize('rgb,name', [
        ((230, 245, 210), 'success'),
        ((255, 250, 180), 'warning'),
        ((255, 235, 230), 'error'),
        ((200, 200, 200), None),
        ((10, 10, 10), None),
    ])
    def test_get_color_name(self, rgb, name):
        """RGB triples map onto the Confluence status colours."""
        assert get_color_name(*rgb) == name

    def test_non_rgb_colour(self):
        """Named or hex colours become a bg- token."""
        assert background_color_annotation('background-color: #ff0000') == 'bg--ff0000'

    def test_no_background(self):
        """Cells without a background have no annotation."""
        assert background_color_annotation('color: red') is None

    def test_table_cell_render(self):
        """Empty cells render as a single space."""
        assert TableCell(text='').render() == ' '
        assert TableCell(text='x', background_color_annotation='info').render() == 'x {.info}'


class TestImagesAndMacros:
    """Image, admonition and gallery rules."""

    def test_attachment_image_gets_comment(self, converter):
        """Attachment images keep their download URL and name the file."""
        markup = '<ac:image><ri:attachment ri:filename="my image.png"/></ac:image>'
        result = converter.convert(markup, ConversionOptions(page_id='99'))
        assert '![my image.png](/download/attachments/99/my%20image.png)' in result
        assert '<!-- Confluence Attachment: my image.png -->' in result

    def test_external_image_with_size(self, converter):
        """Size attributes of non-attachment images are recorded."""
        result = converter.convert('<img src="https://example.com/a.png" alt="A" width="100"/>')
        assert '![A](https://example.com/a.png)' in result
        assert '<!-- Image attributes: width="100" -->' in result

    def test_admonition_wrapped_in_comments(self, converter):
        """Admonition bodies sit between begin and end comments."""
        markup = (
            '<ac:structured-macro ac:name="warning"><ac:rich-text-body><p>Careful</p>'
            '</ac:rich-text-body></ac:structured-macro>'
        )
        result = converter.convert(markup)
        assert '<!-- Confluence Macro: warning -->\nCareful\n<!-- End warning -->' in result

    def test_gallery(self, converter):
        """Gallery images are listed between gallery comments."""
        markup = (
            '<ac:structured-macro ac:name="gallery">'
            '<ac:parameter ac:name="include">a.png</ac:parameter></ac:structured-macro>'
        )
        result = converter.convert(markup, ConversionOptions(page_id='42'))
        assert '<!-- Confluence Gallery -->' in result
        assert '![a.png](/download/attachments/42/a.png)' in result
        assert '<!-- End Gallery -->' in result

    def test_unknown_macro_comment_survives(self, converter):
        """Annotation comments are carried into the markdown."""
        result = converter.convert('<p>Before</p><ac:structured-macro ac:name="toc"/><p>After</p>')
        assert '<!-- Confluence Macro: toc -->' in result
        assert '<!-- End toc -->' in result

    def test_page_link(self, converter):
        """Page links become markdown links."""
        markup = (
            '<p><ac:link><ri:page ri:content-title="Target Page"/>'
            '<ac:plain-text-link-body><![CDATA[See here]]></ac:plain-text-link-body></ac:link></p>'
        )
        assert '[See here](/pages/Target%20Page)' in converter.convert(markup)


class TestMarkdownConverterFacade:
    """Page level helpers of MarkdownConverter."""

    def test_headings_and_lists(self, converter):
        """Basic structure goes through the generic engine."""
        result = converter.convert('<h2>Setup</h2><ul><li>one</li><li>two</li></ul>')
        assert '## Setup' in result
        assert '- one' in result
        assert result.endswith('\n')
        assert '\n\n\n' not in result

    def test_convert_html_skips_macro_pass(self, converter):
        """Already normalized HTML goes straight to the engine."""
        result = converter.convert_html('<div class="confluence-macro-tip"><p>Hi</p></div>')
        assert result == '<!-- Confluence Macro: tip -->\nHi\n<!-- End tip -->\n'

    def test_setext_headings(self, converter):
        """Heading style can be switched per conversion."""
        result = converter.test_conversion('<h1>Title</h1>', heading_style='setext')
        assert 'Title\n=====' in result

    def test_convert_image_urls(self):
        """Relative download URLs are made absolute, others are left alone."""
        markdown = '![a](/download/attachments/1/a.png) ![b](https://x.example.com/b.png)'
        result = MarkdownConverter.convert_image_urls(markdown, 'https://wiki.example.com/')
        assert '![a](https://wiki.example.com/download/attachments/1/a.png)' in result
        assert '![b](https://x.example.com/b.png)' in result

    def test_metadata_header(self):
        """Front matter carries title, id, URL and creation time."""
        page = ConfluencePage(id='123', title='Say "hi"', body_storage='', webui_path='/display/DOCS/Hi')
        header = MarkdownConverter.create_metadata_header(page, datetime(2024, 1, 2, tzinfo=timezone.utc))
        assert header.splitlines() == [
            '---',
            'title: "Say \\"hi\\""',
            'id: "123"',
            'confluence_url: "/display/DOCS/Hi"',
            'created: "2024-01-02T00:00:00+00:00"',
            '---',
        ]

    def test_convert_page_to_file(self, converter, tmp_path):
        """Pages are written as sanitized-title markdown files."""
        page = ConfluencePage(
            id='5',
            title='Release: Notes',
            body_storage='<p>Hello</p><ac:image><ri:attachment ri:filename="a.png"/></ac:image>'
        )
        path = converter.convert_page_to_file(page, tmp_path, 'https://wiki.example.com')
        assert path == tmp_path / 'Release_Notes.md'
        content = path.read_text(encoding='utf-8')
        assert content.startswith('---\ntitle: "Release: Notes"')
        assert 'Hello' in content
        assert '![a.png](https://wiki.example.com/download/attachments/5/a.png)' in content
