import unittest

from converters.filenames import (
    extract_filename_from_url,
    is_attachment_url,
    sanitize_filename,
    sanitize_image_filename,
)


class TestSanitizeFilename(unittest.TestCase):
    def test_reserved_characters_replaced(self):
        self.assertEqual(sanitize_filename('My: Page/Name?'), 'My_Page_Name')

    def test_whitespace_collapsed(self):
        self.assertEqual(sanitize_filename('  a   b  '), 'a_b')

    def test_result_has_no_reserved_characters(self):
        for name in ('a<b>c', 'x|y*z', 'q"w\\e', 'tab\tname'):
            result = sanitize_filename(name)
            for char in '<>:"/\\|?*\t ':
                self.assertNotIn(char, result)

    def test_truncated(self):
        self.assertEqual(len(sanitize_filename('a' * 500)), 200)


class TestSanitizeImageFilename(unittest.TestCase):
    def test_extension_kept(self):
        self.assertEqual(sanitize_image_filename('my image (1).PNG'), 'my_image_(1).PNG')

    def test_long_name_keeps_extension(self):
        result = sanitize_image_filename('a' * 300 + '.png')
        self.assertEqual(len(result), 200)
        self.assertTrue(result.endswith('.png'))

    def test_name_without_extension(self):
        self.assertEqual(sanitize_image_filename('diagram file'), 'diagram_file')

    def test_dotfile(self):
        self.assertEqual(sanitize_image_filename('.hidden'), '.hidden')

    def test_stem_of_only_reserved_characters(self):
        self.assertEqual(sanitize_image_filename('???.png'), 'file.png')

    def test_fallback_stem_fits_length_cap(self):
        result = sanitize_image_filename('?.' + 'x' * 198)
        self.assertEqual(len(result), 200)
        self.assertEqual(result, 'f.' + 'x' * 198)


class TestAttachmentUrls(unittest.TestCase):
    def test_extract_decodes_filename(self):
        url = '/download/attachments/123/my%20image.png?version=1&api=v2'
        self.assertEqual(extract_filename_from_url(url), 'my image.png')

    def test_extract_from_thumbnail(self):
        url = 'https://wiki.example.com/download/thumbnails/9/pic.jpg'
        self.assertEqual(extract_filename_from_url(url), 'pic.jpg')

    def test_extract_from_other_url(self):
        self.assertIsNone(extract_filename_from_url('https://example.com/image.png'))

    def test_is_attachment_url(self):
        self.assertTrue(is_attachment_url('/download/attachments/1/a.png'))
        self.assertTrue(is_attachment_url('/download/thumbnails/1/a.png'))
        self.assertFalse(is_attachment_url('./images/a.png'))


if __name__ == '__main__':
    unittest.main()
