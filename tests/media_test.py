"""
Pillow codec, Tesseract adapter and S3 object storage.
"""

import io
import unittest
from unittest.mock import MagicMock, patch

from PIL import Image

from fakes import make_png
from media import FIT_CONTAIN, FIT_COVER, PillowImageCodec, TesseractTextRecognizer
from storage import S3ObjectStorage, rendition_key


def open_image(data):
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


class TestPillowImageCodec(unittest.TestCase):
    def setUp(self):
        self.codec = PillowImageCodec()
        self.screenshot = make_png(1440, 900)

    def test_encode_webp(self):
        webp = self.codec.encode(self.screenshot, "webp", 85)
        image = open_image(webp)
        self.assertEqual(image.format, "WEBP")
        self.assertEqual(image.size, (1440, 900))

    def test_encode_jpeg_flattens_alpha(self):
        out = io.BytesIO()
        Image.new("RGBA", (20, 10), (255, 0, 0, 128)).save(out, "PNG")
        image = open_image(self.codec.encode(out.getvalue(), "JPEG", 80))
        self.assertEqual(image.format, "JPEG")
        self.assertEqual(image.mode, "RGB")

    def test_cover_resize_fills_exact_box(self):
        thumb = open_image(self.codec.resize(self.screenshot, 300, 200, FIT_COVER))
        self.assertEqual(thumb.size, (300, 200))
        self.assertEqual(thumb.format, "PNG")

    def test_contain_resize_keeps_aspect_ratio(self):
        thumb = open_image(self.codec.resize(self.screenshot, 300, 300, FIT_CONTAIN))
        self.assertEqual(thumb.width, 300)
        self.assertIn(thumb.height, (187, 188))

    def test_rejects_bad_input(self):
        with self.assertRaises(Exception):
            self.codec.encode(b"not an image", "WEBP", 85)
        with self.assertRaises(ValueError):
            self.codec.resize(self.screenshot, 0, 200)
        with self.assertRaises(ValueError):
            self.codec.resize(self.screenshot, 300, 200, "stretch")


class TestTesseractTextRecognizer(unittest.TestCase):
    @patch("media.ocr.pytesseract.image_to_string", return_value="Book now")
    def test_recognize_passes_language_and_timeout(self, image_to_string):
        recognizer = TesseractTextRecognizer(language="deu", timeout=15)

        self.assertEqual(recognizer.recognize(make_png(40, 20)), "Book now")

        image, = image_to_string.call_args[0]
        self.assertEqual(image.size, (40, 20))
        self.assertEqual(image_to_string.call_args[1], {"lang": "deu", "config": "", "timeout": 15})


class TestS3ObjectStorage(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()

    def test_put_returns_cdn_uri(self):
        storage = S3ObjectStorage(self.client, "captures", "https://cdn.example.com/")
        uri = storage.put("screenshots/s/p/c/thumb.webp", b"data", "image/webp")

        self.assertEqual(uri, "https://cdn.example.com/screenshots/s/p/c/thumb.webp")
        kwargs = self.client.put_object.call_args[1]
        self.assertEqual(kwargs["Bucket"], "captures")
        self.assertEqual(kwargs["Key"], "screenshots/s/p/c/thumb.webp")
        self.assertEqual(kwargs["ContentType"], "image/webp")

    def test_put_without_cdn(self):
        storage = S3ObjectStorage(self.client, "captures")
        self.assertEqual(storage.put("k.png", b"x", "image/png"), "s3://captures/k.png")

    def test_client_errors_propagate(self):
        self.client.put_object.side_effect = ConnectionError("endpoint unreachable")
        storage = S3ObjectStorage(self.client, "captures")
        with self.assertRaises(ConnectionError):
            storage.put("k.png", b"x", "image/png")

    def test_requires_bucket(self):
        with self.assertRaises(ValueError):
            S3ObjectStorage(self.client, "")

    def test_rendition_key(self):
        self.assertEqual(rendition_key("s1", "p1", "c1", "original.png"), "screenshots/s1/p1/c1/original.png")
        self.assertEqual(rendition_key("s1", "p1", "c1", "original.png", prefix=None), "s1/p1/c1/original.png")


if __name__ == '__main__':
    unittest.main()
