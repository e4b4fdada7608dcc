"""Text recognition over screenshot bytes."""

import io
from abc import ABC, abstractmethod

import pytesseract
from PIL import Image

from capture.core import OCR_LANG


class TextRecognizer(ABC):
    """Plain-text extraction from image bytes. May take seconds per call."""

    @abstractmethod
    def recognize(self, image_bytes: bytes) -> str:
        pass


class TesseractTextRecognizer(TextRecognizer):
    """
    Tesseract via pytesseract. Every call spawns and disposes its own tesseract
    process, so instances are safe to share across worker threads.
    """
    name = "tesseract"

    def __init__(self, language: str = OCR_LANG, config: str = "", timeout: int = 0):
        self.language = language
        self.config = config
        self.timeout = timeout

    def recognize(self, image_bytes: bytes) -> str:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.load()
            return pytesseract.image_to_string(
                img, lang=self.language, config=self.config, timeout=self.timeout
            )
