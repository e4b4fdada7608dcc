import io
from abc import ABC, abstractmethod
from typing import Optional

from PIL import Image, ImageOps

FIT_COVER = "cover"
FIT_CONTAIN = "contain"


class ImageCodec(ABC):
    """
    Image encoding and resizing collaborator.
    Implementations raise on input they cannot decode; the pipeline maps that to EncodingFailure.
    """

    @abstractmethod
    def encode(self, raw: bytes, fmt: str, quality: Optional[int] = None) -> bytes:
        pass

    @abstractmethod
    def resize(self, raw: bytes, width: int, height: int, fit: str = FIT_COVER) -> bytes:
        """Resize and return PNG bytes, suitable for a later encode()."""
        pass


class PillowImageCodec(ImageCodec):
    """Pillow-backed codec for PNG screenshots -> WebP/PNG/JPEG renditions."""

    def encode(self, raw: bytes, fmt: str, quality: Optional[int] = None) -> bytes:
        fmt = fmt.upper()
        with Image.open(io.BytesIO(raw)) as img:
            img.load()
            if fmt == "JPEG" and img.mode in ("RGBA", "LA", "P"):
                # JPEG has no alpha channel
                background = Image.new("RGB", img.size, (255, 255, 255))
                converted = img.convert("RGBA")
                background.paste(converted, mask=converted.split()[-1])
                img = background
            options = {}
            if quality is not None and fmt in ("WEBP", "JPEG"):
                options["quality"] = quality
            if fmt == "PNG":
                options["optimize"] = True
            out = io.BytesIO()
            img.save(out, fmt, **options)
            return out.getvalue()

    def resize(self, raw: bytes, width: int, height: int, fit: str = FIT_COVER) -> bytes:
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid target size {width}x{height}")
        with Image.open(io.BytesIO(raw)) as img:
            img.load()
            if fit == FIT_COVER:
                resized = ImageOps.fit(img, (width, height), Image.Resampling.LANCZOS)
            elif fit == FIT_CONTAIN:
                resized = img.copy()
                resized.thumbnail((width, height), Image.Resampling.LANCZOS)
            else:
                raise ValueError(f"Unknown fit mode: {fit}")
            out = io.BytesIO()
            resized.save(out, "PNG")
            return out.getvalue()
