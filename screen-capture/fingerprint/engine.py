"""Content-addressable identifiers for a rendered page: content, DOM and perceptual hashes."""

from __future__ import annotations

import hashlib
import io
from dataclasses import dataclass

from bs4 import BeautifulSoup, NavigableString, Tag
from PIL import Image, UnidentifiedImageError

# 16x16 difference hash -> 256 bits
HASH_SIZE = 16
HASH_BITS = HASH_SIZE * HASH_SIZE
DEGENERATE_HASH = "0" * (HASH_BITS // 4)


@dataclass(frozen=True)
class Fingerprint:
    """Hash triple identifying a capture, plus the pixel size of the hashed image."""
    content_hash: str
    dom_hash: str
    perceptual_hash: str
    width: int
    height: int

    @property
    def degenerate(self) -> bool:
        return self.width == 0 or self.height == 0


def content_hash(data: bytes) -> str:
    """SHA-256 of the raw image bytes."""
    return hashlib.sha256(data or b"").hexdigest()


def _open_tag(tag: Tag) -> str:
    attrs = "".join(
        f' {name}="{" ".join(value) if isinstance(value, list) else value}"'
        for name, value in sorted(tag.attrs.items())
    )
    return f"<{tag.name}{attrs}>"


def _canonical_dom_lines(html: str) -> list[str]:
    """
    Canonical line form of a DOM: one line per opening tag, text run and closing tag,
    indented by depth. Attributes are sorted by name so their source order does not
    matter, runs of whitespace in text collapse to one space and blank text is dropped.
    """
    soup = BeautifulSoup(html or "", "lxml")
    lines: list[str] = []
    # (depth, node, closing tag name); node is None for a pending closing tag.
    pending = [(0, node, None) for node in reversed(soup.contents)]
    while pending:
        depth, node, closing = pending.pop()
        indent = "  " * depth
        if node is None:
            lines.append(f"{indent}</{closing}>")
        elif isinstance(node, Tag):
            lines.append(indent + _open_tag(node))
            pending.append((depth, None, node.name))
            pending.extend((depth + 1, child, None) for child in reversed(node.contents))
        elif isinstance(node, NavigableString):
            text = " ".join(node.split())
            if text:
                lines.append(indent + text)
    return lines


def dom_hash(html: str) -> str:
    """SHA-256 of the canonicalised DOM serialization."""
    payload = "\n".join(_canonical_dom_lines(html))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def perceptual_hash(data: bytes) -> tuple[str, int, int]:
    """
    Difference hash of the image: greyscale, shrink to (HASH_SIZE + 1) x HASH_SIZE,
    one bit per horizontally adjacent pixel pair.
    Returns (hex_hash, width, height). Empty or undecodable input yields the
    degenerate all-zero hash with 0x0 dimensions.
    """
    if not data:
        return DEGENERATE_HASH, 0, 0
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            small = image.convert("L").resize((HASH_SIZE + 1, HASH_SIZE), Image.Resampling.LANCZOS)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError):
        return DEGENERATE_HASH, 0, 0

    pixels = small.tobytes()
    row_width = HASH_SIZE + 1
    value = 0
    for row in range(HASH_SIZE):
        offset = row * row_width
        for col in range(HASH_SIZE):
            value = (value << 1) | (1 if pixels[offset + col] > pixels[offset + col + 1] else 0)
    return f"{value:0{HASH_BITS // 4}x}", width, height


def hamming_distance(left: str, right: str) -> int:
    """Number of differing bits between two equal-length hex hashes."""
    if len(left) != len(right):
        raise ValueError(f"Hash length mismatch: {len(left)} vs {len(right)}")
    return bin(int(left, 16) ^ int(right, 16)).count("1")


def compute_fingerprint(image_bytes: bytes, dom_text: str) -> Fingerprint:
    """Pure and deterministic: identical inputs always give identical fingerprints."""
    phash, width, height = perceptual_hash(image_bytes)
    return Fingerprint(
        content_hash=content_hash(image_bytes),
        dom_hash=dom_hash(dom_text),
        perceptual_hash=phash,
        width=width,
        height=height,
    )
