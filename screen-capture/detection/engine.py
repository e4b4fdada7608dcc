from typing import Optional

from capture.core import DIFF_THRESHOLD, STRUCTURAL_FALLBACK_SCORE
from capture.models import CaptureRecord, ComparisonMode
from detection.models import ChangeVerdict
from fingerprint import Fingerprint, HASH_BITS, hamming_distance


class ChangeDetector:
    """
    Scores a new capture against the most recent persisted capture of the same page.
    Invariants:
    - First capture is a baseline: score 0, never "changed".
    - Byte-identical screenshots score 0 regardless of DOM differences.
    - changed == diff_score > threshold (strict, no hysteresis).
    """

    def __init__(self, threshold: float = DIFF_THRESHOLD,
                 structural_fallback_score: float = STRUCTURAL_FALLBACK_SCORE):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {threshold}")
        if not 0.0 <= structural_fallback_score <= 1.0:
            raise ValueError(f"structural_fallback_score must be within [0, 1], got {structural_fallback_score}")
        self._threshold = threshold
        self._fallback_score = structural_fallback_score

    @property
    def threshold(self) -> float:
        return self._threshold

    def compare(self, fingerprint: Fingerprint, previous: Optional[CaptureRecord]) -> ChangeVerdict:
        if previous is None:
            return ChangeVerdict(0.0, False, ComparisonMode.BASELINE)

        if fingerprint.content_hash == previous.content_hash:
            return ChangeVerdict(0.0, False, ComparisonMode.IDENTICAL)

        if not self._comparable(fingerprint, previous):
            # Visual distance is undefined across different pixel sizes; DOM hash is the only signal.
            score = self._fallback_score if fingerprint.dom_hash != previous.dom_hash else 0.0
            return self._verdict(score, ComparisonMode.STRUCTURAL)

        return self._verdict(self.visual_distance(fingerprint.perceptual_hash, previous.perceptual_hash),
                             ComparisonMode.VISUAL)

    def is_changed(self, diff_score: float) -> bool:
        return diff_score > self._threshold

    @staticmethod
    def visual_distance(current_hash: str, previous_hash: str) -> float:
        """
        Normalized Hamming distance between two perceptual hashes.
        distance = differing_bits / HASH_BITS, clamped to [0.0, 1.0].
        """
        distance = hamming_distance(current_hash, previous_hash) / float(HASH_BITS)
        return min(1.0, max(0.0, distance))

    @staticmethod
    def _comparable(fingerprint: Fingerprint, previous: CaptureRecord) -> bool:
        if fingerprint.degenerate or previous.image_width == 0 or previous.image_height == 0:
            return False
        if len(fingerprint.perceptual_hash) != len(previous.perceptual_hash):
            return False
        return (fingerprint.width, fingerprint.height) == (previous.image_width, previous.image_height)

    def _verdict(self, score: float, mode: ComparisonMode) -> ChangeVerdict:
        return ChangeVerdict(score, self.is_changed(score), mode)
