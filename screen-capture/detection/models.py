from dataclasses import dataclass

from capture.models import ComparisonMode


@dataclass(frozen=True)
class ChangeVerdict:
    """
    Result of comparing a new fingerprint with the previous capture of a page.
    diff_score is in [0, 1]; 0 means identical to the previous capture.
    """
    diff_score: float
    changed: bool
    comparison: ComparisonMode

    @property
    def structural_only(self) -> bool:
        return self.comparison is ComparisonMode.STRUCTURAL
