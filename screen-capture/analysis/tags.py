from typing import Dict, FrozenSet, Optional, Tuple

# label -> keywords; a label applies when any keyword appears in the URL or the text
DEFAULT_TAG_RULES: Dict[str, Tuple[str, ...]] = {
    "checkout": ("checkout",),
    "payment": ("payment",),
    "ticket": ("ticket",),
    "event": ("event",),
    "accommodation": ("room",),
}


class TagClassifier:
    """
    Keyword rule matching over a page's URL and extracted text.
    Purely additive: every matching rule contributes its label, no precedence.
    """

    def __init__(self, rules: Optional[Dict[str, Tuple[str, ...]]] = None):
        source = rules if rules is not None else DEFAULT_TAG_RULES
        self._rules = {
            label: tuple(keyword.lower() for keyword in keywords)
            for label, keywords in source.items()
        }

    def classify(self, url: str, text: Optional[str] = None) -> FrozenSet[str]:
        haystacks = ((url or "").lower(), (text or "").lower())
        return frozenset(
            label
            for label, keywords in self._rules.items()
            if any(keyword in haystack for keyword in keywords for haystack in haystacks)
        )
