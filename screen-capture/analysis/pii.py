"""
PII Scanner - structural pattern detection over extracted page text.

Detection signal only. False positives are acceptable (the flag is
conservative); PII that has no fixed shape is not detected.
"""

import re
from enum import Enum
from typing import Dict, List, Optional


class PIIType(Enum):
    """Categories of PII recognised by shape."""
    NATIONAL_ID = "national_id"
    PAYMENT_CARD = "payment_card"
    EMAIL = "email"
    PHONE = "phone"


PII_PATTERNS: Dict[PIIType, re.Pattern] = {
    # SSN-shaped: XXX-XX-XXXX
    PIIType.NATIONAL_ID: re.compile(r'\b\d{3}-\d{2}-\d{4}\b'),
    # Four groups of four digits, optional space/hyphen separators
    PIIType.PAYMENT_CARD: re.compile(r'\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b'),
    PIIType.EMAIL: re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b'),
    # XXX XXX XXXX / XXX-XXX-XXXX / XXXXXXXXXX
    PIIType.PHONE: re.compile(r'\b\d{3}[\s-]?\d{3}[\s-]?\d{4}\b'),
}


class PIIScanner:
    """
    Pattern-based PII detector.
    Pure function of its input; patterns can be narrowed or replaced per instance.
    """

    def __init__(self, patterns: Optional[Dict[PIIType, re.Pattern]] = None):
        self.patterns = dict(patterns if patterns is not None else PII_PATTERNS)

    def scan(self, text: Optional[str]) -> List[PIIType]:
        """Return the PII categories present in text, in a stable order."""
        if not text:
            return []
        found = [pii_type for pii_type, pattern in self.patterns.items() if pattern.search(text)]
        return sorted(found, key=lambda pii_type: pii_type.value)

    def contains_pii(self, text: Optional[str]) -> bool:
        if not text:
            return False
        return any(pattern.search(text) for pattern in self.patterns.values())
