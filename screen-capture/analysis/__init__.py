from analysis.pii import PIIScanner, PIIType, PII_PATTERNS
from analysis.tags import TagClassifier, DEFAULT_TAG_RULES
