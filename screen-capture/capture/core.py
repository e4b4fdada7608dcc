"""
FILE DESCRIPTION: Foundational module for global configuration and logging.
KEY FUNCTIONS/CLASSES: setup_logger, CompanyFormatter, env_flag, DB_CONFIG
"""

import logging
import sys
import os
from datetime import datetime
from dotenv import load_dotenv

# === CONFIGURATION SECTION ===

load_dotenv()


def env_flag(name: str, default: bool = False) -> bool:
    """Read a boolean switch from the environment ("1", "true", "yes", "on")."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Change detection policy
DIFF_THRESHOLD = float(os.getenv("DIFF_THRESHOLD", 0.1))
# Score assigned when renditions differ in size and only the DOM hash can be compared
STRUCTURAL_FALLBACK_SCORE = float(os.getenv("STRUCTURAL_FALLBACK_SCORE", 0.5))

# Playwright / render session waiting periods (seconds)
RENDER_TIMEOUT = int(os.getenv("RENDER_TIMEOUT", 30))
SETTLE_SECONDS = float(os.getenv("SETTLE_SECONDS", 2))
LAZY_LOAD_WAIT = 1.0
INTERSTITIAL_WAIT = 1.0

# Per-stage deadlines for the slow collaborators (seconds)
ENCODE_TIMEOUT = int(os.getenv("ENCODE_TIMEOUT", 30))
OCR_TIMEOUT = int(os.getenv("OCR_TIMEOUT", 60))
UPLOAD_TIMEOUT = int(os.getenv("UPLOAD_TIMEOUT", 60))

# Worker scaling parameters
MAX_WORKERS = int(os.getenv("MAX_WORKERS", 4))
MAX_RENDER_SESSIONS = int(os.getenv("MAX_RENDER_SESSIONS", 2))
GATE_ACQUIRE_TIMEOUT = int(os.getenv("GATE_ACQUIRE_TIMEOUT", 120))

# Run an independent OCR pass over the stored lossless rendition for PII scanning
PII_INDEPENDENT_PASS = env_flag("PII_INDEPENDENT_PASS", False)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"

# Renditions
WEBP_QUALITY = 85
THUMB_QUALITY = 80
THUMB_SIZE = (300, 200)

# OCR
OCR_LANG = os.getenv("OCR_LANG", "eng")

# Object storage (S3 / Cloudflare R2)
S3_BUCKET = os.getenv("S3_BUCKET")
S3_ENDPOINT = os.getenv("S3_ENDPOINT")
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
CDN_URL = os.getenv("CDN_URL", "")

DB_CONFIG = {
    "host": os.getenv("MYSQL_HOST", "localhost"),
    "port": int(os.getenv("MYSQL_PORT", 3306)),
    "user": os.getenv("MYSQL_USER"),
    "password": os.getenv("MYSQL_PASSWORD"),
    "database": os.getenv("MYSQL_DATABASE"),
    "charset": "utf8mb4",
}


# === LOGGING SECTION ===

class CompanyFormatter(logging.Formatter):
    """
    FLOW: Receives a log record -> Extracts timestamp -> Formats according to company standard
    (e.g., [ Tue Jan 06 05:32:41 AM UTC 2026 ]) -> Prepends level and context -> Returns final string.
    """
    def format(self, record):
        dt = datetime.fromtimestamp(record.created)
        timestamp = dt.strftime("%a %b %d %I:%M:%S %p UTC %Y")
        context = getattr(record, 'context', 'root')
        message = f"[ {timestamp} ] : {record.levelname} : {context} : {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logger(name="capture", log_file=None, level=logging.INFO):
    """
    FLOW: Initializes/Retrieves logger -> Checks for existing handlers to prevent duplicates ->
    Sets propagation for child loggers -> Attaches Console and optional File handlers with CompanyFormatter.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    if name != "capture":
        logger.propagate = True
        setup_logger("capture", log_file=log_file, level=level)
        return logger

    formatter = CompanyFormatter()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler (optional)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger

# Global logger instance
logger = setup_logger()
