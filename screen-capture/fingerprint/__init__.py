from fingerprint.engine import (
    Fingerprint,
    HASH_BITS,
    DEGENERATE_HASH,
    compute_fingerprint,
    content_hash,
    dom_hash,
    perceptual_hash,
    hamming_distance,
)
