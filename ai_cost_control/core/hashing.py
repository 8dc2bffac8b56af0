"""
Prompt normalization and cache-key hashing.
"""

import hashlib
import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")


def normalize_prompt(prompt: str) -> str:
    """Canonical form used for exact matching.

    NFKC-folds, lower-cases and collapses whitespace runs so trivially
    different renderings of the same prompt share a hash.
    """
    text = unicodedata.normalize("NFKC", prompt)
    return _WHITESPACE.sub(" ", text).strip().lower()


def prompt_hash(prompt: str, operation_type: str, firm_id: str) -> str:
    """Deterministic SHA-256 of (normalized prompt, operation type, firm).

    The firm is part of the digest so identical text from two tenants
    always lands in two different entries.
    """
    digest = hashlib.sha256()
    for part in (firm_id, operation_type, normalize_prompt(prompt)):
        encoded = part.encode("utf-8")
        # Length prefix keeps ("ab", "c") and ("a", "bc") apart
        digest.update(len(encoded).to_bytes(8, "big"))
        digest.update(encoded)
    return digest.hexdigest()
