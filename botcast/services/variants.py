# botcast/services/variants.py
"""Deterministic weighted A/B bucketing."""
import hashlib
from typing import Optional, Sequence


def _bucket(recipient_id, salt: Optional[str]) -> int:
    seed = f"{salt}:{recipient_id}" if salt else str(recipient_id)
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def select_variant(recipient_id, variants: Sequence, salt: Optional[str] = None):
    """
    Pick the variant whose cumulative weight range holds hash(recipient) mod total.

    Variants with a non-positive weight never win. Returns None when nothing
    is eligible, in which case the base campaign content is used.
    """
    eligible = [v for v in variants or [] if (v.weight or 0) > 0]
    if not eligible:
        return None

    eligible.sort(key=lambda v: str(v.key))
    total = sum(v.weight for v in eligible)
    point = _bucket(recipient_id, salt) % total

    cumulative = 0
    for variant in eligible:
        cumulative += variant.weight
        if point < cumulative:
            return variant
    return eligible[-1]
