"""Cart normalization and fingerprinting.

The fingerprint identifies "the same cart" across checkout attempts so a
pending order and its open Stripe session can be reused instead of duplicated.
It is an idempotency key, not a security boundary.
"""

import hashlib
from dataclasses import dataclass
from typing import Iterable, Protocol


class CartLineLike(Protocol):
    product_id: str
    variant_id: str
    quantity: int


@dataclass(frozen=True, order=True)
class NormalizedLine:
    """A cart line after duplicate (product, variant) pairs are merged."""

    product_id: str
    variant_id: str
    quantity: int


def normalize_cart_lines(lines: Iterable[CartLineLike]) -> list[NormalizedLine]:
    """Merge duplicate (product_id, variant_id) lines and sort canonically.

    Args:
        lines: Cart lines in client order.

    Returns:
        list[NormalizedLine]: One line per distinct pair, quantities summed,
        sorted by (product_id, variant_id).
    """
    merged: dict[tuple[str, str], int] = {}
    for line in lines:
        key = (line.product_id, line.variant_id)
        merged[key] = merged.get(key, 0) + line.quantity

    return sorted(
        NormalizedLine(product_id=product_id, variant_id=variant_id, quantity=quantity)
        for (product_id, variant_id), quantity in merged.items()
    )


def compute_cart_fingerprint(lines: Iterable[CartLineLike]) -> str:
    """Compute a stable SHA-256 fingerprint of a cart.

    Lines are sorted by (product_id, variant_id, quantity) and serialized as
    ``product:variant:quantity`` joined with ``|``, so permutations of the same
    lines hash identically.

    Args:
        lines: Cart lines, normally already normalized.

    Returns:
        str: Hex digest.
    """
    ordered = sorted((line.product_id, line.variant_id, line.quantity) for line in lines)
    canonical = "|".join(f"{product_id}:{variant_id}:{quantity}" for product_id, variant_id, quantity in ordered)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
