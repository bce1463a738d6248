"""License model type definitions."""

from typing import TypedDict


class License(TypedDict):
    """licenses table row.

    A license is bound to at most one order. Revocation is reversible;
    assignment is not.
    """

    id: str
    product_id: str
    key_code: str
    order_id: str | None
    is_used: bool
    revoked: bool
