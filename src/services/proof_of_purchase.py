"""Proof-of-purchase PDF rendering with PyMuPDF."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import fitz  # PyMuPDF

from src.services.pricing_service import format_minor_units

# A4 in points
PAGE_WIDTH, PAGE_HEIGHT = fitz.paper_size("a4")
MARGIN = 50
LINE_HEIGHT = 18


@dataclass(frozen=True)
class ProofLine:
    product_name: str
    variant_name: str
    quantity: int
    unit_price: int


@dataclass(frozen=True)
class ProofOfPurchase:
    """Order summary printed on the document."""

    reference: str
    customer_email: str
    purchased_at: datetime
    currency: str
    total: int
    lines: list[ProofLine] = field(default_factory=list)
    seller: str = "AllKeyMasters"


ProofRenderer = Callable[[ProofOfPurchase], bytes]


def render_proof_of_purchase(summary: ProofOfPurchase) -> bytes:
    """Render a one-page A4 PDF for an order.

    Args:
        summary: Order summary to print.

    Returns:
        bytes: PDF document.

    Raises:
        ValueError: If the order has no lines.
    """
    if not summary.lines:
        raise ValueError("Cannot render a proof of purchase without order lines")

    doc = fitz.open()
    try:
        page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        y = MARGIN + 10

        page.insert_text((MARGIN, y), "Proof of purchase / Preuve d'achat", fontsize=18, fontname="hebo")
        y += LINE_HEIGHT * 2
        for label, value in (
            ("Seller", summary.seller),
            ("Order", summary.reference),
            ("Date", summary.purchased_at.strftime("%Y-%m-%d %H:%M UTC")),
            ("Customer", summary.customer_email),
        ):
            page.insert_text((MARGIN, y), f"{label}: {value}", fontsize=11, fontname="helv")
            y += LINE_HEIGHT

        y += LINE_HEIGHT
        columns = (MARGIN, MARGIN + 300, MARGIN + 360, MARGIN + 430)
        for x, heading in zip(columns, ("Product", "Qty", "Unit", "Total")):
            page.insert_text((x, y), heading, fontsize=11, fontname="hebo")
        y += 6
        page.draw_line((MARGIN, y), (PAGE_WIDTH - MARGIN, y))
        y += LINE_HEIGHT

        for line in summary.lines:
            name = f"{line.product_name} ({line.variant_name})"
            if len(name) > 48:
                name = name[:45] + "..."
            cells = (
                name,
                str(line.quantity),
                format_minor_units(line.unit_price, summary.currency),
                format_minor_units(line.unit_price * line.quantity, summary.currency),
            )
            for x, text in zip(columns, cells):
                page.insert_text((x, y), text, fontsize=10, fontname="helv")
            y += LINE_HEIGHT

        page.draw_line((MARGIN, y - 6), (PAGE_WIDTH - MARGIN, y - 6))
        y += 6
        page.insert_text(
            (columns[2], y),
            f"Total: {format_minor_units(summary.total, summary.currency)}",
            fontsize=12,
            fontname="hebo",
        )

        page.insert_text(
            (MARGIN, PAGE_HEIGHT - MARGIN),
            "This document certifies the purchase of the software licenses listed above.",
            fontsize=9,
            fontname="helv",
        )
        return doc.tobytes()
    finally:
        doc.close()
