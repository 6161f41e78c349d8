# GST calculation

# Intra-state sale  -> CGST + SGST (rate split in half)
# Inter-state sale  -> IGST
# Unknown state(s)  -> IGST

from dataclasses import dataclass
from typing import Optional


# 18% Standard GST Rate if not specified
DEFAULT_GST_RATE = 18.0

IGST = "IGST"
CGST_SGST = "CGST_SGST"


@dataclass
class TaxBreakdown:
    taxable_amount: float
    tax_amount: float
    tax_type: str
    cgst: float
    sgst: float
    igst: float
    total_amount: float


def _normalize_state(state: Optional[str]) -> str:
    return (state or "").strip().lower()


def is_same_state(origin_state: Optional[str], destination_state: Optional[str]) -> bool:
    origin = _normalize_state(origin_state)
    destination = _normalize_state(destination_state)
    return bool(origin) and bool(destination) and origin == destination


def calculate_tax(
    price: float,
    quantity: int,
    tax_rate: Optional[float] = DEFAULT_GST_RATE,
    origin_state: Optional[str] = None,
    destination_state: Optional[str] = None,
) -> TaxBreakdown:
    """
    Calculates GST for `quantity` units at `price` (tax exclusive).

    origin_state is the seller's (manufacturer) state, destination_state the
    buyer's (retailer) shipping state.
    """
    if tax_rate is None:
        tax_rate = DEFAULT_GST_RATE

    taxable_amount = price * quantity
    rate = tax_rate / 100

    cgst = sgst = igst = 0.0

    if is_same_state(origin_state, destination_state):
        tax_type = CGST_SGST
        cgst = taxable_amount * rate / 2
        sgst = taxable_amount * rate / 2
        tax_amount = cgst + sgst
    else:
        tax_type = IGST
        igst = taxable_amount * rate
        tax_amount = igst

    return TaxBreakdown(
        taxable_amount=round(taxable_amount, 2),
        tax_amount=round(tax_amount, 2),
        tax_type=tax_type,
        cgst=round(cgst, 2),
        sgst=round(sgst, 2),
        igst=round(igst, 2),
        total_amount=round(taxable_amount + tax_amount, 2),
    )
