"""
pricing.py
==========
Base price lookup that feeds the discount engine.

A product may have one stored price per price tier, and separate rows per
modification. The tier comes from the user's category, falling back to the
store's default tier.
"""

from typing import NamedTuple, Optional, Sequence

from schemas import ProductPriceResponse


class ResolvedPrice(NamedTuple):
    price: Optional[float]
    old_price: Optional[float]


class PriceTypeChoice(NamedTuple):
    price_type_id: Optional[int]
    reason: str


def _find_entry(
    prices: Sequence[ProductPriceResponse], price_type_id: int, modification_id: Optional[int]
) -> Optional[ProductPriceResponse]:
    for entry in prices:
        if entry.price_type_id != price_type_id:
            continue
        # A modification needs its own row; otherwise only product-level rows count
        if modification_id is not None:
            if entry.modification_id == modification_id:
                return entry
        elif entry.modification_id is None:
            return entry
    return None


def resolve_price(
    prices: Sequence[ProductPriceResponse],
    price_type_id: Optional[int],
    default_price_type_id: Optional[int],
    modification_id: Optional[int] = None,
) -> ResolvedPrice:
    """
    Pick the price row for the requested tier, or the default tier when the
    requested one has no row. Returns (None, None) when neither matches.
    """
    if not prices:
        return ResolvedPrice(None, None)

    if price_type_id is not None:
        entry = _find_entry(prices, price_type_id, modification_id)
        if entry is not None:
            return ResolvedPrice(entry.price, entry.old_price)

    if default_price_type_id is not None and default_price_type_id != price_type_id:
        entry = _find_entry(prices, default_price_type_id, modification_id)
        if entry is not None:
            return ResolvedPrice(entry.price, entry.old_price)

    return ResolvedPrice(None, None)


def select_price_type(
    category_price_type_id: Optional[int],
    default_price_type_id: Optional[int],
    has_category: bool = False,
    is_logged_in: bool = False,
) -> PriceTypeChoice:
    """Category tier first, then the default tier."""
    if category_price_type_id is not None:
        return PriceTypeChoice(category_price_type_id, "Price tier of the user's category")

    if default_price_type_id is not None:
        if has_category:
            reason = "User category has no price tier, using the default tier"
        elif is_logged_in:
            reason = "User has no category, using the default tier"
        else:
            reason = "Guest, using the default tier"
        return PriceTypeChoice(default_price_type_id, reason)

    return PriceTypeChoice(None, "No price tier is configured")
