"""Booking add-ons and gratuity, priced on top of the locked quote total."""
from decimal import Decimal
from typing import Optional

from app.schemas.schemas import EnhancementSelection
from app.services.pricing import ZERO, money

TRIP_PROTECTION_COST = Decimal("9.00")
MEET_AND_GREET_COST = Decimal("15.00")
EXTRA_BAG_COST = Decimal("5.00")
FREE_BAGS = 2
SPECIAL_HANDLING_COST = Decimal("10.00")
CHILD_SEAT_COST = Decimal("15.00")
ADDITIONAL_STOP_COST = Decimal("10.00")


def enhancement_items(selection: Optional[EnhancementSelection]) -> list[tuple[str, Decimal]]:
    """Itemized (label, cost) lines for the selected add-ons."""
    if selection is None:
        return []
    items: list[tuple[str, Decimal]] = []
    if selection.trip_protection:
        items.append(("Trip Protection", TRIP_PROTECTION_COST))
    if selection.meet_and_greet:
        items.append(("Meet & Greet", MEET_AND_GREET_COST))
    if selection.extra_bags > FREE_BAGS:
        items.append((f"Extra Bags ({selection.extra_bags - FREE_BAGS})",
                      EXTRA_BAG_COST * (selection.extra_bags - FREE_BAGS)))
    for item in selection.special_handling:
        items.append((f"Special Handling: {item}", SPECIAL_HANDLING_COST))
    seats = selection.child_seats.infant + selection.child_seats.toddler + selection.child_seats.booster
    if seats:
        items.append((f"Child Seats ({seats})", CHILD_SEAT_COST * seats))
    if selection.additional_stops:
        items.append((f"Additional Stops ({selection.additional_stops})",
                      ADDITIONAL_STOP_COST * selection.additional_stops))
    return items


def enhancement_cost(selection: Optional[EnhancementSelection]) -> Decimal:
    return money(sum((cost for _, cost in enhancement_items(selection)), ZERO))


def gratuity_for(
    subtotal: Decimal,
    percentage: Optional[Decimal] = None,
    amount: Optional[Decimal] = None,
) -> Decimal:
    """Flat amount wins; otherwise a percentage of the quote subtotal."""
    if amount is not None:
        return money(amount)
    if percentage is not None:
        return money(subtotal * percentage / 100)
    return ZERO
