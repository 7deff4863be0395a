from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    cents = (Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def cents_to_amount(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def percentage(part_cents: int, whole_cents: int) -> float:
    """``part`` as a 0-100 share of ``whole``; 0 when ``whole`` is 0."""
    if not whole_cents:
        return 0.0
    return part_cents * 100 / whole_cents


def format_money(cents: int) -> str:
    return f"${cents / 100:,.2f}"
