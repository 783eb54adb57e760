from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")


def to_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def add_spend(current: Decimal | None, amount: Decimal | int | float | str) -> Decimal:
    # Running totals stay at cent precision so spend rules compare exactly.
    return to_money((current or ZERO_MONEY) + to_money(amount))
