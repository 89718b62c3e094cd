from __future__ import annotations


def allocate(balance: float, price: float, percent: float, leverage: float = 1.0) -> tuple[float, float]:
    """
    Size a position as a percentage of the available quote balance.

    Returns (position_value, base_amount). Non-positive price, percent, balance or
    leverage yields (0.0, 0.0): nothing to trade this tick rather than an error.
    """
    if price <= 0 or percent <= 0 or balance <= 0 or leverage <= 0:
        return 0.0, 0.0
    position_value = balance * percent / 100.0 * leverage
    if position_value <= 0:
        return 0.0, 0.0
    return position_value, position_value / price
