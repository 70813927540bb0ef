"""
Pricing calculations with volume discounts.

Computes the price of a unit of work from a plan and the caller's monthly
usage before the request.
"""

from decimal import Decimal, ROUND_UP

from .plans import Plan

# Costs are kept to the micro-unit so they can be stored as integers
COST_QUANTUM = Decimal("0.000001")


def unit_price(plan: Plan, monthly_calls: int) -> Decimal:
    """Get the per-unit price for a caller at the given monthly usage.

    Applies the highest-threshold discount tier whose threshold is <= the
    count. If no tier matches, the plan's base price applies.

    Args:
        plan: Plan the caller is subscribed to
        monthly_calls: Calls consumed this period, before this request

    Returns:
        Per-unit price rounded UP to the micro-unit
    """
    if monthly_calls < 0:
        raise ValueError("monthly_calls cannot be negative")

    multiplier = Decimal("1")
    for tier in plan.volume_discount_tiers:
        if tier.threshold <= monthly_calls:
            multiplier = tier.multiplier
        else:
            break  # thresholds are strictly increasing

    price = plan.price_per_call * multiplier
    return price.quantize(COST_QUANTUM, rounding=ROUND_UP)


def calculate_cost(plan: Plan, monthly_calls: int, unit_count: int = 1) -> Decimal:
    """Calculate total cost for a unit of work (single call or batch).

    Every unit in a batch is priced from the same usage snapshot, so the
    result depends only on the arguments.

    Args:
        plan: Plan the caller is subscribed to
        monthly_calls: Calls consumed this period, before this request
        unit_count: Number of work items

    Returns:
        unit_count * unit_price

    Raises:
        ValueError: If unit_count < 1 or monthly_calls < 0
    """
    if unit_count < 1:
        raise ValueError("unit_count must be >= 1")
    return unit_price(plan, monthly_calls) * unit_count


def cost_to_micros(cost: Decimal) -> int:
    """Convert a cost to integer micro-units for storage."""
    return int((cost / COST_QUANTUM).to_integral_value(rounding=ROUND_UP))


def micros_to_cost(micros: int) -> Decimal:
    """Convert stored micro-units back to a Decimal cost."""
    return (Decimal(micros) * COST_QUANTUM).quantize(COST_QUANTUM)
