"""
Cost attribution.

Reconciles provider-reported cost, local estimates and flat-rate
subscription coverage into one final figure per event.

Decision order (first match wins):
1. Subscription billing - covered by a flat-rate plan, final cost is zero
2. Reported cost - an upstream figure is authoritative
3. No pricing - cost is unknown
4. Estimate - priced locally from token counts
"""

from dataclasses import replace

from .events import CostMode, UsageEvent
from .pricing import PricingTable, estimate_cost_usd, find_pricing

SUBSCRIPTION_BILLING = "subscription"


def apply_costing(
    event: UsageEvent,
    pricing: PricingTable,
    include_unknown: bool = False
) -> UsageEvent:
    """Attach final cost and cost mode to an event.

    The estimate is computed whenever pricing resolves, so subscription and
    reported events still carry "what this would have cost" in
    ``estimated_usd``. The input event is never modified.

    Args:
        event: Normalized event from a collector (or from storage)
        pricing: Pricing table for estimates
        include_unknown: Use ``estimated_usd`` as final cost for events
            whose model has no pricing, instead of leaving it null

    Returns:
        A new UsageEvent with its ``cost`` filled in
    """
    cost = event.cost
    pricing_model = find_pricing(pricing, event.provider, event.model)
    if pricing_model is not None:
        cost = replace(cost, estimated_usd=estimate_cost_usd(pricing_model, event.tokens))

    if event.meta.billing == SUBSCRIPTION_BILLING:
        cost = replace(cost, final_usd=0.0, mode=CostMode.SUBSCRIPTION)
    elif cost.reported_usd is not None:
        mode = CostMode.MIXED if cost.estimated_usd is not None else CostMode.REPORTED
        cost = replace(cost, final_usd=cost.reported_usd, mode=mode)
    elif pricing_model is None:
        final = cost.estimated_usd if include_unknown else None
        cost = replace(cost, final_usd=final, mode=CostMode.UNKNOWN)
    else:
        cost = replace(cost, final_usd=cost.estimated_usd, mode=CostMode.ESTIMATED)

    return replace(event, cost=cost)
