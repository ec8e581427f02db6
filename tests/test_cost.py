"""
Unit tests for cost attribution.

Tests the decision order between subscription coverage, reported cost,
missing pricing and local estimates.
"""

from datetime import datetime, timezone

import pytest

from thinktax.core.cost import apply_costing
from thinktax.core.events import (
    ClaudeMeta,
    CostMode,
    UsageCost,
    UsageEvent,
    UsageProvider,
    UsageSource,
    UsageTokens,
)
from thinktax.core.pricing import PricingModel, PricingTable

PRICING = PricingTable(models=(
    PricingModel(
        provider=UsageProvider.ANTHROPIC,
        model="claude-3-5-sonnet",
        input_per_million=3.0,
        output_per_million=15.0,
        cache_write_per_million=3.75,
        cache_read_per_million=0.30,
    ),
    PricingModel(
        provider=UsageProvider.OPENAI,
        model="gpt-4o",
        input_per_million=2.5,
        output_per_million=10.0,
    ),
))


def _event(**overrides) -> UsageEvent:
    values = dict(
        id="test-event",
        timestamp=datetime(2026, 2, 2, 10, 0, tzinfo=timezone.utc),
        source=UsageSource.CLAUDE_CODE,
        provider=UsageProvider.ANTHROPIC,
        model="claude-3-5-sonnet",
        tokens=UsageTokens(input=1000, output=500),
    )
    values.update(overrides)
    return UsageEvent(**values)


class TestEstimatedCost:
    """Test events priced from the local table."""

    def test_estimates_cost_when_nothing_reported(self):
        event = _event(tokens=UsageTokens(input=1_000_000, output=100_000))
        result = apply_costing(event, PRICING)

        assert result.cost.estimated_usd == pytest.approx(4.50)
        assert result.cost.final_usd == pytest.approx(4.50)
        assert result.cost.mode == CostMode.ESTIMATED

    def test_includes_cache_costs(self):
        event = _event(tokens=UsageTokens(input=1_000_000, output=100_000, cache_write=500_000, cache_read=1_000_000))
        result = apply_costing(event, PRICING)

        assert result.cost.final_usd == pytest.approx(6.675)

    def test_input_event_is_not_modified(self):
        event = _event()
        result = apply_costing(event, PRICING)

        assert event.cost == UsageCost()
        assert result is not event
        assert result.id == event.id


class TestReportedCost:
    """Test events that carry an upstream cost."""

    def test_reported_and_priced_is_mixed(self):
        event = _event(cost=UsageCost(reported_usd=0.05))
        result = apply_costing(event, PRICING)

        assert result.cost.final_usd == 0.05
        assert result.cost.estimated_usd is not None
        assert result.cost.mode == CostMode.MIXED

    def test_reported_without_pricing_is_reported(self):
        event = _event(
            source=UsageSource.CURSOR_IDE,
            provider=UsageProvider.CURSOR,
            model="mystery-model",
            cost=UsageCost(reported_usd=0.05),
        )
        result = apply_costing(event, PRICING)

        assert result.cost.final_usd == 0.05
        assert result.cost.estimated_usd is None
        assert result.cost.mode == CostMode.REPORTED

    def test_reported_zero_is_still_reported(self):
        event = _event(model="mystery-model", cost=UsageCost(reported_usd=0.0))
        result = apply_costing(event, PRICING)

        assert result.cost.final_usd == 0.0
        assert result.cost.mode == CostMode.REPORTED


class TestSubscriptionCost:
    """Test flat-rate plan coverage."""

    def test_subscription_final_cost_is_zero(self):
        event = _event(
            tokens=UsageTokens(input=50_000_000, output=5_000_000),
            meta=ClaudeMeta(billing="subscription", session_id="abc"),
        )
        result = apply_costing(event, PRICING)

        assert result.cost.final_usd == 0.0
        assert result.cost.mode == CostMode.SUBSCRIPTION

    def test_subscription_keeps_estimate_for_visibility(self):
        event = _event(
            tokens=UsageTokens(input=1_000_000, output=100_000),
            meta=ClaudeMeta(billing="subscription"),
        )
        result = apply_costing(event, PRICING)

        assert result.cost.estimated_usd == pytest.approx(4.50)

    def test_subscription_wins_over_reported(self):
        event = _event(meta=ClaudeMeta(billing="subscription"), cost=UsageCost(reported_usd=1.25))
        result = apply_costing(event, PRICING)

        assert result.cost.final_usd == 0.0
        assert result.cost.mode == CostMode.SUBSCRIPTION

    def test_api_billing_is_costed_normally(self):
        event = _event(meta=ClaudeMeta(billing="api"))
        result = apply_costing(event, PRICING)

        assert result.cost.mode == CostMode.ESTIMATED


class TestUnknownCost:
    """Test events whose model has no pricing."""

    def test_unknown_model(self):
        result = apply_costing(_event(model="unknown-model-xyz"), PRICING)

        assert result.cost.mode == CostMode.UNKNOWN
        assert result.cost.final_usd is None
        assert result.cost.estimated_usd is None

    def test_null_model(self):
        result = apply_costing(_event(model=None), PRICING)

        assert result.cost.mode == CostMode.UNKNOWN

    def test_include_unknown_uses_existing_estimate(self):
        event = _event(model="unknown-model-xyz", cost=UsageCost(estimated_usd=0.10))
        result = apply_costing(event, PRICING, include_unknown=True)

        assert result.cost.mode == CostMode.UNKNOWN
        assert result.cost.final_usd == 0.10

    def test_include_unknown_without_estimate_stays_null(self):
        result = apply_costing(_event(model="unknown-model-xyz"), PRICING, include_unknown=True)

        assert result.cost.final_usd is None
