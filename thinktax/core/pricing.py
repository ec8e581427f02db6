"""
Pricing calculations and rate management.

Resolves (provider, model) to per-million-token rates from a static
table and turns token counts into an estimated USD cost.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .events import UsageProvider, UsageTokens

TOKENS_PER_UNIT = 1_000_000


@dataclass(frozen=True)
class PricingModel:
    """Rates for one model, in USD per 1M tokens."""
    provider: UsageProvider
    model: str
    input_per_million: float
    output_per_million: float
    cache_write_per_million: Optional[float] = None
    cache_read_per_million: Optional[float] = None
    notes: Optional[str] = None

    def __post_init__(self):
        """Validate rates are non-negative."""
        for name in ("input_per_million", "output_per_million",
                     "cache_write_per_million", "cache_read_per_million"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} cannot be negative for {self.model}")


@dataclass(frozen=True)
class PricingTable:
    """Ordered list of model rates; order decides fuzzy-match priority."""
    models: Tuple[PricingModel, ...]
    updated: Optional[str] = None
    currency: str = "USD"
    per: str = "1M"


def load_pricing_table(path: str) -> PricingTable:
    """Load and validate a pricing table from a YAML file.

    Args:
        path: Path to the pricing document

    Returns:
        Validated PricingTable

    Raises:
        FileNotFoundError: If the pricing file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the table is invalid
    """
    pricing_path = Path(path)
    if not pricing_path.exists():
        raise FileNotFoundError(f"Pricing file not found: {path}")

    with open(pricing_path, 'r', encoding='utf-8') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in pricing file {path}: {e}")

    if not raw:
        raise ValueError("Pricing file is empty")
    return parse_pricing_table(raw)


def parse_pricing_table(raw: Dict[str, Any]) -> PricingTable:
    if not isinstance(raw, dict):
        raise ValueError("Pricing table must be a dictionary")

    allowed_keys = {'updated', 'currency', 'per', 'models'}
    unknown_keys = set(raw.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown pricing keys: {unknown_keys}")

    currency = raw.get('currency', 'USD')
    if currency != 'USD':
        raise ValueError(f"Unsupported pricing currency: {currency}")
    per = str(raw.get('per', '1M'))
    if per != '1M':
        raise ValueError(f"Unsupported pricing unit: {per}")

    models_data = raw.get('models')
    if not isinstance(models_data, list):
        raise ValueError("'models' must be a list")

    models = [_parse_model(entry, index) for index, entry in enumerate(models_data)]
    updated = raw.get('updated')
    return PricingTable(
        models=tuple(models),
        updated=str(updated) if updated is not None else None,
        currency=currency,
        per=per,
    )


def _parse_model(data: Any, index: int) -> PricingModel:
    path = f"models[{index}]"
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = {
        'provider', 'model', 'input_per_million', 'output_per_million',
        'cache_write_per_million', 'cache_read_per_million', 'notes',
    }
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for required in ('provider', 'model', 'input_per_million', 'output_per_million'):
        if required not in data:
            raise ValueError(f"Missing required '{required}' in {path}")

    try:
        provider = UsageProvider(data['provider'])
    except ValueError:
        valid = [p.value for p in UsageProvider]
        raise ValueError(f"'provider' in {path} must be one of: {valid}")

    def _rate(key: str) -> Optional[float]:
        value = data.get(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{key}' in {path} must be a number")
        return float(value)

    return PricingModel(
        provider=provider,
        model=str(data['model']),
        input_per_million=_rate('input_per_million'),
        output_per_million=_rate('output_per_million'),
        cache_write_per_million=_rate('cache_write_per_million'),
        cache_read_per_million=_rate('cache_read_per_million'),
        notes=data.get('notes'),
    )


def find_pricing(
    table: PricingTable,
    provider: UsageProvider,
    model: Optional[str]
) -> Optional[PricingModel]:
    """Resolve pricing for a provider/model pair.

    Exact matches win; otherwise the first entry (in table order) for the
    same provider whose model name is contained in the queried name.

    Args:
        table: Pricing table to search
        provider: Billing provider
        model: Model identifier, possibly None

    Returns:
        Matching PricingModel, or None when nothing resolves
    """
    if not model:
        return None

    for entry in table.models:
        if entry.provider == provider and entry.model == model:
            return entry

    for entry in table.models:
        if entry.provider == provider and entry.model in model:
            return entry

    return None


def estimate_cost_usd(pricing: PricingModel, tokens: UsageTokens) -> float:
    """Estimate USD cost of token usage. No rounding is applied.

    Args:
        pricing: Rates for the model
        tokens: Token counts

    Returns:
        Estimated cost in USD
    """
    input_cost = (tokens.input / TOKENS_PER_UNIT) * pricing.input_per_million
    output_cost = (tokens.output / TOKENS_PER_UNIT) * pricing.output_per_million

    cache_write_cost = 0.0
    if pricing.cache_write_per_million is not None:
        cache_write_cost = (tokens.cache_write / TOKENS_PER_UNIT) * pricing.cache_write_per_million

    cache_read_cost = 0.0
    if pricing.cache_read_per_million is not None:
        cache_read_cost = (tokens.cache_read / TOKENS_PER_UNIT) * pricing.cache_read_per_million

    return input_cost + output_cost + cache_write_cost + cache_read_cost
