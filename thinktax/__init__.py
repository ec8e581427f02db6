"""
thinktax - multi-provider LLM spend tracker.

Collects usage from local coding-assistant logs and billing APIs,
prices it, and aggregates it into time-windowed summaries.
"""

__version__ = "0.3.0"
