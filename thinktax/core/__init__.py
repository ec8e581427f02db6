"""
Core modules for thinktax.

This package contains the event model, pricing resolution, cost
attribution, aggregation and the refresh pipeline.
"""
