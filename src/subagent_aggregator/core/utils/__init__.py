"""
Core utilities module.

Provides shared utility functions used across all layers.
"""

from subagent_aggregator.core.utils.time import parse_timestamp, utc_now

__all__ = ["parse_timestamp", "utc_now"]
