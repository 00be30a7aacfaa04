"""
Aggregate package: fold identity-resolved events into contributor, repository, team and period metrics.
"""

from .aggregator import Aggregator, aggregate

__all__ = ["Aggregator", "aggregate"]
