"""
PredictRadar - signal-driven market prediction tracking.

Aggregates news and social signals per entity, turns them into scored
directional predictions, keeps prices fresh under a fetch budget, tracks and
settles predictions, and reports how well they performed.
"""

__version__ = "0.1.0"
