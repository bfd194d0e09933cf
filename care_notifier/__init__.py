"""
Plant-care task notification engine.

Decides when, whether and how to notify a grower about plant-care tasks:
quiet hours, activity-based timing, same-plant batching, overdue escalation
and delivery retries.
"""

__version__ = "1.0.0"
