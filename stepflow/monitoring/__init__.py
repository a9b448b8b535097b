"""
Monitoring utilities for lifecycle events and cost tracking.
"""

from .event_bus import EventBus, EventType, PipelineEvent
from .cost_tracker import CostTracker, CostEntry

__all__ = [
    'EventBus',
    'EventType',
    'PipelineEvent',
    'CostTracker',
    'CostEntry',
]
