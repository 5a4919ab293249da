"""
Aggregation Provider Implementations

Abstract base class, typed payloads, and the Pluggy gateway
(``providers.pluggy``, imported where it is constructed).
"""

from .base import BaseAggregationProvider, FanOutResult

__all__ = ['BaseAggregationProvider', 'FanOutResult']
