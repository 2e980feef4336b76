"""
Accountability and alignment scoring for governance delegates.

This package syncs delegate, vote and proposal data from an upstream
governance read API, scores every delegate, and serves the persisted
snapshot through a FastAPI read service.
"""

__all__ = [
]
