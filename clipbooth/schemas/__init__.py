"""
Pydantic schemas for pipeline input.
"""

from clipbooth.schemas.requests import StyleConfig, Timing

__all__ = [
    "StyleConfig",
    "Timing",
]
