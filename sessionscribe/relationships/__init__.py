"""
Client relationship reconciliation boundary.

Design intent:
- Turn one-directional relationship edges into confirmed two-way links.
- Keep the reciprocal label table in one place.
"""

from .reciprocal import (
    RECIPROCAL_TYPES,
    ReciprocalQueue,
    ReciprocalTask,
    display_relationship_type,
    missing_reciprocals,
)

__all__ = [
    "RECIPROCAL_TYPES",
    "ReciprocalQueue",
    "ReciprocalTask",
    "display_relationship_type",
    "missing_reciprocals",
]
