"""
stageflow.activities - Leaf activities and their registry.
"""

from .registry import ActivityFn, ActivityRegistry, import_activity

__all__ = ["ActivityFn", "ActivityRegistry", "import_activity"]
