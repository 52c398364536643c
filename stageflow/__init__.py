"""
stageflow - Staged workflow orchestrator

Runs specifications made of strictly ordered stages. Each stage fans out a
tree of jobs concurrently (leaf activities and nested sub-workflows), with
per-job retry, stage timeouts, continue-on-error containment and optional
external-event gates.
"""

__version__ = "0.1.0"


__all__ = [
    "StageflowConfig",
    "load_config",
    "get_stageflow_home",
    "ExecutionResult",
    "execute",
    "execute_specification",
    "InProcessEngine",
    "OrchestrationSpecification",
]

from .config import StageflowConfig, load_config, get_stageflow_home
from .engine import InProcessEngine
from .executor import ExecutionResult, execute, execute_specification
from .schemas import OrchestrationSpecification
