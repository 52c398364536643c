"""
Activity Registry - maps job function identifiers to leaf activities.

A leaf activity is any callable taking a JobExecutionContext:

    def echo(context: JobExecutionContext) -> str: ...
    async def delay(context: JobExecutionContext) -> None: ...

The scheduler treats activities as opaque asynchronous calls. Coroutine
functions are awaited; plain functions run in a worker thread.

Error handling contract:
- Activities raise TransientError (safe to retry) or PermanentError (fail fast)
- Any other exception is treated as transient
- The registry does NOT classify - lookups of unknown names raise
  ActivityNotFoundError, everything else propagates unchanged
"""

import importlib
from typing import Any, Awaitable, Callable, Union

from stageflow.errors import ActivityNotFoundError, ConfigurationError
from stageflow.schemas import JobExecutionContext


# Type alias for activity functions
ActivityFn = Callable[[JobExecutionContext], Union[Any, Awaitable[Any]]]


def import_activity(path: str) -> ActivityFn:
    """
    Import an activity from a "package.module:attribute" path.

    Raises:
        ConfigurationError: If the path is malformed or does not resolve
            to a callable
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(
            f"Invalid activity path: {path!r}. Expected 'package.module:function'"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import activity module {module_name!r}: {e}") from e

    fn = getattr(module, attr, None)
    if fn is None or not callable(fn):
        raise ConfigurationError(f"Activity {path!r} is not a callable")
    return fn


class ActivityRegistry:
    """
    Registry for leaf activities by function identifier.

    Usage:
        registry = ActivityRegistry.create_default()
        registry.register("Transform", my_transform)
        registry.register_path("Publish", "mypkg.jobs:publish")

        @registry.activity("Notify")
        async def notify(context): ...
    """

    def __init__(self) -> None:
        """Initialize an empty activity registry."""
        self._activities: dict[str, ActivityFn] = {}

    def register(self, name: str, fn: ActivityFn) -> None:
        """
        Register an activity under a function identifier.

        Args:
            name: Identifier jobs use in their `function` field
            fn: Callable taking a JobExecutionContext
        """
        if not callable(fn):
            raise ConfigurationError(f"Activity '{name}' must be callable")
        self._activities[name] = fn

    def register_path(self, name: str, path: str) -> None:
        """Register an activity given as a "package.module:function" path."""
        self.register(name, import_activity(path))

    def activity(self, name: str) -> Callable[[ActivityFn], ActivityFn]:
        """Decorator form of register()."""
        def decorator(fn: ActivityFn) -> ActivityFn:
            self.register(name, fn)
            return fn
        return decorator

    def get(self, name: str) -> ActivityFn:
        """
        Get the activity registered for a function identifier.

        Raises:
            ActivityNotFoundError: If nothing is registered under `name`
        """
        if name not in self._activities:
            raise ActivityNotFoundError(
                f"No activity registered for function: {name}. "
                f"Registered: {self.list_activities()}"
            )
        return self._activities[name]

    def has(self, name: str) -> bool:
        return name in self._activities

    def list_activities(self) -> list[str]:
        """List all registered function identifiers."""
        return sorted(self._activities.keys())

    @classmethod
    def create_default(cls) -> "ActivityRegistry":
        """
        Create a registry with the built-in activities.

        Built-ins: Delay, EchoJobName, Skip.
        """
        from stageflow.activities.builtin import BUILTIN_ACTIVITIES

        registry = cls()
        for name, fn in BUILTIN_ACTIVITIES.items():
            registry.register(name, fn)
        return registry
