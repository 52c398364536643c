"""
Specification schema - the declarative workflow tree.

An OrchestrationSpecification is the static, read-only input of a run:

    OrchestrationSpecification
        stages: Stage (sequential, strictly ordered)
            wait_for_event: WaitForEvent (optional gate)
            jobs: Job (concurrent fan-out)
                jobs: Job (composite job children, unbounded depth)

Keys are snake_case in to_dict() output. from_dict() also accepts the
camelCase/PascalCase keys used by JSON payloads (e.g. "continueOnError",
"TimeoutMinutes", "WaitForEvent").
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from stageflow.errors import ConfigurationError


DEFAULT_STAGE_TIMEOUT_MINUTES = 15
DEFAULT_MAX_RETRY_COUNT = 1
DEFAULT_RETRY_TIMEOUT_SECONDS = 10

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _snake(key: str) -> str:
    """Convert camelCase/PascalCase keys to snake_case."""
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def _normalize(data: Any, what: str) -> dict[str, Any]:
    if data is None:
        raise ConfigurationError(f"{what} is required")
    if not isinstance(data, dict):
        raise ConfigurationError(f"{what} must be a mapping, got {type(data).__name__}")
    return {_snake(k): v for k, v in data.items()}


def _string_map(value: Any, what: str) -> Optional[dict[str, str]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigurationError(f"{what} must be a mapping of strings")
    return {str(k): str(v) for k, v in value.items()}


_TRUE_STRINGS = ("true", "yes", "1")
_FALSE_STRINGS = ("false", "no", "0")


def _flag(value: Any, what: str) -> bool:
    """Parse a boolean field; strings must spell true/false explicitly."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        folded = value.strip().lower()
        if folded in _TRUE_STRINGS:
            return True
        if folded in _FALSE_STRINGS:
            return False
    raise ConfigurationError(f"{what} must be a boolean, got {value!r}")


def _number(value: Any, what: str) -> float:
    """Parse a numeric field given as a number or a numeric string."""
    if isinstance(value, bool):
        raise ConfigurationError(f"{what} must be a number, got {value!r}")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            pass
        else:
            return int(number) if number.is_integer() else number
    raise ConfigurationError(f"{what} must be a number, got {value!r}")


def _integer(value: Any, what: str) -> int:
    number = _number(value, what)
    if isinstance(number, float) and not number.is_integer():
        raise ConfigurationError(f"{what} must be an integer, got {value!r}")
    return int(number)


def _optional_number(value: Any, what: str) -> Optional[float]:
    return None if value is None else _number(value, what)


def _fold(value: str) -> str:
    return value.replace("_", "").replace("-", "").replace(" ", "").lower()


class WaitForEventAction(str, Enum):
    """What the event gate does when its timer fires first."""
    CONTINUE_ORCHESTRATION = "ContinueOrchestration"
    FAIL = "Fail"

    @classmethod
    def from_string(cls, value: "str | int | WaitForEventAction") -> "WaitForEventAction":
        if isinstance(value, cls):
            return value
        # Numeric form of JSON payloads that serialize enums as integers
        if isinstance(value, int) and not isinstance(value, bool) and value in _ACTION_ORDINALS:
            return _ACTION_ORDINALS[value]
        for action in cls:
            if _fold(str(value)) == _fold(action.value):
                return action
        raise ConfigurationError(
            f"Unknown timeout action: {value!r}. "
            f"Expected one of: {', '.join(a.value for a in cls)}"
        )


_ACTION_ORDINALS = {
    0: WaitForEventAction.FAIL,
    1: WaitForEventAction.CONTINUE_ORCHESTRATION,
}


class EventResponse(str, Enum):
    """Payload of the external event a gated stage waits for."""
    CONTINUE = "Continue"
    CANCEL = "Cancel"

    @classmethod
    def from_string(cls, value: "str | EventResponse") -> "EventResponse":
        if isinstance(value, cls):
            return value
        for response in cls:
            if str(value).strip().lower() == response.value.lower():
                return response
        raise ConfigurationError(
            f"Unknown event payload: {value!r}. Expected 'Continue' or 'Cancel'"
        )


@dataclass(frozen=True)
class WaitForEvent:
    """
    External-event gate in front of a stage.

    Attributes:
        event_name: Identifier of the external signal to wait for
        timeout_hours: How long to wait before applying timeout_action
        timeout_action: ContinueOrchestration runs the stage anyway,
            Fail aborts the whole run
    """
    event_name: str
    timeout_hours: float = 0
    timeout_action: WaitForEventAction = WaitForEventAction.FAIL

    def __post_init__(self):
        if not self.event_name:
            raise ConfigurationError("WaitForEvent: event_name is required")
        if self.timeout_hours < 0:
            raise ConfigurationError(
                f"WaitForEvent '{self.event_name}': timeout_hours must be >= 0"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_name": self.event_name,
            "timeout_hours": self.timeout_hours,
            "timeout_action": self.timeout_action.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WaitForEvent":
        data = _normalize(data, "WaitForEvent")
        event_name = data.get("event_name", "")
        return cls(
            event_name=event_name,
            timeout_hours=_number(data.get("timeout_hours", 0), f"WaitForEvent '{event_name}' timeout_hours"),
            timeout_action=WaitForEventAction.from_string(
                data.get("timeout_action", WaitForEventAction.FAIL)
            ),
        )


@dataclass(frozen=True)
class Job:
    """
    A unit of work.

    A job without children is a leaf job: it invokes the activity named by
    `function`. A job with children is a composite job: its children run
    concurrently as a nested sub-workflow, then its own activity runs.

    Attributes:
        name: Job name (used in logs and by activities)
        function: Identifier of the leaf activity to invoke
        parameters: Opaque string parameters interpreted by the activity
        jobs: Child jobs (empty for leaf jobs)
        max_retry_count: Total attempts allowed (1 = no retries)
        retry_timeout_seconds: Delay before the first retry
        backoff_coefficient: Multiplier applied to the delay after each retry
        max_retry_interval_seconds: Upper bound of the retry delay
    """
    name: str
    function: str
    parameters: Optional[dict[str, str]] = None
    jobs: tuple["Job", ...] = field(default_factory=tuple)
    max_retry_count: int = DEFAULT_MAX_RETRY_COUNT
    retry_timeout_seconds: float = DEFAULT_RETRY_TIMEOUT_SECONDS
    backoff_coefficient: float = 1.0
    max_retry_interval_seconds: Optional[float] = None

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Job: name is required")
        if not self.function:
            raise ConfigurationError(f"Job '{self.name}': function is required")
        if self.max_retry_count < 1:
            raise ConfigurationError(
                f"Job '{self.name}': max_retry_count must be >= 1, got {self.max_retry_count}"
            )
        if self.retry_timeout_seconds < 0:
            raise ConfigurationError(
                f"Job '{self.name}': retry_timeout_seconds must be >= 0"
            )
        if self.backoff_coefficient < 1.0:
            raise ConfigurationError(
                f"Job '{self.name}': backoff_coefficient must be >= 1.0"
            )
        if self.max_retry_interval_seconds is not None and self.max_retry_interval_seconds < 0:
            raise ConfigurationError(
                f"Job '{self.name}': max_retry_interval_seconds must be >= 0"
            )

    @property
    def is_composite(self) -> bool:
        """True if the job expands into child jobs."""
        return len(self.jobs) > 0

    def iter_jobs(self) -> Iterator["Job"]:
        """Walk this job and its descendants depth-first."""
        yield self
        for child in self.jobs:
            yield from child.iter_jobs()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "function": self.function,
            **({"parameters": dict(self.parameters)} if self.parameters is not None else {}),
            **({"jobs": [j.to_dict() for j in self.jobs]} if self.jobs else {}),
            "max_retry_count": self.max_retry_count,
            "retry_timeout_seconds": self.retry_timeout_seconds,
            **({"backoff_coefficient": self.backoff_coefficient} if self.backoff_coefficient != 1.0 else {}),
            **({"max_retry_interval_seconds": self.max_retry_interval_seconds}
               if self.max_retry_interval_seconds is not None else {}),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        data = _normalize(data, "Job")
        name = data.get("name", "")
        what = f"Job '{name}'"
        return cls(
            name=name,
            function=data.get("function", ""),
            parameters=_string_map(data.get("parameters"), f"{what} parameters"),
            jobs=tuple(cls.from_dict(j) for j in (data.get("jobs") or [])),
            max_retry_count=_integer(
                data.get("max_retry_count", DEFAULT_MAX_RETRY_COUNT), f"{what} max_retry_count"
            ),
            retry_timeout_seconds=_number(
                data.get("retry_timeout_seconds", DEFAULT_RETRY_TIMEOUT_SECONDS),
                f"{what} retry_timeout_seconds",
            ),
            backoff_coefficient=_number(data.get("backoff_coefficient", 1.0), f"{what} backoff_coefficient"),
            max_retry_interval_seconds=_optional_number(
                data.get("max_retry_interval_seconds"), f"{what} max_retry_interval_seconds"
            ),
        )


@dataclass(frozen=True)
class Stage:
    """
    A sequential phase of a run.

    Attributes:
        name: Stage name
        description: Free text
        state: Label reported as custom status while the stage runs
        jobs: Top-level jobs, all dispatched concurrently
        continue_on_error: Downgrade stage failures to warnings
        timeout_minutes: Stage timer; fires a StageTimeout when exceeded
        wait_for_event: Optional external-event gate
    """
    name: str
    jobs: tuple[Job, ...] = field(default_factory=tuple)
    description: str = ""
    state: str = ""
    continue_on_error: bool = False
    timeout_minutes: float = DEFAULT_STAGE_TIMEOUT_MINUTES
    wait_for_event: Optional[WaitForEvent] = None

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Stage: name is required")
        if self.timeout_minutes < 0:
            raise ConfigurationError(f"Stage '{self.name}': timeout_minutes must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "state": self.state,
            "continue_on_error": self.continue_on_error,
            "timeout_minutes": self.timeout_minutes,
            "jobs": [j.to_dict() for j in self.jobs],
            **({"wait_for_event": self.wait_for_event.to_dict()} if self.wait_for_event else {}),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Stage":
        data = _normalize(data, "Stage")
        name = data.get("name", "")
        wait = data.get("wait_for_event")
        return cls(
            name=name,
            description=data.get("description") or "",
            state=data.get("state") or "",
            continue_on_error=_flag(
                data.get("continue_on_error", False), f"Stage '{name}' continue_on_error"
            ),
            timeout_minutes=_number(
                data.get("timeout_minutes", DEFAULT_STAGE_TIMEOUT_MINUTES), f"Stage '{name}' timeout_minutes"
            ),
            jobs=tuple(Job.from_dict(j) for j in (data.get("jobs") or [])),
            wait_for_event=WaitForEvent.from_dict(wait) if wait else None,
        )


@dataclass(frozen=True)
class OrchestrationSpecification:
    """
    Root of the workflow tree.

    Immutable once a run starts. `meta` cascades unchanged into every
    JobExecutionContext at every depth.

    Attributes:
        name: Specification name (appears in the run's result string)
        stages: Ordered stages; execution order is total
        description: Free text
        schema_version: Version of the specification format
        instance_id_prefix: Prefix of generated run ids
        meta: Metadata visible to every job
    """
    name: str
    stages: tuple[Stage, ...]
    description: str = ""
    schema_version: str = "1.0"
    instance_id_prefix: str = "run"
    meta: Optional[dict[str, str]] = None

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Specification: name is required")
        if self.stages is None:
            raise ConfigurationError(f"Specification '{self.name}': stages are required")

    def iter_jobs(self) -> Iterator[Job]:
        """Walk every job of every stage depth-first."""
        for stage in self.stages:
            for job in stage.jobs:
                yield from job.iter_jobs()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "schema_version": self.schema_version,
            "instance_id_prefix": self.instance_id_prefix,
            **({"meta": dict(self.meta)} if self.meta is not None else {}),
            "stages": [s.to_dict() for s in self.stages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestrationSpecification":
        data = _normalize(data, "Specification")
        name = data.get("name", "")
        stages = data.get("stages")
        if stages is None:
            raise ConfigurationError(f"Specification '{name}': stages are required")
        return cls(
            name=name,
            description=data.get("description") or "",
            schema_version=str(data.get("schema_version", "1.0")),
            instance_id_prefix=data.get("instance_id_prefix") or "run",
            meta=_string_map(data.get("meta"), f"Specification '{name}' meta"),
            stages=tuple(Stage.from_dict(s) for s in stages),
        )
