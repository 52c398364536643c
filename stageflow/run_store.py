"""
RunStore - Persist run status records.

The RunStore is the status-query surface keyed by run id. It holds one
RunRecord per workflow instance (top-level runs and nested sub-workflows),
updated on every custom status change and on completion.

Storage backends:
- In-memory (for testing and one-shot executions)
- File-based (for the CLI: `stageflow status RUN_ID` after a run)
"""

import json
import random
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from stageflow.schemas import RunRecord


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(random.choice(ALPHABET) for _ in range(16))

    return timestamp_part + random_part


class RunStore(ABC):
    """
    Abstract base class for run record storage.

    Implementations must provide methods to:
    - Store (create or replace) a RunRecord
    - Retrieve a RunRecord by id
    - List stored run ids
    """

    @abstractmethod
    def save_run(self, record: RunRecord) -> None:
        """
        Store or update a run record.

        Args:
            record: The RunRecord to store
        """
        pass

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[RunRecord]:
        """
        Retrieve a run record by ID.

        Args:
            run_id: The run identifier

        Returns:
            The RunRecord if found, None otherwise
        """
        pass

    @abstractmethod
    def list_runs(self, parent_id: Optional[str] = None) -> list[str]:
        """
        List stored run ids.

        Args:
            parent_id: Only list nested instances of this run

        Returns:
            Sorted list of run ids
        """
        pass


class InMemoryRunStore(RunStore):
    """
    In-memory implementation of RunStore.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._runs: dict[str, RunRecord] = {}

    def save_run(self, record: RunRecord) -> None:
        self._runs[record.run_id] = record

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    def list_runs(self, parent_id: Optional[str] = None) -> list[str]:
        return sorted(
            run_id for run_id, record in self._runs.items()
            if parent_id is None or record.parent_id == parent_id
        )

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._runs.clear()


class FileRunStore(RunStore):
    """
    File-based implementation of RunStore.

    Stores records as JSON files:
        store_dir/
            runs/
                {run_id}.json
    """

    def __init__(self, store_dir: Path | str):
        self._store_dir = Path(store_dir)
        self._runs_dir = self._store_dir / "runs"
        self._runs_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    def save_run(self, record: RunRecord) -> None:
        run_path = self._runs_dir / f"{record.run_id}.json"
        tmp_path = run_path.with_suffix(".json.tmp")
        with self._lock:
            with open(tmp_path, "w") as f:
                json.dump(record.to_dict(), f, indent=2)
            tmp_path.replace(run_path)

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        run_path = self._runs_dir / f"{run_id}.json"
        if not run_path.exists():
            return None
        with open(run_path) as f:
            data = json.load(f)
        return RunRecord.from_dict(data)

    def list_runs(self, parent_id: Optional[str] = None) -> list[str]:
        run_ids = sorted(p.stem for p in self._runs_dir.glob("*.json"))
        if parent_id is None:
            return run_ids
        return [
            run_id for run_id in run_ids
            if (record := self.get_run(run_id)) is not None and record.parent_id == parent_id
        ]
