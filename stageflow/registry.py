"""
SpecificationRegistry - Load and validate OrchestrationSpecifications from storage.

The registry provides:
- Loading specifications from YAML or JSON files in a definitions directory
- Caching loaded specifications
- Validation of specification structure (via the schema constructors)
- Content-addressable lookup via SHA256 hash
"""

import hashlib
import json
from pathlib import Path
from typing import Any, Optional

import yaml

from stageflow.errors import StageflowError
from stageflow.schemas import OrchestrationSpecification


class SpecificationNotFoundError(StageflowError):
    """Raised when a specification file is not found."""
    pass


class SpecificationValidationError(StageflowError):
    """Raised when a specification file fails to parse or validate."""
    pass


def _read_file(path: Path) -> Any:
    """
    Parse a definition file (YAML or JSON).

    Raises:
        ValueError: If the file format is unsupported
    """
    suffix = path.suffix.lower()

    with open(path) as f:
        if suffix in (".yaml", ".yml"):
            return yaml.safe_load(f)
        elif suffix == ".json":
            return json.load(f)
        else:
            raise ValueError(f"Unsupported file format: {suffix}")


def load_specification_file(path: Path | str) -> OrchestrationSpecification:
    """
    Load a single specification file outside of any registry.

    Raises:
        SpecificationNotFoundError: If the file does not exist
        SpecificationValidationError: If the file cannot be parsed or is invalid
    """
    path = Path(path)
    if not path.is_file():
        raise SpecificationNotFoundError(f"Specification file not found: {path}")

    try:
        data = _read_file(path)
    except Exception as e:
        raise SpecificationValidationError(f"Failed to load {path}: {e}") from e

    try:
        return OrchestrationSpecification.from_dict(data)
    except Exception as e:
        raise SpecificationValidationError(f"Invalid specification in {path}: {e}") from e


class SpecificationRegistry:
    """
    Registry for loading and caching OrchestrationSpecifications.

    A specification id is the file name without extension. Files may live
    anywhere under the definitions directory:

        definitions/
            nightly.yaml
            releases/
                release_train.json
    """

    def __init__(self, definitions_dir: Path | str):
        """
        Initialize the registry.

        Args:
            definitions_dir: Directory containing specification files
        """
        self._definitions_dir = Path(definitions_dir)
        self._cache: dict[str, OrchestrationSpecification] = {}
        self._hash_index: dict[str, str] = {}  # sha256 -> spec_id

    @property
    def definitions_dir(self) -> Path:
        """Get the definitions directory path."""
        return self._definitions_dir

    def load(self, spec_id: str) -> OrchestrationSpecification:
        """
        Load a specification by id.

        Searches for {spec_id}.yaml, .yml or .json in the definitions tree.
        YAML files are preferred over JSON when both exist.

        Raises:
            SpecificationNotFoundError: If no file matches the id
            SpecificationValidationError: If the file is invalid
        """
        if spec_id in self._cache:
            return self._cache[spec_id]

        def_path = self._find_definition(spec_id)
        if def_path is None:
            raise SpecificationNotFoundError(f"Specification not found: {spec_id}")

        specification = load_specification_file(def_path)

        self._cache[spec_id] = specification
        self._hash_index[self.compute_hash(specification)] = spec_id
        return specification

    def load_by_hash(self, sha256: str) -> Optional[OrchestrationSpecification]:
        """
        Look up a cached specification by its content hash.

        Returns:
            The specification if it was loaded before, None otherwise
        """
        spec_id = self._hash_index.get(sha256)
        if spec_id is None:
            return None
        return self._cache.get(spec_id)

    def list_specs(self) -> list[str]:
        """Sorted ids of every specification file under the definitions directory."""
        if not self._definitions_dir.exists():
            return []

        spec_ids = set()
        for ext in ["*.yaml", "*.yml", "*.json"]:
            for f in self._definitions_dir.glob(f"**/{ext}"):
                spec_ids.add(f.stem)

        return sorted(spec_ids)

    def _find_definition(self, spec_id: str) -> Optional[Path]:
        for ext in [".yaml", ".yml", ".json"]:
            filename = f"{spec_id}{ext}"

            root_path = self._definitions_dir / filename
            if root_path.exists():
                return root_path

            matches = sorted(self._definitions_dir.glob(f"**/{filename}"))
            if matches:
                return matches[0]

        return None

    @staticmethod
    def compute_hash(specification: OrchestrationSpecification) -> str:
        """
        SHA256 of the canonical JSON form (sorted keys, compact encoding).
        """
        canonical = json.dumps(specification.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def preload_all(self) -> int:
        """
        Load every specification into the cache.

        Returns:
            Number of specifications loaded

        Raises:
            SpecificationValidationError: If any specification is invalid
        """
        count = 0
        for spec_id in self.list_specs():
            self.load(spec_id)
            count += 1
        return count
