"""
Unit Loader
===========
Reads execution units from a JSON file and validates the unit graph.

File format: a JSON list of unit objects, e.g.

    [
      {"unit_id": "build-core", "phase": "build", "image": "rust:1.79",
       "command": "cargo build --release", "project_root": "."},
      {"unit_id": "test-core", "image": "core-tests:latest",
       "command": "cargo test", "depends_on": "build-core"}
    ]

Relative ``project_root`` values resolve against the file's directory unless
an explicit project root is supplied.
"""
import json
import logging
import os
from typing import Iterable, Optional

from pydantic import ValidationError

from testfleet.core.errors import ConfigurationError
from testfleet.models.execution_unit import ExecutionUnit

logger = logging.getLogger(__name__)


def load_units(path: str, project_root: Optional[str] = None) -> list[ExecutionUnit]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Units file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Units file is not valid JSON: {path}: {e}") from e

    if not isinstance(raw, list):
        raise ConfigurationError(f"Units file must contain a JSON list, got {type(raw).__name__}")

    base_dir = project_root or os.path.dirname(os.path.abspath(path))
    units: list[ExecutionUnit] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Unit #{index} is not an object")
        entry = dict(entry)
        if entry.get("phase") == "build":
            root = entry.get("project_root") or base_dir
            entry["project_root"] = os.path.abspath(os.path.join(base_dir, root))
        try:
            units.append(ExecutionUnit(**entry))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid unit #{index}: {e}") from e

    validate_units(units)
    logger.info("Loaded %d execution unit(s) from %s", len(units), path)
    return units


def validate_units(units: Iterable[ExecutionUnit], capacity: Optional[int] = None) -> None:
    """
    Reject a unit list that cannot be scheduled.

    Checks duplicate ids, unknown or self dependencies, dependency cycles,
    and (when ``capacity`` is given) units requesting more slots than exist.

    Raises
    ------
    ConfigurationError
    """
    by_id: dict[str, ExecutionUnit] = {}
    for unit in units:
        if unit.unit_id in by_id:
            raise ConfigurationError(f"Duplicate unit id '{unit.unit_id}'")
        by_id[unit.unit_id] = unit

    for unit in by_id.values():
        if unit.depends_on is None:
            continue
        if unit.depends_on == unit.unit_id:
            raise ConfigurationError(f"Unit '{unit.unit_id}' depends on itself")
        if unit.depends_on not in by_id:
            raise ConfigurationError(
                f"Unit '{unit.unit_id}' depends on unknown unit '{unit.depends_on}'"
            )

    # Each unit has at most one dependency, so cycles are found by walking chains.
    for start in by_id:
        visited = {start}
        current = by_id[start].depends_on
        while current is not None:
            if current in visited:
                raise ConfigurationError(f"Dependency cycle involving unit '{start}'")
            visited.add(current)
            current = by_id[current].depends_on

    if capacity is not None:
        for unit in by_id.values():
            if unit.cpu_slots > capacity:
                raise ConfigurationError(
                    f"Unit '{unit.unit_id}' requests {unit.cpu_slots} slots; pool capacity is {capacity}"
                )
