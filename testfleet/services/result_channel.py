"""
Result Channel
==============
File-based hand-off of execution outcomes between producers (unit tasks,
possibly in other processes) and consumers (the progress loop, reporters).

RECORD NAMING:
    <prefix>_<unit-id>_<producer-pid>_<random-hex>

    testfleet_result_*  JSON-serialised ExecutionOutcome
    testfleet_output_*  captured text, same tokens:

        === STDOUT ===
        ...
        === STDERR ===
        ...

WRITE PROTOCOL:
    Each record is written to a temp file in the same directory and moved
    into place with os.replace. The output record is committed before the
    result record, so a visible result always has its output.

READ PROTOCOL:
    poll() returns only records it has not delivered before. A record that
    fails to parse is logged and retried on the next poll.
"""
import json
import logging
import os
import re
import tempfile
import threading
import uuid
from typing import Optional

from pydantic import ValidationError

from testfleet.core.constants import OUTPUT_PREFIX, RESULT_PREFIX, TEMP_RECORD_PREFIX
from testfleet.models.execution_outcome import ExecutionOutcome, PolledResult, PublishedRecord

logger = logging.getLogger(__name__)

_STDOUT_HEADER = "=== STDOUT ==="
_STDERR_HEADER = "=== STDERR ==="
_RESULT_NAME_RE = re.compile(rf"^{re.escape(RESULT_PREFIX)}_(.+)_(\d+)_([0-9a-f]+)$")


def record_names(unit_id: str, producer_token: str, random_token: str) -> tuple[str, str]:
    """Result and output record names for one publication."""
    suffix = f"{unit_id}_{producer_token}_{random_token}"
    return f"{RESULT_PREFIX}_{suffix}", f"{OUTPUT_PREFIX}_{suffix}"


def parse_result_name(name: str) -> Optional[tuple[str, str, str]]:
    """Split a result record name into (unit_id, producer_token, random_token)."""
    match = _RESULT_NAME_RE.match(name)
    if not match:
        return None
    return match.group(1), match.group(2), match.group(3)


def format_output_record(stdout: str, stderr: str) -> str:
    return f"{_STDOUT_HEADER}\n{stdout}\n{_STDERR_HEADER}\n{stderr}\n"


def parse_output_record(text: str) -> tuple[str, str]:
    """Inverse of format_output_record: returns (stdout, stderr)."""
    stdout_start = text.find(_STDOUT_HEADER + "\n")
    stderr_start = text.rfind("\n" + _STDERR_HEADER + "\n")
    if stdout_start != 0 or stderr_start == -1:
        return text, ""
    stdout = text[len(_STDOUT_HEADER) + 1:stderr_start]
    stderr = text[stderr_start + len(_STDERR_HEADER) + 2:]
    if stderr.endswith("\n"):
        stderr = stderr[:-1]
    return stdout, stderr


def _atomic_write(directory: str, final_name: str, content: str) -> str:
    fd, tmp_path = tempfile.mkstemp(prefix=TEMP_RECORD_PREFIX, dir=directory)
    final_path = os.path.join(directory, final_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, final_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    return final_path


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------
class ResultPublisher:
    """Writes outcome records into the run directory."""

    def __init__(self, directory: str) -> None:
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def publish(self, unit_id: str, outcome: ExecutionOutcome) -> PublishedRecord:
        producer_token = str(os.getpid())
        random_token = uuid.uuid4().hex
        result_name, output_name = record_names(unit_id, producer_token, random_token)

        output_path = _atomic_write(
            self.directory, output_name, format_output_record(outcome.stdout, outcome.stderr)
        )
        result_path = _atomic_write(self.directory, result_name, outcome.model_dump_json())

        logger.debug("Published %s (%s)", result_name, outcome.status.value)
        return PublishedRecord(
            unit_id=unit_id,
            producer_token=producer_token,
            random_token=random_token,
            result_path=result_path,
            output_path=output_path,
        )

    def purge(self) -> int:
        """Delete every record and stray temp file in the directory."""
        removed = 0
        try:
            names = os.listdir(self.directory)
        except FileNotFoundError:
            return 0

        for name in names:
            if name.startswith((RESULT_PREFIX, OUTPUT_PREFIX, TEMP_RECORD_PREFIX)):
                try:
                    os.unlink(os.path.join(self.directory, name))
                    removed += 1
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning("Could not remove record %s: %s", name, e)
        if removed:
            logger.info("Purged %d result record(s) from %s", removed, self.directory)
        return removed


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------
class ResultPoller:
    """Delivers each result record at most once."""

    def __init__(self, directory: str) -> None:
        self.directory = directory
        self._seen: set[str] = set()
        self._lock = threading.Lock()

    @property
    def seen_count(self) -> int:
        with self._lock:
            return len(self._seen)

    def poll(self) -> list[PolledResult]:
        try:
            names = sorted(os.listdir(self.directory))
        except FileNotFoundError:
            return []

        fresh: list[PolledResult] = []
        with self._lock:
            for name in names:
                if name in self._seen:
                    continue
                tokens = parse_result_name(name)
                if tokens is None:
                    continue

                result_path = os.path.join(self.directory, name)
                try:
                    with open(result_path, "r", encoding="utf-8") as f:
                        outcome = ExecutionOutcome.model_validate_json(f.read())
                except FileNotFoundError:
                    continue
                except (OSError, ValidationError, json.JSONDecodeError) as e:
                    logger.warning("Unreadable result record %s, will retry: %s", name, e)
                    continue

                unit_id, producer_token, random_token = tokens
                output_path = os.path.join(
                    self.directory, record_names(unit_id, producer_token, random_token)[1]
                )
                self._seen.add(name)
                fresh.append(PolledResult(
                    unit_id=unit_id,
                    producer_token=producer_token,
                    random_token=random_token,
                    result_path=result_path,
                    output_path=output_path if os.path.exists(output_path) else None,
                    outcome=outcome,
                ))

        if fresh:
            logger.debug("Polled %d new result(s)", len(fresh))
        return fresh
