"""Step Recorder: timing and outcome capture around each check.

`run_with_proof` wraps one awaitable step. It stamps wall-clock start and end
times, captures WARNING/ERROR log records (and Python warnings) emitted while
the step runs, and appends exactly one `StepRecord` to the run context.

A step that raises is recorded with ``ok=False`` and the exception is
re-raised; the orchestrator decides what a failure means for the rest of the
sequence. A step that returns a FAIL outcome is recorded the same way but
nothing is raised.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
import traceback
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .crypto import _iso_utc

T = TypeVar("T")

MAX_CAPTURED_MESSAGES = 50
MAX_LIST_ITEMS = 100
MAX_KEYS = 50
MAX_STACK_CHARS = 4000


class StepStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


@dataclass(frozen=True)
class StepOutcome:
    """Tagged result of one check step."""

    status: StepStatus
    reason: str = ""
    data: Any = None

    @classmethod
    def passed(cls, data: Any = None, reason: str = "") -> "StepOutcome":
        return cls(StepStatus.PASS, reason, data)

    @classmethod
    def failed(cls, reason: str, data: Any = None) -> "StepOutcome":
        return cls(StepStatus.FAIL, reason, data)

    @classmethod
    def skipped(cls, reason: str, data: Any = None) -> "StepOutcome":
        return cls(StepStatus.SKIP, reason, data)

    @property
    def ok(self) -> bool:
        return self.status is not StepStatus.FAIL

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "reason": self.reason, "data": safe_json_serialize(self.data)}


@dataclass
class StepRecord:
    step_id: str
    started_at: str
    ended_at: Optional[str] = None
    duration_ms: Optional[int] = None
    ok: Optional[bool] = None
    result: Any = None
    error: Optional[str] = None
    error_stack: Optional[str] = None
    console_warnings: List[str] = field(default_factory=list)
    console_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class RecorderContext:
    """Per-run list of step records. Owned by one orchestrator run."""

    records: List[StepRecord] = field(default_factory=list)


def safe_json_serialize(value: Any, max_depth: int = 3, _depth: int = 0) -> Any:
    """Reduce arbitrary step output to bounded, JSON-safe data."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Enum):
        return safe_json_serialize(value.value, max_depth, _depth)
    if _depth >= max_depth:
        return "[max depth]"
    if hasattr(value, "to_dict") and callable(value.to_dict):
        value = value.to_dict()
    elif dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for i, (k, v) in enumerate(value.items()):
            if i >= MAX_KEYS:
                break
            out[str(k)] = safe_json_serialize(v, max_depth, _depth + 1)
        return out
    if isinstance(value, (list, tuple, set, frozenset)):
        return [safe_json_serialize(v, max_depth, _depth + 1) for v in list(value)[:MAX_LIST_ITEMS]]
    return str(value)


class _ConsoleCapture(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.WARNING)
        self.warnings: List[str] = []
        self.errors: List[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = record.getMessage()
        except Exception:
            msg = str(record.msg)
        bucket = self.errors if record.levelno >= logging.ERROR else self.warnings
        if len(bucket) < MAX_CAPTURED_MESSAGES:
            bucket.append(msg)


async def run_with_proof(ctx: RecorderContext, step_id: str, fn: Callable[[], Awaitable[T]]) -> T:
    record = StepRecord(step_id=step_id, started_at=_iso_utc())
    capture = _ConsoleCapture()
    pkg_logger = logging.getLogger("proof_gate")
    pkg_logger.addHandler(capture)
    start = time.monotonic()
    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                result = await fn()
            finally:
                for w in caught[:MAX_CAPTURED_MESSAGES]:
                    capture.warnings.append(f"{w.category.__name__}: {w.message}")
    except BaseException as e:
        record.ok = False
        record.error = str(e) or type(e).__name__
        record.error_stack = traceback.format_exc()[-MAX_STACK_CHARS:]
        raise
    else:
        if isinstance(result, StepOutcome) and result.status is StepStatus.FAIL:
            record.ok = False
            record.error = result.reason or "failed"
        else:
            record.ok = True
        record.result = safe_json_serialize(result)
        return result
    finally:
        pkg_logger.removeHandler(capture)
        record.ended_at = _iso_utc()
        record.duration_ms = int((time.monotonic() - start) * 1000)
        record.console_warnings = capture.warnings[:MAX_CAPTURED_MESSAGES]
        record.console_errors = capture.errors[:MAX_CAPTURED_MESSAGES]
        ctx.records.append(record)


def all_steps_passed(records: List[StepRecord]) -> bool:
    return bool(records) and all(r.ok for r in records)


def get_failed_steps(records: List[StepRecord]) -> List[StepRecord]:
    return [r for r in records if not r.ok]


def get_total_duration(records: List[StepRecord]) -> int:
    return sum(int(r.duration_ms or 0) for r in records)


def summarize_runs(records: List[StepRecord]) -> List[Dict[str, Any]]:
    """Reduce records to the `runs` entries carried by the evidence pack."""
    return [
        {
            "tool_id": r.step_id,
            "started_at": r.started_at,
            "ended_at": r.ended_at,
            "duration_ms": r.duration_ms,
            "ok": bool(r.ok),
            "error": r.error,
            "console_warnings": list(r.console_warnings),
            "console_errors": list(r.console_errors),
        }
        for r in records
    ]
