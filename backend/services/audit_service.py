# =========================================================
# FILE: /backend/services/audit_service.py
# =========================================================

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

logger = logging.getLogger("billing.audit")

SYSTEM_ACTOR = "system"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_event(
    operation: str,
    user_id: Optional[str],
    reason: str,
    source: str,
    metadata: Optional[Dict[str, Any]] = None,
    outcome: str = "success",
    error: Optional[BaseException] = None,
    duration_ms: Optional[int] = None,
) -> Dict[str, Any]:
    event = {
        "ts": _now_iso(),
        "operation": operation,
        "user_id": user_id or SYSTEM_ACTOR,
        "reason": reason,
        "source": source,
        "outcome": outcome,
        "metadata": dict(metadata or {}),
    }
    if duration_ms is not None:
        event["duration_ms"] = duration_ms
    if error is not None:
        event["error_type"] = type(error).__name__
        event["error"] = str(error)
    return event


def record(
    operation: str,
    user_id: Optional[str],
    reason: str,
    source: str,
    metadata: Optional[Dict[str, Any]] = None,
    outcome: str = "success",
    error: Optional[BaseException] = None,
    duration_ms: Optional[int] = None,
) -> Dict[str, Any]:
    """Emit one structured audit event on the billing.audit logger."""
    event = build_event(operation, user_id, reason, source, metadata, outcome, error, duration_ms)
    level = logging.INFO if outcome == "success" else logging.WARNING
    logger.log(level, "%s %s user=%s", operation, outcome, event["user_id"], extra={"audit": event})
    return event


@asynccontextmanager
async def audited(
    operation: str,
    user_id: Optional[str],
    reason: str,
    source: str,
    **metadata: Any,
) -> AsyncIterator[Dict[str, Any]]:
    """
    Wrap one step of a billing flow. An event is emitted whether the step
    succeeds or raises; the yielded dict can be filled with extra metadata.
    """
    extra: Dict[str, Any] = dict(metadata)
    started = time.monotonic()
    try:
        yield extra
    except BaseException as exc:
        record(
            operation, user_id, reason, source, extra,
            outcome="error", error=exc,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        raise
    record(
        operation, user_id, reason, source, extra,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
