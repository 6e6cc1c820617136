from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


class JobInputError(ValueError):
    """Raised when a job carries inputs that no retry can fix."""


def execute_expire_posting(
    job: dict[str, Any],
    *,
    now: datetime | None = None,
    late_warning_seconds: float = 900.0,
) -> dict[str, Any]:
    """Check an ``expire_posting`` wakeup before the API applies it.

    The status transition itself happens server-side once the job closes,
    whatever result is reported; this only validates the job and reports lag.
    """
    current = now or datetime.now(timezone.utc)
    raw_inputs = job.get("inputs_json")
    inputs: dict[str, Any] = raw_inputs if isinstance(raw_inputs, dict) else {}

    target_id = _as_text(job.get("target_id"))
    posting_id = _as_text(inputs.get("posting_id")) or target_id
    if not posting_id:
        raise JobInputError("expire_posting job has no posting id")
    if target_id and posting_id != target_id:
        raise JobInputError(f"posting id mismatch inputs={posting_id} target={target_id}")

    due_at = _parse_timestamp(inputs.get("due_at"))
    lag_seconds: float | None = None
    if due_at is not None:
        lag_seconds = round((current - due_at).total_seconds(), 3)
        if lag_seconds > late_warning_seconds:
            logger.warning(
                "late expiration wakeup posting_id=%s due_at=%s lag_seconds=%.0f",
                posting_id,
                due_at.isoformat(),
                lag_seconds,
            )

    return {
        "handled": True,
        "kind": job.get("kind"),
        "target_type": job.get("target_type"),
        "posting_id": posting_id,
        "due_at": due_at.isoformat() if due_at else None,
        "fired_at": current.isoformat(),
        "lag_seconds": lag_seconds,
    }


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
