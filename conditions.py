# conditions.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List, Optional

from consts import ConditionReason, ConditionType


def now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _value(x) -> str:
    return x.value if hasattr(x, "value") else str(x)


def get_condition(conditions: Optional[List[dict]], ctype) -> Optional[dict]:
    for c in conditions or []:
        if c.get("type") == _value(ctype):
            return c
    return None


def is_true(conditions: Optional[List[dict]], ctype) -> bool:
    c = get_condition(conditions, ctype)
    return bool(c) and c.get("status") == "True"


def set_condition(
    conditions: Optional[List[dict]],
    ctype,
    status: bool,
    reason,
    message: str = "",
    generation: Optional[int] = None,
    now: Optional[str] = None,
) -> List[dict]:
    """Return a new list with ``ctype`` set.

    lastTransitionTime only moves when the status flips, and an identical
    condition is kept as-is so re-setting it never produces a status write.
    """
    want = {
        "type": _value(ctype),
        "status": "True" if status else "False",
        "reason": _value(reason),
        "message": message,
    }
    if generation is not None:
        want["observedGeneration"] = generation

    out: List[dict] = []
    found = False
    for c in conditions or []:
        if c.get("type") != want["type"]:
            out.append(c)
            continue
        found = True
        if c.get("status") == want["status"]:
            want["lastTransitionTime"] = c.get("lastTransitionTime") or now or now_iso()
        else:
            want["lastTransitionTime"] = now or now_iso()
        out.append(want)
    if not found:
        want["lastTransitionTime"] = now or now_iso()
        out.append(want)
    return out


def remove_condition(conditions: Optional[List[dict]], ctype) -> List[dict]:
    return [c for c in conditions or [] if c.get("type") != _value(ctype)]


def aggregate_ready(
    conditions: List[dict],
    blocking: Iterable = (),
    generation: Optional[int] = None,
    ready_message: str = "",
    now: Optional[str] = None,
) -> List[dict]:
    """Ready requires Provisioned=True and no blocking condition set to False.

    The first failing condition (Provisioned first, then ``blocking`` in the
    given order) supplies Ready's reason and message.
    """
    for ctype in [ConditionType.PROVISIONED, *blocking]:
        c = get_condition(conditions, ctype)
        if c is None or c.get("status") != "True":
            reason = (c or {}).get("reason") or ConditionReason.PENDING.value
            message = (c or {}).get("message") or f"{_value(ctype)} condition not satisfied"
            return set_condition(conditions, ConditionType.READY, False, reason, message, generation, now)
    return set_condition(
        conditions, ConditionType.READY, True, ConditionReason.READY, ready_message, generation, now
    )


def same_conditions(a: Optional[List[dict]], b: Optional[List[dict]]) -> bool:
    """Compare condition lists ignoring order."""
    def key(cs):
        return sorted(
            (c.get("type"), c.get("status"), c.get("reason"), c.get("message"),
             c.get("observedGeneration"), c.get("lastTransitionTime"))
            for c in cs or []
        )
    return key(a) == key(b)
