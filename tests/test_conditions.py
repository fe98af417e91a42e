from __future__ import annotations

from conditions import aggregate_ready, get_condition, remove_condition, same_conditions, set_condition
from consts import ConditionReason, ConditionType

T0 = "2024-01-01T00:00:00Z"
T1 = "2024-01-01T00:05:00Z"


def test_set_condition_keeps_transition_time_when_status_unchanged() -> None:
    conds = set_condition([], ConditionType.READY, False, ConditionReason.PENDING, "waiting", 1, now=T0)
    conds = set_condition(conds, ConditionType.READY, False, ConditionReason.DEPENDENCIES_NOT_READY, "still", 2, now=T1)
    ready = get_condition(conds, "Ready")
    assert ready["lastTransitionTime"] == T0
    assert ready["reason"] == "DependenciesNotReady"
    assert ready["observedGeneration"] == 2


def test_set_condition_moves_transition_time_on_flip() -> None:
    conds = set_condition([], ConditionType.READY, False, ConditionReason.PENDING, now=T0)
    conds = set_condition(conds, ConditionType.READY, True, ConditionReason.READY, now=T1)
    assert get_condition(conds, ConditionType.READY)["lastTransitionTime"] == T1
    assert len(conds) == 1


def test_identical_condition_is_unchanged() -> None:
    conds = set_condition([], ConditionType.PROVISIONED, True, ConditionReason.PROVISIONED, "ok", 1, now=T0)
    again = set_condition(conds, ConditionType.PROVISIONED, True, ConditionReason.PROVISIONED, "ok", 1)
    assert again == conds


def test_aggregate_ready_reports_first_failure() -> None:
    conds = set_condition([], ConditionType.PROVISIONED, True, ConditionReason.PROVISIONED, now=T0)
    conds = set_condition(
        conds, ConditionType.WATCH_NAMESPACE_GRANT_VALID, False,
        ConditionReason.WATCH_NAMESPACE_GRANT_INVALID, "missing in apps", now=T0,
    )
    out = aggregate_ready(conds, blocking=(ConditionType.WATCH_NAMESPACE_GRANT_VALID,), now=T0)
    ready = get_condition(out, ConditionType.READY)
    assert ready["status"] == "False"
    assert ready["reason"] == "WatchNamespaceGrantInvalid"
    assert ready["message"] == "missing in apps"


def test_aggregate_ready_without_provisioned_is_pending() -> None:
    ready = get_condition(aggregate_ready([], now=T0), ConditionType.READY)
    assert ready["status"] == "False"
    assert ready["reason"] == "Pending"


def test_aggregate_ready_true() -> None:
    conds = set_condition([], ConditionType.PROVISIONED, True, ConditionReason.PROVISIONED, now=T0)
    assert get_condition(aggregate_ready(conds, now=T0), ConditionType.READY)["status"] == "True"


def test_remove_and_compare() -> None:
    a = set_condition([], ConditionType.READY, True, ConditionReason.READY, now=T0)
    a = set_condition(a, ConditionType.ROLLED_OUT, True, ConditionReason.ROLLOUT_PROMOTION_DONE, now=T0)
    b = list(reversed(a))
    assert same_conditions(a, b)
    assert get_condition(remove_condition(a, ConditionType.ROLLED_OUT), ConditionType.ROLLED_OUT) is None
