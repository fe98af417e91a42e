from __future__ import annotations

from consts import LABEL_MANAGED_BY_NAME, LABEL_OWNER_UID, LABEL_SERVICE_STATE, Role
from ownership import for_dataplane, label_value


def _dataplane(name: str) -> dict:
    return {"metadata": {"name": name, "namespace": "kong", "uid": "uid-1"}}


def test_label_value_keeps_short_names() -> None:
    assert label_value("dp") == "dp"
    assert label_value("edge.proxy-1") == "edge.proxy-1"
    assert label_value("x" * 63) == "x" * 63


def test_label_value_shortens_long_names_with_hash() -> None:
    long_a = "edge-" + "a" * 70
    long_b = "edge-" + "a" * 71
    assert len(label_value(long_a)) == 63
    assert label_value(long_a) != label_value(long_b)
    assert label_value(long_a) == label_value(long_a)
    assert label_value(long_a)[:56] == long_a[:56]


def test_owned_labels_fit_for_long_owner_names() -> None:
    name = "edge-" + "x" * 65
    labels = for_dataplane(_dataplane(name)).state(Role.LIVE).labels()
    assert labels[LABEL_MANAGED_BY_NAME] == label_value(name)
    assert labels[LABEL_OWNER_UID] == "uid-1"
    assert labels[LABEL_SERVICE_STATE] == "live"
    assert all(len(v) <= 63 for v in labels.values())
