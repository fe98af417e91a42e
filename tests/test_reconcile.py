from __future__ import annotations

import pytest

from consts import ANNOTATION_LAST_APPLIED, FINALIZER_WAIT_FOR_OWNER
from errors import TransientError
from ownership import for_dataplane
from reconcile import (
    covers,
    diff,
    ensure_absent,
    ensure_owned,
    plan_owned,
    status_patch,
    three_way_patch,
    with_last_applied,
)

NS = "kong"
OWNER = {"metadata": {"name": "dp", "namespace": NS, "uid": "uid-owner"}}
SELECTOR = for_dataplane(OWNER)


def _service(port: int = 80, finalizers=None, **meta) -> dict:
    metadata = dict({"namespace": NS, "generateName": "svc-", "labels": SELECTOR.labels()}, **meta)
    if finalizers:
        metadata["finalizers"] = finalizers
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": metadata,
        "spec": {"type": "ClusterIP", "ports": [{"name": "http", "port": port}]},
    }


def test_covers_ignores_extra_live_fields() -> None:
    assert covers({"a": 1}, {"a": 1, "b": 2})
    assert covers({"a": {"b": [1, 2]}}, {"a": {"b": [1, 2], "c": 3}})
    assert not covers({"a": [1]}, {"a": [1, 2]})
    assert not covers({"a": {"b": 1}}, {"a": 1})


def test_three_way_patch_removes_previously_applied_keys() -> None:
    last = {"metadata": {"annotations": {"x": "1"}}, "spec": {"a": 1}}
    desired = {"metadata": {"annotations": {}}, "spec": {"a": 1}}
    live = {"metadata": {"annotations": {"x": "1", "other": "keep"}}, "spec": {"a": 1, "defaulted": True}}
    assert three_way_patch(last, desired, live) == {"metadata": {"annotations": {"x": None}}}


def test_three_way_patch_leaves_unmanaged_keys_alone() -> None:
    live = {"spec": {"a": 1, "clusterIP": "10.0.0.1"}}
    assert three_way_patch({}, {"spec": {"a": 2}}, live) == {"spec": {"a": 2}}


def test_diff_is_empty_for_freshly_applied_object() -> None:
    body = with_last_applied(_service(name="svc"))
    assert diff(body, _service(name="svc")) == {}


def test_diff_updates_last_applied_with_change() -> None:
    body = with_last_applied(_service(name="svc"))
    patch = diff(body, _service(port=81, name="svc"))
    assert patch["spec"] == {"ports": [{"name": "http", "port": 81}]}
    assert ANNOTATION_LAST_APPLIED in patch["metadata"]["annotations"]


def test_ensure_owned_create_noop_update(cluster) -> None:
    op, created = ensure_owned(cluster, _service(), SELECTOR)
    assert op == "created"
    assert created["metadata"]["name"].startswith("svc-")

    op, _ = ensure_owned(cluster, _service(), SELECTOR)
    assert op == "noop"

    op, updated = ensure_owned(cluster, _service(port=8080), SELECTOR)
    assert op == "updated"
    assert updated["metadata"]["name"] == created["metadata"]["name"]
    assert updated["spec"]["ports"] == [{"name": "http", "port": 8080}]
    # server-assigned fields survive the patch
    assert updated["spec"]["clusterIP"] == created["spec"]["clusterIP"]


def test_ensure_owned_restores_drift(cluster) -> None:
    _, svc = ensure_owned(cluster, _service(), SELECTOR)
    cluster.patch("Service", NS, svc["metadata"]["name"], {"spec": {"type": "NodePort"}})

    op, svc = ensure_owned(cluster, _service(), SELECTOR)
    assert op == "updated"
    assert svc["spec"]["type"] == "ClusterIP"


def test_ensure_owned_deletes_duplicates_keeping_oldest(cluster) -> None:
    first = cluster.add(with_last_applied(_service(finalizers=[FINALIZER_WAIT_FOR_OWNER])))
    cluster.add(with_last_applied(_service(finalizers=[FINALIZER_WAIT_FOR_OWNER])))

    op, kept = ensure_owned(cluster, _service(), SELECTOR)

    assert op == "noop"
    assert kept["metadata"]["name"] == first["metadata"]["name"]
    assert [s["metadata"]["name"] for s in cluster.list("Service", NS)] == [first["metadata"]["name"]]


def test_ensure_owned_keep_newest(cluster) -> None:
    cluster.add(with_last_applied(_service()))
    second = cluster.add(with_last_applied(_service()))

    _, kept = ensure_owned(cluster, _service(), SELECTOR, keep="newest")
    assert kept["metadata"]["name"] == second["metadata"]["name"]
    assert len(cluster.list("Service", NS)) == 1


def test_ensure_owned_ignored_path_owned_by_someone_else(cluster) -> None:
    ignore = (("spec", "ports"),)
    _, svc = ensure_owned(cluster, _service(), SELECTOR, ignore=ignore)
    cluster.patch("Service", NS, svc["metadata"]["name"], {"spec": {"ports": [{"name": "http", "port": 9999}]}})

    op, svc = ensure_owned(cluster, _service(), SELECTOR, ignore=ignore)
    assert op == "noop"
    assert svc["spec"]["ports"][0]["port"] == 9999


def test_ensure_owned_create_conflict_is_transient(cluster, monkeypatch) -> None:
    cluster.add(_service(name="fixed", labels={}))
    monkeypatch.setattr(cluster, "get", lambda *args: None)

    with pytest.raises(TransientError):
        ensure_owned(cluster, _service(name="fixed"), SELECTOR)


def test_ensure_owned_replaces_object_under_a_new_name(cluster) -> None:
    cluster.add(with_last_applied(_service(name="public", finalizers=[FINALIZER_WAIT_FOR_OWNER])))

    plan = plan_owned(cluster, [(_service(name="edge"), SELECTOR)])
    assert plan["create"] == ["Service/edge"]
    assert plan["delete"] == ["Service/public"]

    op, svc = ensure_owned(cluster, _service(name="edge"), SELECTOR)
    assert op == "created"
    assert svc["metadata"]["name"] == "edge"
    assert [s["metadata"]["name"] for s in cluster.list("Service", NS)] == ["edge"]


def test_ensure_absent_strips_finalizer_and_keeps_named(cluster) -> None:
    keep = cluster.add(_service(finalizers=[FINALIZER_WAIT_FOR_OWNER]))
    drop = cluster.add(_service(finalizers=[FINALIZER_WAIT_FOR_OWNER]))

    deleted = ensure_absent(cluster, "Service", NS, SELECTOR, keep=[keep["metadata"]["name"]])

    assert deleted == [drop["metadata"]["name"]]
    assert cluster.get("Service", NS, drop["metadata"]["name"]) is None
    assert cluster.get("Service", NS, keep["metadata"]["name"]) is not None


def test_plan_owned_reports_without_writing(cluster) -> None:
    cluster.add(with_last_applied(_service()))
    cluster.add(with_last_applied(_service()))
    other = for_dataplane({"metadata": {"name": "other", "namespace": NS, "uid": "uid-other"}})
    desired_other = _service()
    desired_other["metadata"]["labels"] = other.labels()

    plan = plan_owned(cluster, [(_service(port=81), SELECTOR), (desired_other, other)])

    assert plan["counts"] == {"create": 1, "update": 1, "delete": 1}
    assert plan["create"] == ["Service/svc-*"]
    assert cluster.writes == []


def test_status_patch_only_changed_keys() -> None:
    current = {"readyReplicas": 1, "service": "svc", "rollout": {"phase": "Progressing"}}
    desired = {"readyReplicas": 2, "service": "svc", "rollout": None, "addresses": None}
    assert status_patch(current, desired) == {"readyReplicas": 2, "rollout": None}
