# reconcile.py
from __future__ import annotations

import copy
import json
import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from kubernetes.client.exceptions import ApiException

from consts import ANNOTATION_LAST_APPLIED, FINALIZER_WAIT_FOR_OWNER
from errors import TransientError
from k8s import is_conflict, remove_finalizer
from ownership import OwnedSelector

log = logging.getLogger(__name__)

Path = Tuple[str, ...]
_MISSING = object()

# top-level fields that are never part of the desired state
_UNMANAGED = ("apiVersion", "kind", "metadata", "status")


class ReconcilePlan(dict):
    """A small, json-serializable planning object."""

    # kept as dict subclass for easy printing/JSON dumping


def ref(obj: dict) -> str:
    meta = obj.get("metadata", {}) or {}
    name = meta.get("name") or (meta.get("generateName", "") + "*")
    return f"{obj.get('kind', '')}/{name}"


def is_terminating(obj: dict) -> bool:
    return bool(((obj or {}).get("metadata", {}) or {}).get("deletionTimestamp"))


def prune_none(value):
    if isinstance(value, dict):
        return {k: prune_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [prune_none(v) for v in value]
    return value


# ─────────────────────────────────────────────
# Desired vs actual
# ─────────────────────────────────────────────
def covers(desired, live) -> bool:
    """True when every field set in ``desired`` has the same value in ``live``.

    Extra keys in ``live`` (server defaults, fields owned by others) are
    ignored; lists must have the same length and cover element-wise.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(k in live and covers(v, live[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(covers(d, a) for d, a in zip(desired, live))
    return desired == live


def three_way_patch(last: Optional[dict], desired: dict, live: dict) -> dict:
    """Merge patch moving ``live`` to ``desired``.

    Keys present in ``last`` (what we applied before) but absent from
    ``desired`` are deleted, so dropping a field really removes it.
    """
    last = last if isinstance(last, dict) else {}
    patch: dict = {}
    for k, v in desired.items():
        lv = live.get(k, _MISSING)
        if isinstance(v, dict) and isinstance(lv, dict):
            sub = three_way_patch(last.get(k), v, lv)
            if sub:
                patch[k] = sub
        elif lv is _MISSING or not covers(v, lv):
            patch[k] = v
    for k in last:
        if k not in desired and k in live:
            patch[k] = None
    return patch


def managed_view(obj: dict) -> dict:
    meta = obj.get("metadata", {}) or {}
    annotations = dict(meta.get("annotations", {}) or {})
    annotations.pop(ANNOTATION_LAST_APPLIED, None)
    view_meta = {"labels": dict(meta.get("labels", {}) or {}), "annotations": annotations}
    if meta.get("ownerReferences"):
        view_meta["ownerReferences"] = meta["ownerReferences"]
    view = {"metadata": view_meta}
    for k, v in obj.items():
        if k not in _UNMANAGED:
            view[k] = v
    return view


def _drop_path(obj: dict, path: Path) -> dict:
    if not path or not isinstance(obj, dict) or path[0] not in obj:
        return obj
    out = dict(obj)
    if len(path) == 1:
        out.pop(path[0])
    else:
        out[path[0]] = _drop_path(out[path[0]], path[1:])
    return out


def _serialize(view: dict) -> str:
    return json.dumps(view, sort_keys=True, separators=(",", ":"))


def with_last_applied(desired: dict, ignore: Sequence[Path] = ()) -> dict:
    body = prune_none(copy.deepcopy(desired))
    view = managed_view(body)
    for path in ignore:
        view = _drop_path(view, path)
    meta = body.setdefault("metadata", {})
    meta.setdefault("annotations", {})[ANNOTATION_LAST_APPLIED] = _serialize(view)
    return body


def diff(live: dict, desired: dict, ignore: Sequence[Path] = ()) -> dict:
    """Merge patch for ``live`` or {} when already converged."""
    annotations = ((live.get("metadata", {}) or {}).get("annotations", {}) or {})
    raw_last = annotations.get(ANNOTATION_LAST_APPLIED)
    try:
        last = json.loads(raw_last) if raw_last else {}
    except ValueError:
        last = {}

    want = managed_view(prune_none(desired))
    have = managed_view(live)
    for path in ignore:
        want = _drop_path(want, path)
        last = _drop_path(last, path)
        have = _drop_path(have, path)

    patch = three_way_patch(last, want, have)
    serialized = _serialize(want)
    if patch or raw_last != serialized:
        patch.setdefault("metadata", {}).setdefault("annotations", {})[ANNOTATION_LAST_APPLIED] = serialized
    return patch


# ─────────────────────────────────────────────
# Owned objects
# ─────────────────────────────────────────────
def _created(obj: dict) -> str:
    return ((obj.get("metadata", {}) or {}).get("creationTimestamp") or "")


def _ordered(objs: List[dict], keep: str) -> List[dict]:
    objs = sorted(objs, key=lambda o: (_created(o), (o.get("metadata", {}) or {}).get("name", "")))
    return list(reversed(objs)) if keep == "newest" else objs


def delete_owned(cluster, obj: dict) -> None:
    # strip our finalizer first; the delete then completes without a second pass
    remove_finalizer(cluster, obj, FINALIZER_WAIT_FOR_OWNER)
    meta = obj.get("metadata", {}) or {}
    if not is_terminating(obj):
        cluster.delete(obj["kind"], meta.get("namespace"), meta.get("name"))
    log.info("[reconcile] deleted %s", ref(obj))


def list_owned(cluster, kind: str, namespace: Optional[str], selector: OwnedSelector) -> List[dict]:
    return [o for o in cluster.list(kind, namespace, selector.labels()) if not is_terminating(o)]


def _split_renamed(found: List[dict], name: str) -> Tuple[List[dict], List[dict]]:
    """Owned objects under ``name`` and those under any other name; names are
    immutable, so the others are replaced rather than patched."""
    same = [o for o in found if (o.get("metadata", {}) or {}).get("name") == name]
    return same, [o for o in found if o not in same]


def ensure_owned(
    cluster,
    desired: dict,
    selector: OwnedSelector,
    keep: str = "oldest",
    ignore: Sequence[Path] = (),
) -> Tuple[str, dict]:
    """Converge the single object ``selector`` identifies onto ``desired``.

    Creates it when missing, patches it on drift and deletes duplicates
    (keeping the oldest, or newest with ``keep="newest"``). ``ignore`` lists
    paths another actor owns once the object exists (e.g. HPA-driven
    ``spec.replicas``). Returns ``(op, object)``, op one of
    created/updated/noop.
    """
    kind = desired["kind"]
    meta = desired.get("metadata", {}) or {}
    namespace = meta.get("namespace")

    listed = cluster.list(kind, namespace, selector.labels())
    found = [o for o in listed if not is_terminating(o)]
    for stale in listed:
        if is_terminating(stale):
            remove_finalizer(cluster, stale, FINALIZER_WAIT_FOR_OWNER)
    if meta.get("name"):
        found, renamed = _split_renamed(found, meta["name"])
        for stale in renamed:
            log.info("[reconcile] replacing %s with %s", ref(stale), ref(desired))
            delete_owned(cluster, stale)
        if not found:
            existing = cluster.get(kind, namespace, meta["name"])
            if existing and not is_terminating(existing):
                found = [existing]

    if not found:
        try:
            obj = cluster.create(with_last_applied(desired, ignore))
        except ApiException as e:
            if is_conflict(e):
                # another pass or actor created it between our list and create
                raise TransientError(f"{ref(desired)} already exists", delay=1) from e
            raise
        log.info("[reconcile] created %s", ref(obj))
        return "created", obj

    found = _ordered(found, keep)
    current = found[0]
    for extra in found[1:]:
        delete_owned(cluster, extra)

    patch = diff(current, desired, ignore)
    if not patch:
        return "noop", current
    cur_meta = current.get("metadata", {}) or {}
    obj = cluster.patch(kind, cur_meta.get("namespace"), cur_meta.get("name"), patch)
    log.info("[reconcile] updated %s", ref(obj))
    return "updated", obj


def ensure_absent(
    cluster,
    kind: str,
    namespace: Optional[str],
    selector: OwnedSelector,
    keep: Iterable[str] = (),
) -> List[str]:
    """Delete every object matching ``selector`` except those named in ``keep``."""
    keep = set(keep)
    deleted: List[str] = []
    for obj in cluster.list(kind, namespace, selector.labels()):
        name = (obj.get("metadata", {}) or {}).get("name", "")
        if name in keep:
            continue
        delete_owned(cluster, obj)
        deleted.append(name)
    return deleted


# ─────────────────────────────────────────────
# Planning
# ─────────────────────────────────────────────
def plan_owned(cluster, items: Sequence[Tuple[dict, OwnedSelector]], ignore: Sequence[Path] = ()) -> ReconcilePlan:
    """Compute what ensure_owned() *would* do, without creating/updating/deleting anything."""
    to_create: List[str] = []
    to_update: List[str] = []
    to_delete: List[str] = []

    for desired, selector in items:
        meta = desired.get("metadata", {}) or {}
        found = _ordered(list_owned(cluster, desired["kind"], meta.get("namespace"), selector), "oldest")
        if meta.get("name"):
            found, renamed = _split_renamed(found, meta["name"])
            to_delete.extend(ref(o) for o in renamed)
        if not found:
            to_create.append(ref(desired))
            continue
        to_delete.extend(ref(o) for o in found[1:])
        if diff(found[0], desired, ignore):
            to_update.append(ref(found[0]))

    to_create.sort()
    to_update.sort()
    to_delete.sort()

    return ReconcilePlan(
        counts={
            "create": len(to_create),
            "update": len(to_update),
            "delete": len(to_delete),
        },
        create=to_create,
        update=to_update,
        delete=to_delete,
    )


def print_plan(plan: ReconcilePlan) -> None:
    owner = plan.get("owner", "")
    counts = plan.get("counts", {})
    print(f"[plan] owner={owner} create={counts.get('create',0)} update={counts.get('update',0)} delete={counts.get('delete',0)}")
    for k in ("create", "update", "delete"):
        items = plan.get(k, []) or []
        if not items:
            continue
        print(f"[plan] {k}:")
        for name in items:
            print(f"  - {name}")


def status_patch(current: Optional[dict], desired: dict) -> dict:
    """Top-level status keys that differ; a None value in ``desired`` clears the key."""
    current = current or {}
    patch: dict = {}
    for k, v in desired.items():
        if v is None:
            if current.get(k) is not None:
                patch[k] = None
        elif current.get(k) != v:
            patch[k] = v
    return patch
