# builders/common.py
from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

from consts import FINALIZER_WAIT_FOR_OWNER

# list fields merged element-wise by key instead of replaced
MERGE_KEYS: Dict[str, str] = {
    "containers": "name",
    "initContainers": "name",
    "volumes": "name",
    "env": "name",
    "ports": "containerPort",
    "volumeMounts": "mountPath",
}


def owner_reference(owner: dict, controller: bool = True) -> Dict[str, Any]:
    meta = owner.get("metadata", {}) or {}
    return {
        "apiVersion": owner.get("apiVersion", ""),
        "kind": owner.get("kind", ""),
        "name": meta.get("name", ""),
        "uid": meta.get("uid", ""),
        "controller": controller,
        "blockOwnerDeletion": True,
    }


def object_meta(
    namespace: Optional[str],
    labels: Dict[str, str],
    owner: Optional[dict] = None,
    name: Optional[str] = None,
    generate_name: Optional[str] = None,
    annotations: Optional[Dict[str, str]] = None,
    wait_for_owner: bool = False,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"labels": dict(labels)}
    if name:
        meta["name"] = name
    else:
        meta["generateName"] = generate_name
    if namespace:
        meta["namespace"] = namespace
    if annotations:
        meta["annotations"] = dict(annotations)
    if owner is not None:
        meta["ownerReferences"] = [owner_reference(owner)]
    if wait_for_owner:
        meta["finalizers"] = [FINALIZER_WAIT_FOR_OWNER]
    return meta


def _merge_list(base: List[Any], overlay: List[Any], key: str) -> List[Any]:
    if not all(isinstance(x, dict) and key in x for x in list(base) + list(overlay)):
        return copy.deepcopy(overlay)
    out = [copy.deepcopy(x) for x in base]
    index = {x[key]: i for i, x in enumerate(out)}
    for item in overlay:
        if item[key] in index:
            i = index[item[key]]
            out[i] = strategic_merge(out[i], item)
        else:
            index[item[key]] = len(out)
            out.append(copy.deepcopy(item))
    return out


def strategic_merge(base: Any, overlay: Any) -> Any:
    """Overlay user values onto defaults; user values win on conflicting keys.

    Dicts merge recursively, lists named in MERGE_KEYS merge by key, any
    other list from the overlay replaces the default.
    """
    if not isinstance(base, dict) or not isinstance(overlay, dict):
        return copy.deepcopy(overlay)
    out = copy.deepcopy(base)
    for k, v in overlay.items():
        if v is None:
            continue
        if k in out and isinstance(out[k], list) and isinstance(v, list) and k in MERGE_KEYS:
            out[k] = _merge_list(out[k], v, MERGE_KEYS[k])
        elif k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = strategic_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def find_container(pod_spec: dict, name: str) -> Optional[dict]:
    for c in (pod_spec or {}).get("containers", []) or []:
        if c.get("name") == name:
            return c
    return None


def env_value(container: Optional[dict], name: str) -> Optional[str]:
    for e in (container or {}).get("env", []) or []:
        if e.get("name") == name:
            return e.get("value")
    return None


def env_list(values: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"name": k, "value": v} for k, v in values.items()]
