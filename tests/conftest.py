from __future__ import annotations

import copy
import itertools
from typing import Dict, List, Optional, Tuple

import pytest
from kubernetes.client.exceptions import ApiException

from k8s import KINDS

Key = Tuple[str, Optional[str], str]

# top-level status fields each CRD schema declares; the API server prunes the rest
STATUS_FIELDS = {
    "DataPlane": {"conditions", "service", "addresses", "selector", "readyReplicas", "replicas", "rollout"},
    "ControlPlane": {"conditions", "controllers", "dataPlane"},
    "Gateway": {"addresses", "conditions", "listeners"},
    "GatewayClass": {"conditions", "supportedFeatures"},
}


def merge_patch(target, patch):
    """RFC 7386: dicts merge, None deletes, everything else replaces."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    out = copy.deepcopy(target) if isinstance(target, dict) else {}
    for k, v in patch.items():
        if v is None:
            out.pop(k, None)
        else:
            out[k] = merge_patch(out.get(k), v)
    return out


def _label_values(obj, parent: str = ""):
    """Every label value in an object, including selectors and pod templates."""
    if isinstance(obj, list):
        for item in obj:
            yield from _label_values(item)
    elif isinstance(obj, dict):
        for k, v in obj.items():
            if k in ("labels", "matchLabels") and isinstance(v, dict):
                yield from v.values()
            elif k == "selector" and parent == "spec" and isinstance(v, dict) and "matchLabels" not in v:
                yield from (s for s in v.values() if isinstance(s, str))
            else:
                yield from _label_values(v, k)


def _invalid(kind: str, obj: dict) -> Optional[ApiException]:
    for value in _label_values(obj):
        if value is not None and len(str(value)) > 63:
            return ApiException(status=422, reason=f"{kind}: label value {value!r} must be no more than 63 characters")
    return None


def _spec_part(obj: dict) -> dict:
    return {k: v for k, v in obj.items() if k not in ("metadata", "status")}


class FakeCluster:
    """In-memory stand-in for k8s.KubeCluster.

    Assigns uid/resourceVersion/generation/creationTimestamp, expands
    generateName, gives ClusterIP Services an address, honours finalizers on
    delete and journals every write so tests can assert idempotence.
    """

    def __init__(self):
        self.objects: Dict[Key, dict] = {}
        self.writes: List[Tuple[str, str, Optional[str], str]] = []
        self._seq = itertools.count(1)

    # helpers
    def _key(self, kind: str, namespace: Optional[str], name: str) -> Key:
        return kind, (namespace if KINDS[kind].namespaced else None), name

    def _not_found(self, key: Key) -> ApiException:
        return ApiException(status=404, reason=f"{key[0]} {key[1]}/{key[2]} not found")

    def _bump(self, obj: dict) -> None:
        obj["metadata"]["resourceVersion"] = str(next(self._seq))

    def add(self, body: dict) -> dict:
        """Seed an object without journaling it."""
        obj = self.create(body)
        self.writes.pop()
        return obj

    # cluster interface
    def get(self, kind: str, namespace: Optional[str], name: str) -> Optional[dict]:
        obj = self.objects.get(self._key(kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def list(self, kind: str, namespace: Optional[str] = None, labels: Optional[Dict[str, str]] = None) -> List[dict]:
        out = []
        for (k, ns, _), obj in sorted(self.objects.items(), key=lambda kv: (kv[0][0], kv[0][1] or "", kv[0][2])):
            if k != kind:
                continue
            if namespace and KINDS[kind].namespaced and ns != namespace:
                continue
            have = obj["metadata"].get("labels", {}) or {}
            if any(have.get(lk) != lv for lk, lv in (labels or {}).items()):
                continue
            out.append(copy.deepcopy(obj))
        return out

    def create(self, body: dict) -> dict:
        obj = copy.deepcopy(body)
        kind = obj["kind"]
        obj.setdefault("apiVersion", KINDS[kind].api_version)
        meta = obj.setdefault("metadata", {})
        n = next(self._seq)
        if not meta.get("name"):
            # the API server shortens generateName to leave room for the suffix
            meta["name"] = f"{meta.get('generateName', '')[:58]}{n:05x}"
        error = _invalid(kind, obj)
        if error is not None:
            raise error
        key = self._key(kind, meta.get("namespace"), meta["name"])
        if key in self.objects:
            raise ApiException(status=409, reason=f"{kind} {meta['name']} already exists")
        meta["uid"] = f"uid-{n}"
        meta["resourceVersion"] = str(n)
        meta["generation"] = 1
        meta["creationTimestamp"] = f"2024-01-01T00:{n // 60 % 60:02d}:{n % 60:02d}Z"
        if kind == "Service":
            spec = obj.setdefault("spec", {})
            if not spec.get("clusterIP"):
                spec["clusterIP"] = f"10.96.{n // 256 % 256}.{n % 256}"
        self.objects[key] = obj
        self.writes.append(("create", kind, key[1], meta["name"]))
        return copy.deepcopy(obj)

    def patch(self, kind: str, namespace: Optional[str], name: str, patch: dict) -> dict:
        key = self._key(kind, namespace, name)
        current = self.objects.get(key)
        if current is None:
            raise self._not_found(key)
        patch = copy.deepcopy(patch)
        want_rv = (patch.get("metadata") or {}).pop("resourceVersion", None)
        if want_rv is not None and want_rv != current["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="resourceVersion conflict")
        updated = merge_patch(current, patch)
        error = _invalid(kind, updated)
        if error is not None:
            raise error
        if _spec_part(updated) != _spec_part(current):
            updated["metadata"]["generation"] = current["metadata"]["generation"] + 1
        self._bump(updated)
        self.writes.append(("patch", kind, key[1], name))
        if updated["metadata"].get("deletionTimestamp") and not updated["metadata"].get("finalizers"):
            del self.objects[key]
        else:
            self.objects[key] = updated
        return copy.deepcopy(updated)

    def patch_status(self, kind: str, namespace: Optional[str], name: str, status: dict) -> dict:
        key = self._key(kind, namespace, name)
        current = self.objects.get(key)
        if current is None:
            raise self._not_found(key)
        declared = STATUS_FIELDS.get(kind)
        if declared is not None:
            status = {k: v for k, v in status.items() if k in declared}
        updated = merge_patch(current, {"status": status})
        self._bump(updated)
        self.objects[key] = updated
        self.writes.append(("status", kind, key[1], name))
        return copy.deepcopy(updated)

    def delete(self, kind: str, namespace: Optional[str], name: str) -> None:
        key = self._key(kind, namespace, name)
        current = self.objects.get(key)
        if current is None:
            return
        self.writes.append(("delete", kind, key[1], name))
        if current["metadata"].get("finalizers"):
            current["metadata"]["deletionTimestamp"] = "2024-01-01T01:00:00Z"
            self._bump(current)
            return
        del self.objects[key]

    # test conveniences
    def only(self, kind: str, namespace: Optional[str] = None, labels: Optional[Dict[str, str]] = None) -> dict:
        found = self.list(kind, namespace, labels)
        assert len(found) == 1, f"expected one {kind}, found {[o['metadata']['name'] for o in found]}"
        return found[0]

    def mark_deployment_ready(self, namespace: str, name: str) -> dict:
        """Play the Deployment controller: the current template is fully rolled out."""
        dep = self.objects[self._key("Deployment", namespace, name)]
        want = dep["spec"].get("replicas", 1)
        return self.patch_status("Deployment", namespace, name, {
            "observedGeneration": dep["metadata"]["generation"],
            "replicas": want,
            "updatedReplicas": want,
            "readyReplicas": want,
            "availableReplicas": want,
        })

    def clear_writes(self) -> None:
        self.writes.clear()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()
