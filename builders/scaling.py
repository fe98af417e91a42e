# builders/scaling.py
from __future__ import annotations

from typing import Any, Dict, Optional

from builders.common import object_meta
from builders.dataplane import horizontal_scaling, pod_selector
from consts import Role
from ownership import OwnedSelector

DEFAULT_HPA_METRICS = [
    {
        "type": "Resource",
        "resource": {"name": "cpu", "target": {"type": "Utilization", "averageUtilization": 80}},
    }
]


def build_hpa(dataplane: dict, selector: OwnedSelector, deployment_name: str) -> Optional[Dict[str, Any]]:
    """HPA for the live Deployment, or None when horizontal scaling is off."""
    scaling = horizontal_scaling(dataplane)
    if scaling is None:
        return None
    meta = dataplane.get("metadata", {}) or {}
    spec: Dict[str, Any] = {
        "scaleTargetRef": {"apiVersion": "apps/v1", "kind": "Deployment", "name": deployment_name},
        "minReplicas": int(scaling.get("minReplicas") or 1),
        "maxReplicas": int(scaling["maxReplicas"]),
        "metrics": scaling.get("metrics") or DEFAULT_HPA_METRICS,
    }
    if scaling.get("behavior"):
        spec["behavior"] = scaling["behavior"]
    return {
        "apiVersion": "autoscaling/v2",
        "kind": "HorizontalPodAutoscaler",
        "metadata": object_meta(
            meta.get("namespace"), selector.labels(), owner=dataplane,
            generate_name=f"{meta.get('name', '')}-",
        ),
        "spec": spec,
    }


def build_pdb(dataplane: dict, selector: OwnedSelector) -> Optional[Dict[str, Any]]:
    resources = (dataplane.get("spec", {}) or {}).get("resources", {}) or {}
    pdb = (resources.get("podDisruptionBudget") or {}).get("spec")
    if not pdb:
        return None
    meta = dataplane.get("metadata", {}) or {}
    spec: Dict[str, Any] = {"selector": {"matchLabels": pod_selector(dataplane, Role.LIVE)}}
    for key in ("minAvailable", "maxUnavailable", "unhealthyPodEvictionPolicy"):
        if pdb.get(key) is not None:
            spec[key] = pdb[key]
    return {
        "apiVersion": "policy/v1",
        "kind": "PodDisruptionBudget",
        "metadata": object_meta(
            meta.get("namespace"), selector.labels(), owner=dataplane,
            generate_name=f"{meta.get('name', '')}-",
        ),
        "spec": spec,
    }
