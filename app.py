# app.py
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

import kopf
from kubernetes import config

from config import OperatorConfig
from consts import (
    FINALIZER_CLEANUP,
    GATEWAY_API_GROUP,
    GATEWAY_API_VERSION,
    KIND_CONTROLPLANE,
    KIND_DATAPLANE,
    KIND_GATEWAY,
    KIND_GATEWAYCLASS,
    KIND_GATEWAY_CONFIGURATION,
    LABEL_MANAGED_BY,
    LABEL_MANAGED_BY_NAME,
    LABEL_MANAGED_BY_NAMESPACE,
    LABEL_VALUE_MAX,
    OPERATOR_ALPHA_VERSION,
    OPERATOR_GROUP,
    OPERATOR_VERSION,
    ManagedBy,
)
from builders.controlplane import watch_namespaces
from controlplane_controller import ControlPlaneReconciler
from dataplane_controller import DataPlaneReconciler
from errors import TransientError
from extensions import metrics_extension_refs
from gateway_controller import GatewayReconciler
from k8s import KubeCluster, is_transient
from ownership import label_value

log = logging.getLogger(__name__)

# timer decorators take their interval at import time; everything else is
# read again at startup and kept in kopf's memo
RESYNC_SECONDS = OperatorConfig.from_env().resync_seconds

Key = Tuple[str, Optional[str], str]

OWNER_KINDS = {
    ManagedBy.DATAPLANE.value: KIND_DATAPLANE,
    ManagedBy.CONTROLPLANE.value: KIND_CONTROLPLANE,
    ManagedBy.GATEWAY.value: KIND_GATEWAY,
}


def _meta(obj: Optional[dict]) -> dict:
    return (obj or {}).get("metadata", {}) or {}


# ─────────────────────────────────────────────
# Composition root
# ─────────────────────────────────────────────
class Operator:
    """Owns the cluster client and reconcilers, and serializes work per object key.

    kopf already serializes handlers of one object, but a timer, a change
    handler and a mapped owned-object event can all target the same key.
    """

    def __init__(self, cluster, cfg: OperatorConfig):
        self.cluster = cluster
        self.config = cfg
        self.dataplanes = DataPlaneReconciler(cluster, cfg)
        self.controlplanes = ControlPlaneReconciler(cluster, cfg)
        self.gateways = GatewayReconciler(cluster, cfg)
        self._guard = threading.Lock()
        self._locks: Dict[Key, threading.Lock] = {}

    def _lock(self, key: Key) -> threading.Lock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def _run(self, key: Key, fn: Callable[[], None]) -> None:
        with self._lock(key):
            try:
                fn()
            except TransientError as e:
                raise kopf.TemporaryError(str(e), delay=e.delay) from e
            except Exception as e:
                if is_transient(e):
                    log.info("[controller] %s/%s/%s transient error, retrying: %s", *key, e)
                    raise kopf.TemporaryError(f"{key[0]} {key[1]}/{key[2]}: {e}", delay=5) from e
                raise

    # entry points
    def reconcile(self, kind: str, namespace: Optional[str], name: str) -> None:
        key = (kind, namespace, name)
        if kind == KIND_DATAPLANE:
            self._run(key, lambda: self.dataplanes.reconcile(namespace, name))
        elif kind == KIND_CONTROLPLANE:
            self._run(key, lambda: self.controlplanes.reconcile(namespace, name))
        elif kind == KIND_GATEWAY:
            self._run(key, lambda: self.gateways.reconcile(namespace, name))
        elif kind == KIND_GATEWAYCLASS:
            self._run(key, lambda: self.gateways.reconcile_class(name))
        else:
            raise ValueError(f"no reconciler for {kind}")

    def cleanup(self, kind: str, namespace: str, name: str) -> None:
        key = (kind, namespace, name)
        if kind == KIND_DATAPLANE:
            self._run(key, lambda: self.dataplanes.cleanup(namespace, name))
        elif kind == KIND_CONTROLPLANE:
            self._run(key, lambda: self.controlplanes.cleanup(namespace, name))

    def forget(self, kind: str, namespace: Optional[str], name: str) -> None:
        """Drop the lock of a deleted object unless a pass still holds it."""
        key = (kind, namespace, name)
        with self._guard:
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]

    def reconcile_all(self, keys: List[Key]) -> None:
        for kind, namespace, name in keys:
            self.reconcile(kind, namespace, name)

    # ─────────────────────────────────────────────
    # Event mapping: which owners care about this object
    # ─────────────────────────────────────────────
    def owner_of(self, labels: Optional[Dict[str, str]]) -> List[Key]:
        labels = labels or {}
        kind = OWNER_KINDS.get(labels.get(LABEL_MANAGED_BY, ""))
        name = labels.get(LABEL_MANAGED_BY_NAME)
        if kind is None or not name:
            return []
        namespace = labels.get(LABEL_MANAGED_BY_NAMESPACE) or None
        if len(name) < LABEL_VALUE_MAX:
            return [(kind, namespace, name)]
        # the label may hold a shortened name; find the owner it stands for
        return [
            (kind, namespace, _meta(owner).get("name", ""))
            for owner in self.cluster.list(kind, namespace)
            if label_value(_meta(owner).get("name", "")) == name
        ]

    def controlplanes_for_dataplane(self, namespace: str, name: str) -> List[Key]:
        return [
            (KIND_CONTROLPLANE, namespace, _meta(cp).get("name", ""))
            for cp in self.cluster.list(KIND_CONTROLPLANE, namespace)
            if (cp.get("spec", {}) or {}).get("dataplane") == name
        ]

    def dataplane_for_controlplane(self, controlplane: dict) -> List[Key]:
        dp_name = (controlplane.get("spec", {}) or {}).get("dataplane")
        if not dp_name:
            return []
        return [(KIND_DATAPLANE, _meta(controlplane).get("namespace"), dp_name)]

    def controlplanes_for_grant(self, namespace: str) -> List[Key]:
        return [
            (KIND_CONTROLPLANE, _meta(cp).get("namespace"), _meta(cp).get("name", ""))
            for cp in self.cluster.list(KIND_CONTROLPLANE)
            if namespace in (watch_namespaces(cp) or [])
        ]

    def controlplanes_for_extension(self, namespace: str, name: str) -> List[Key]:
        out: List[Key] = []
        for cp in self.cluster.list(KIND_CONTROLPLANE, namespace):
            if any(ref.get("name") == name for ref in metrics_extension_refs(cp)):
                out.append((KIND_CONTROLPLANE, namespace, _meta(cp).get("name", "")))
        return out

    def dataplanes_for_plugin_installation(self, namespace: str, name: str) -> List[Key]:
        out: List[Key] = []
        for dp in self.cluster.list(KIND_DATAPLANE, namespace):
            refs = (dp.get("spec", {}) or {}).get("pluginsToInstall", []) or []
            if any(r.get("name") == name and (r.get("namespace") or namespace) == namespace for r in refs):
                out.append((KIND_DATAPLANE, namespace, _meta(dp).get("name", "")))
        return out

    def gateways_for_class(self, class_name: str) -> List[Key]:
        return [
            (KIND_GATEWAY, _meta(gw).get("namespace"), _meta(gw).get("name", ""))
            for gw in self.cluster.list(KIND_GATEWAY)
            if (gw.get("spec", {}) or {}).get("gatewayClassName") == class_name
        ]

    def gateways_for_configuration(self, namespace: str, name: str) -> List[Key]:
        out: List[Key] = []
        for gwc in self.cluster.list(KIND_GATEWAYCLASS):
            ref = (gwc.get("spec", {}) or {}).get("parametersRef") or {}
            if ref.get("kind") == KIND_GATEWAY_CONFIGURATION and ref.get("namespace") == namespace \
                    and ref.get("name") == name:
                class_name = _meta(gwc).get("name", "")
                out.append((KIND_GATEWAYCLASS, None, class_name))
                out.extend(self.gateways_for_class(class_name))
        return out


def _operator(memo: kopf.Memo) -> Operator:
    op = memo.get("operator")
    if op is None:
        raise kopf.TemporaryError("operator not initialised yet", delay=1)
    return op


# ─────────────────────────────────────────────
# Startup
# ─────────────────────────────────────────────
@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_):
    cfg = OperatorConfig.from_env()
    logging.getLogger().setLevel(cfg.log_level)
    logging.getLogger("kopf.objects").setLevel(logging.WARNING)

    try:
        config.load_incluster_config()
        log.info("[controller] using in-cluster config")
    except config.ConfigException:
        config.load_kube_config()
        log.info("[controller] using kubeconfig (local)")

    settings.execution.max_workers = cfg.max_workers
    settings.persistence.finalizer = FINALIZER_CLEANUP
    settings.posting.enabled = False
    memo.operator = Operator(KubeCluster(request_timeout=cfg.request_timeout), cfg)
    log.info(
        "[controller] started: resync=%ss workers=%s controller=%s",
        cfg.resync_seconds, cfg.max_workers, cfg.controller_name,
    )


# ─────────────────────────────────────────────
# DataPlane
# ─────────────────────────────────────────────
DATAPLANES = (OPERATOR_GROUP, OPERATOR_VERSION, "dataplanes")
CONTROLPLANES = (OPERATOR_GROUP, OPERATOR_VERSION, "controlplanes")
GATEWAYS = (GATEWAY_API_GROUP, GATEWAY_API_VERSION, "gateways")
GATEWAYCLASSES = (GATEWAY_API_GROUP, GATEWAY_API_VERSION, "gatewayclasses")


@kopf.on.resume(*DATAPLANES)
@kopf.on.create(*DATAPLANES)
@kopf.on.update(*DATAPLANES)
def dataplane_changed(namespace, name, memo, **_):
    _operator(memo).reconcile(KIND_DATAPLANE, namespace, name)


@kopf.timer(*DATAPLANES, interval=RESYNC_SECONDS)
def dataplane_resync(namespace, name, memo, **_):
    _operator(memo).reconcile(KIND_DATAPLANE, namespace, name)


@kopf.on.delete(*DATAPLANES)
def dataplane_deleted(namespace, name, memo, **_):
    op = _operator(memo)
    op.cleanup(KIND_DATAPLANE, namespace, name)
    op.forget(KIND_DATAPLANE, namespace, name)


@kopf.on.event(*DATAPLANES)
def dataplane_event(namespace, name, labels, memo, **_):
    op = _operator(memo)
    keys = op.controlplanes_for_dataplane(namespace, name)
    if (labels or {}).get(LABEL_MANAGED_BY) == ManagedBy.GATEWAY.value:
        keys += op.owner_of(labels)
    op.reconcile_all(keys)


# ─────────────────────────────────────────────
# ControlPlane
# ─────────────────────────────────────────────
@kopf.on.resume(*CONTROLPLANES)
@kopf.on.create(*CONTROLPLANES)
@kopf.on.update(*CONTROLPLANES)
def controlplane_changed(namespace, name, memo, **_):
    _operator(memo).reconcile(KIND_CONTROLPLANE, namespace, name)


@kopf.timer(*CONTROLPLANES, interval=RESYNC_SECONDS)
def controlplane_resync(namespace, name, memo, **_):
    _operator(memo).reconcile(KIND_CONTROLPLANE, namespace, name)


@kopf.on.delete(*CONTROLPLANES)
def controlplane_deleted(namespace, name, memo, **_):
    op = _operator(memo)
    op.cleanup(KIND_CONTROLPLANE, namespace, name)
    op.forget(KIND_CONTROLPLANE, namespace, name)


@kopf.on.event(*CONTROLPLANES)
def controlplane_event(body, labels, memo, **_):
    op = _operator(memo)
    # the DataPlane's NetworkPolicy admits its ControlPlanes' pods
    keys = op.dataplane_for_controlplane(body)
    if (labels or {}).get(LABEL_MANAGED_BY) == ManagedBy.GATEWAY.value:
        keys += op.owner_of(labels)
    op.reconcile_all(keys)


@kopf.on.event(OPERATOR_GROUP, OPERATOR_ALPHA_VERSION, "watchnamespacegrants")
def grant_event(namespace, memo, **_):
    op = _operator(memo)
    op.reconcile_all(op.controlplanes_for_grant(namespace))


@kopf.on.event(OPERATOR_GROUP, OPERATOR_ALPHA_VERSION, "dataplanemetricsextensions")
def metrics_extension_event(namespace, name, memo, **_):
    op = _operator(memo)
    op.reconcile_all(op.controlplanes_for_extension(namespace, name))


@kopf.on.event(OPERATOR_GROUP, OPERATOR_ALPHA_VERSION, "kongplugininstallations")
def plugin_installation_event(namespace, name, memo, **_):
    op = _operator(memo)
    op.reconcile_all(op.dataplanes_for_plugin_installation(namespace, name))


# ─────────────────────────────────────────────
# Gateway API
# ─────────────────────────────────────────────
@kopf.on.resume(*GATEWAYS)
@kopf.on.create(*GATEWAYS)
@kopf.on.update(*GATEWAYS)
def gateway_changed(namespace, name, memo, **_):
    _operator(memo).reconcile(KIND_GATEWAY, namespace, name)


@kopf.timer(*GATEWAYS, interval=RESYNC_SECONDS)
def gateway_resync(namespace, name, memo, **_):
    _operator(memo).reconcile(KIND_GATEWAY, namespace, name)


# children carry owner references; nothing to clean up, so no finalizer
@kopf.on.delete(*GATEWAYS, optional=True)
def gateway_deleted(namespace, name, memo, **_):
    _operator(memo).forget(KIND_GATEWAY, namespace, name)


@kopf.on.event(*GATEWAYCLASSES)
def gateway_class_event(type, name, memo, **_):
    op = _operator(memo)
    op.reconcile_all([(KIND_GATEWAYCLASS, None, name)] + op.gateways_for_class(name))
    if type == "DELETED":
        op.forget(KIND_GATEWAYCLASS, None, name)


@kopf.on.event(OPERATOR_GROUP, OPERATOR_VERSION, "gatewayconfigurations")
def gateway_configuration_event(namespace, name, memo, **_):
    op = _operator(memo)
    op.reconcile_all(op.gateways_for_configuration(namespace, name))


# ─────────────────────────────────────────────
# Owned objects: route the event back to the owner
# ─────────────────────────────────────────────
def _owned_event(labels, memo, **_):
    op = _operator(memo)
    op.reconcile_all(op.owner_of(labels))


OWNED = {LABEL_MANAGED_BY: kopf.PRESENT}

for _resource in (
    ("apps", "v1", "deployments"),
    ("v1", "services"),
    ("v1", "secrets"),
    ("v1", "serviceaccounts"),
    ("autoscaling", "v2", "horizontalpodautoscalers"),
    ("policy", "v1", "poddisruptionbudgets"),
    ("networking.k8s.io", "v1", "networkpolicies"),
    ("rbac.authorization.k8s.io", "v1", "clusterroles"),
    ("rbac.authorization.k8s.io", "v1", "clusterrolebindings"),
    ("admissionregistration.k8s.io", "v1", "validatingwebhookconfigurations"),
):
    kopf.on.event(*_resource, labels=OWNED, id=f"owned-{_resource[-1]}")(_owned_event)


if __name__ == "__main__":
    kopf.run()
