# k8s.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from consts import (
    FINALIZER_WAIT_FOR_OWNER,
    GATEWAY_API_GROUP,
    GATEWAY_API_VERSION,
    KONG_CONFIGURATION_GROUP,
    OPERATOR_ALPHA_VERSION,
    OPERATOR_GROUP,
    OPERATOR_VERSION,
)


MERGE_PATCH = "application/merge-patch+json"


@dataclass(frozen=True)
class Kind:
    api_version: str
    plural: str
    namespaced: bool = True
    api: Optional[str] = None  # typed API class; None -> CustomObjectsApi
    suffix: Optional[str] = None  # typed method suffix, e.g. "deployment"

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]


KINDS: Dict[str, Kind] = {
    "Deployment": Kind("apps/v1", "deployments", api="AppsV1Api", suffix="deployment"),
    "Service": Kind("v1", "services", api="CoreV1Api", suffix="service"),
    "Secret": Kind("v1", "secrets", api="CoreV1Api", suffix="secret"),
    "ServiceAccount": Kind("v1", "serviceaccounts", api="CoreV1Api", suffix="service_account"),
    "HorizontalPodAutoscaler": Kind(
        "autoscaling/v2", "horizontalpodautoscalers", api="AutoscalingV2Api", suffix="horizontal_pod_autoscaler"
    ),
    "PodDisruptionBudget": Kind(
        "policy/v1", "poddisruptionbudgets", api="PolicyV1Api", suffix="pod_disruption_budget"
    ),
    "NetworkPolicy": Kind(
        "networking.k8s.io/v1", "networkpolicies", api="NetworkingV1Api", suffix="network_policy"
    ),
    "ClusterRole": Kind(
        "rbac.authorization.k8s.io/v1", "clusterroles", namespaced=False,
        api="RbacAuthorizationV1Api", suffix="cluster_role",
    ),
    "ClusterRoleBinding": Kind(
        "rbac.authorization.k8s.io/v1", "clusterrolebindings", namespaced=False,
        api="RbacAuthorizationV1Api", suffix="cluster_role_binding",
    ),
    "ValidatingWebhookConfiguration": Kind(
        "admissionregistration.k8s.io/v1", "validatingwebhookconfigurations", namespaced=False,
        api="AdmissionregistrationV1Api", suffix="validating_webhook_configuration",
    ),
    "DataPlane": Kind(f"{OPERATOR_GROUP}/{OPERATOR_VERSION}", "dataplanes"),
    "ControlPlane": Kind(f"{OPERATOR_GROUP}/{OPERATOR_VERSION}", "controlplanes"),
    "GatewayConfiguration": Kind(f"{OPERATOR_GROUP}/{OPERATOR_VERSION}", "gatewayconfigurations"),
    "WatchNamespaceGrant": Kind(f"{OPERATOR_GROUP}/{OPERATOR_ALPHA_VERSION}", "watchnamespacegrants"),
    "DataPlaneMetricsExtension": Kind(f"{OPERATOR_GROUP}/{OPERATOR_ALPHA_VERSION}", "dataplanemetricsextensions"),
    "KongPluginInstallation": Kind(f"{OPERATOR_GROUP}/{OPERATOR_ALPHA_VERSION}", "kongplugininstallations"),
    "KongPlugin": Kind(f"{KONG_CONFIGURATION_GROUP}/v1", "kongplugins"),
    "Gateway": Kind(f"{GATEWAY_API_GROUP}/{GATEWAY_API_VERSION}", "gateways"),
    "GatewayClass": Kind(f"{GATEWAY_API_GROUP}/{GATEWAY_API_VERSION}", "gatewayclasses", namespaced=False),
    "ReferenceGrant": Kind(f"{GATEWAY_API_GROUP}/v1beta1", "referencegrants"),
}


# ─────────────────────────────────────────────
# Error classification
# ─────────────────────────────────────────────
def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ApiException):
        return exc.status in (409, 429) or (exc.status or 0) >= 500
    return isinstance(exc, (HTTPError, ConnectionError, TimeoutError))


def _selector(labels: Optional[Dict[str, str]]) -> Optional[str]:
    if not labels:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


# ─────────────────────────────────────────────
# Cluster wrapper
# ─────────────────────────────────────────────
class KubeCluster:
    """Dict-in/dict-out access to every kind the operator touches.

    Objects come back camelCased (as the API serves them) regardless of
    whether a typed API or CustomObjectsApi was used.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None, request_timeout: int = 30):
        self.api_client = api_client or client.ApiClient()
        self.request_timeout = request_timeout
        self._apis: Dict[str, object] = {}

    def _api(self, kind: Kind):
        name = kind.api or "CustomObjectsApi"
        if name not in self._apis:
            self._apis[name] = getattr(client, name)(self.api_client)
        return self._apis[name]

    def _to_dict(self, kind_name: str, obj) -> dict:
        if obj is None:
            return {}
        out = obj if isinstance(obj, dict) else self.api_client.sanitize_for_serialization(obj)
        kind = KINDS[kind_name]
        out.setdefault("apiVersion", kind.api_version)
        out.setdefault("kind", kind_name)
        return out

    def _typed(self, kind: Kind, verb: str):
        scope = "namespaced_" if kind.namespaced else ""
        return getattr(self._api(kind), f"{verb}_{scope}{kind.suffix}")

    def get(self, kind_name: str, namespace: Optional[str], name: str) -> Optional[dict]:
        kind = KINDS[kind_name]
        try:
            if kind.api:
                fn = self._typed(kind, "read")
                args = (name, namespace) if kind.namespaced else (name,)
                obj = fn(*args, _request_timeout=self.request_timeout)
            elif kind.namespaced:
                obj = self._api(kind).get_namespaced_custom_object(
                    kind.group, kind.version, namespace, kind.plural, name,
                    _request_timeout=self.request_timeout,
                )
            else:
                obj = self._api(kind).get_cluster_custom_object(
                    kind.group, kind.version, kind.plural, name,
                    _request_timeout=self.request_timeout,
                )
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
        return self._to_dict(kind_name, obj)

    def list(
        self,
        kind_name: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[dict]:
        kind = KINDS[kind_name]
        sel = _selector(labels)
        kw = {"_request_timeout": self.request_timeout}
        if sel:
            kw["label_selector"] = sel
        api = self._api(kind)
        if kind.api:
            if kind.namespaced and namespace:
                res = getattr(api, f"list_namespaced_{kind.suffix}")(namespace, **kw)
            elif kind.namespaced:
                res = getattr(api, f"list_{kind.suffix}_for_all_namespaces")(**kw)
            else:
                res = getattr(api, f"list_{kind.suffix}")(**kw)
            return [self._to_dict(kind_name, i) for i in (res.items or [])]
        if kind.namespaced and namespace:
            res = api.list_namespaced_custom_object(kind.group, kind.version, namespace, kind.plural, **kw)
        else:
            res = api.list_cluster_custom_object(kind.group, kind.version, kind.plural, **kw)
        return [self._to_dict(kind_name, i) for i in (res.get("items", []) or [])]

    def create(self, body: dict) -> dict:
        kind_name = body["kind"]
        kind = KINDS[kind_name]
        namespace = (body.get("metadata", {}) or {}).get("namespace")
        kw = {"_request_timeout": self.request_timeout}
        if kind.api:
            fn = self._typed(kind, "create")
            obj = fn(namespace, body, **kw) if kind.namespaced else fn(body, **kw)
        elif kind.namespaced:
            obj = self._api(kind).create_namespaced_custom_object(
                kind.group, kind.version, namespace, kind.plural, body, **kw
            )
        else:
            obj = self._api(kind).create_cluster_custom_object(kind.group, kind.version, kind.plural, body, **kw)
        return self._to_dict(kind_name, obj)

    def patch(self, kind_name: str, namespace: Optional[str], name: str, patch: dict) -> dict:
        """JSON merge patch (RFC 7386): lists replace, None deletes."""
        kind = KINDS[kind_name]
        kw = {"_request_timeout": self.request_timeout, "_content_type": MERGE_PATCH}
        if kind.api:
            fn = self._typed(kind, "patch")
            obj = fn(name, namespace, patch, **kw) if kind.namespaced else fn(name, patch, **kw)
        elif kind.namespaced:
            obj = self._api(kind).patch_namespaced_custom_object(
                kind.group, kind.version, namespace, kind.plural, name, patch, **kw
            )
        else:
            obj = self._api(kind).patch_cluster_custom_object(
                kind.group, kind.version, kind.plural, name, patch, **kw
            )
        return self._to_dict(kind_name, obj)

    def patch_status(self, kind_name: str, namespace: Optional[str], name: str, status: dict) -> dict:
        kind = KINDS[kind_name]
        body = {"status": status}
        kw = {"_request_timeout": self.request_timeout, "_content_type": MERGE_PATCH}
        if kind.api:
            fn = getattr(self._api(kind), f"patch_namespaced_{kind.suffix}_status")
            obj = fn(name, namespace, body, **kw)
        elif kind.namespaced:
            obj = self._api(kind).patch_namespaced_custom_object_status(
                kind.group, kind.version, namespace, kind.plural, name, body, **kw
            )
        else:
            obj = self._api(kind).patch_cluster_custom_object_status(
                kind.group, kind.version, kind.plural, name, body, **kw
            )
        return self._to_dict(kind_name, obj)

    def delete(self, kind_name: str, namespace: Optional[str], name: str) -> None:
        kind = KINDS[kind_name]
        kw = {"_request_timeout": self.request_timeout}
        try:
            if kind.api:
                fn = self._typed(kind, "delete")
                if kind.namespaced:
                    fn(name, namespace, **kw)
                else:
                    fn(name, **kw)
            elif kind.namespaced:
                self._api(kind).delete_namespaced_custom_object(
                    kind.group, kind.version, namespace, kind.plural, name, **kw
                )
            else:
                self._api(kind).delete_cluster_custom_object(kind.group, kind.version, kind.plural, name, **kw)
        except ApiException as e:
            # already gone: a delete race is success
            if not is_not_found(e):
                raise


# ─────────────────────────────────────────────
# Finalizers
# ─────────────────────────────────────────────
def _finalizers(obj: dict) -> List[str]:
    return list(((obj or {}).get("metadata", {}) or {}).get("finalizers") or [])


def _ref(obj: dict):
    meta = obj.get("metadata", {}) or {}
    return obj["kind"], meta.get("namespace"), meta.get("name")


def remove_finalizer(cluster, obj: dict, finalizer: str = FINALIZER_WAIT_FOR_OWNER) -> None:
    fins = _finalizers(obj)
    if finalizer not in fins:
        return
    fins = [f for f in fins if f != finalizer]
    kind, ns, name = _ref(obj)
    rv = (obj.get("metadata", {}) or {}).get("resourceVersion")
    try:
        cluster.patch(kind, ns, name, {"metadata": {"finalizers": fins, "resourceVersion": rv}})
    except ApiException as e:
        if not is_not_found(e):
            raise
