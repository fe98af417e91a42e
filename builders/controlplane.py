# builders/controlplane.py
from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

from builders.common import env_list, object_meta, strategic_merge
from consts import (
    ANNOTATION_INGRESS_CLASS,
    CLUSTER_CERT_MOUNT_PATH,
    CONTROLLER_CONTAINER,
    LABEL_APP,
    WEBHOOK_PORT,
    WEBHOOK_PORT_NAME,
)
from ownership import OwnedSelector, label_value

WEBHOOK_CERT_VOLUME = "admission-webhook-certificate"
WEBHOOK_CERT_MOUNT_PATH = "/admission-webhook"
ADMIN_CLIENT_SECRET = "admin-client"
HEALTH_PORT = 10254

CLUSTER_ROLE_RULES: List[Dict[str, Any]] = [
    {"apiGroups": [""], "resources": ["configmaps", "endpoints", "namespaces", "nodes", "pods", "secrets", "services"],
     "verbs": ["get", "list", "watch"]},
    {"apiGroups": [""], "resources": ["events"], "verbs": ["create", "patch"]},
    {"apiGroups": [""], "resources": ["services/status"], "verbs": ["get", "patch", "update"]},
    {"apiGroups": ["discovery.k8s.io"], "resources": ["endpointslices"], "verbs": ["get", "list", "watch"]},
    {"apiGroups": ["networking.k8s.io"], "resources": ["ingresses", "ingressclasses"], "verbs": ["get", "list", "watch"]},
    {"apiGroups": ["networking.k8s.io"], "resources": ["ingresses/status"], "verbs": ["get", "patch", "update"]},
    {"apiGroups": ["configuration.konghq.com"], "resources": ["*"], "verbs": ["get", "list", "watch"]},
    {"apiGroups": ["configuration.konghq.com"], "resources": ["*/status"], "verbs": ["get", "patch", "update"]},
    {"apiGroups": ["gateway.networking.k8s.io"],
     "resources": ["gatewayclasses", "gateways", "grpcroutes", "httproutes", "referencegrants",
                   "tcproutes", "tlsroutes", "udproutes"],
     "verbs": ["get", "list", "watch"]},
    {"apiGroups": ["gateway.networking.k8s.io"],
     "resources": ["gatewayclasses/status", "gateways/status", "grpcroutes/status", "httproutes/status",
                   "tcproutes/status", "tlsroutes/status", "udproutes/status"],
     "verbs": ["get", "patch", "update"]},
    {"apiGroups": ["coordination.k8s.io"], "resources": ["leases"],
     "verbs": ["create", "delete", "get", "list", "patch", "update", "watch"]},
]


def _meta(obj: dict) -> dict:
    return (obj or {}).get("metadata", {}) or {}


def _labels(selector: OwnedSelector, name: str) -> Dict[str, str]:
    labels = selector.labels()
    labels[LABEL_APP] = label_value(name)
    return labels


def watch_namespaces(controlplane: dict) -> Optional[List[str]]:
    """Namespaces to watch, None meaning all."""
    meta = _meta(controlplane)
    watch = (controlplane.get("spec", {}) or {}).get("watchNamespaces") or {}
    kind = watch.get("type") or "all"
    if kind == "own":
        return [meta.get("namespace", "")]
    if kind == "list":
        names = [meta.get("namespace", "")]
        for ns in watch.get("list", []) or []:
            if ns not in names:
                names.append(ns)
        return names
    return None


def effective_controllers(controlplane: dict, known: List[str]) -> List[Dict[str, str]]:
    requested = {
        c.get("name"): c.get("state")
        for c in (controlplane.get("spec", {}) or {}).get("controllers", []) or []
        if c.get("state") in ("enabled", "disabled")
    }
    return [{"name": name, "state": requested.get(name, "enabled")} for name in known]


def controller_env(
    controlplane: dict,
    controller_name: str,
    known: List[str],
    admin_service: Optional[str] = None,
    publish_service: Optional[str] = None,
) -> Dict[str, str]:
    meta = _meta(controlplane)
    spec = controlplane.get("spec", {}) or {}
    env: Dict[str, str] = {
        "CONTROLLER_ELECTION_ID": f"{meta.get('name', '')}.konghq.com",
        "CONTROLLER_ANONYMOUS_REPORTS": "false",
        "CONTROLLER_GATEWAY_API_CONTROLLER_NAME": controller_name,
        "CONTROLLER_ADMISSION_WEBHOOK_LISTEN": f"0.0.0.0:{WEBHOOK_PORT}",
        "CONTROLLER_ADMISSION_WEBHOOK_CERT_FILE": f"{WEBHOOK_CERT_MOUNT_PATH}/tls.crt",
        "CONTROLLER_ADMISSION_WEBHOOK_KEY_FILE": f"{WEBHOOK_CERT_MOUNT_PATH}/tls.key",
        "CONTROLLER_KONG_ADMIN_TLS_CLIENT_CERT_FILE": f"{CLUSTER_CERT_MOUNT_PATH}/tls.crt",
        "CONTROLLER_KONG_ADMIN_TLS_CLIENT_KEY_FILE": f"{CLUSTER_CERT_MOUNT_PATH}/tls.key",
        "CONTROLLER_KONG_ADMIN_CA_CERT_FILE": f"{CLUSTER_CERT_MOUNT_PATH}/ca.crt",
        "CONTROLLER_KONG_ADMIN_SVC_PORT_NAMES": "admin",
    }
    if admin_service:
        env["CONTROLLER_KONG_ADMIN_SVC"] = admin_service
    if publish_service:
        env["CONTROLLER_PUBLISH_SERVICE"] = publish_service
    ingress_class = spec.get("ingressClass") or (meta.get("annotations") or {}).get(ANNOTATION_INGRESS_CLASS)
    if ingress_class:
        env["CONTROLLER_INGRESS_CLASS"] = ingress_class
    namespaces = watch_namespaces(controlplane)
    if namespaces is not None:
        env["CONTROLLER_WATCH_NAMESPACE"] = ",".join(namespaces)
    requested = {c.get("name") for c in spec.get("controllers", []) or []}
    for item in effective_controllers(controlplane, known):
        if item["name"] in requested:
            env[f"CONTROLLER_ENABLE_CONTROLLER_{item['name']}"] = (
                "true" if item["state"] == "enabled" else "false"
            )
    return env


def build_service_account(controlplane: dict, selector: OwnedSelector) -> Dict[str, Any]:
    meta = _meta(controlplane)
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": object_meta(
            meta.get("namespace"), _labels(selector, meta.get("name", "")), owner=controlplane,
            generate_name=f"controlplane-{meta.get('name', '')}-",
        ),
    }


def build_deployment(
    controlplane: dict,
    selector: OwnedSelector,
    image: str,
    env: Dict[str, str],
    replicas: int,
    service_account: str,
    admin_secret: str,
    webhook_secret: str,
) -> Dict[str, Any]:
    meta = _meta(controlplane)
    name = meta.get("name", "")
    container = {
        "name": CONTROLLER_CONTAINER,
        "image": image,
        "env": env_list(env) + [
            {"name": "POD_NAME", "valueFrom": {"fieldRef": {"apiVersion": "v1", "fieldPath": "metadata.name"}}},
            {"name": "POD_NAMESPACE", "valueFrom": {"fieldRef": {"apiVersion": "v1", "fieldPath": "metadata.namespace"}}},
        ],
        "ports": [
            {"name": WEBHOOK_PORT_NAME, "containerPort": WEBHOOK_PORT, "protocol": "TCP"},
            {"name": "health", "containerPort": HEALTH_PORT, "protocol": "TCP"},
        ],
        "readinessProbe": {
            "httpGet": {"path": "/readyz", "port": HEALTH_PORT, "scheme": "HTTP"},
            "failureThreshold": 3,
            "initialDelaySeconds": 5,
            "periodSeconds": 10,
            "successThreshold": 1,
            "timeoutSeconds": 1,
        },
        "livenessProbe": {
            "httpGet": {"path": "/healthz", "port": HEALTH_PORT, "scheme": "HTTP"},
            "failureThreshold": 3,
            "initialDelaySeconds": 5,
            "periodSeconds": 10,
            "successThreshold": 1,
            "timeoutSeconds": 1,
        },
        "resources": {"requests": {"cpu": "100m", "memory": "20Mi"}, "limits": {"cpu": "200m", "memory": "100Mi"}},
        "volumeMounts": [
            {"name": "cluster-certificate", "mountPath": CLUSTER_CERT_MOUNT_PATH, "readOnly": True},
            {"name": WEBHOOK_CERT_VOLUME, "mountPath": WEBHOOK_CERT_MOUNT_PATH, "readOnly": True},
        ],
    }
    defaults = {
        "metadata": {"labels": {LABEL_APP: label_value(name)}},
        "spec": {
            "serviceAccountName": service_account,
            "containers": [container],
            "volumes": [
                {"name": "cluster-certificate", "secret": {"secretName": admin_secret}},
                {"name": WEBHOOK_CERT_VOLUME, "secret": {"secretName": webhook_secret}},
            ],
        },
    }
    user = ((controlplane.get("spec", {}) or {}).get("deployment", {}) or {}).get("podTemplateSpec") or {}
    template = strategic_merge(defaults, user)
    template.setdefault("metadata", {}).setdefault("labels", {})[LABEL_APP] = label_value(name)

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": object_meta(
            meta.get("namespace"), _labels(selector, name), owner=controlplane,
            generate_name=f"controlplane-{name}-", wait_for_owner=True,
        ),
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {LABEL_APP: label_value(name)}},
            "template": template,
        },
    }


def build_cluster_role(controlplane: dict, selector: OwnedSelector) -> Dict[str, Any]:
    name = _meta(controlplane).get("name", "")
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRole",
        "metadata": object_meta(None, _labels(selector, name), generate_name=f"controlplane-{name}-"),
        "rules": copy.deepcopy(CLUSTER_ROLE_RULES),
    }


def build_cluster_role_binding(
    controlplane: dict,
    selector: OwnedSelector,
    cluster_role: str,
    service_account: str,
) -> Dict[str, Any]:
    meta = _meta(controlplane)
    name = meta.get("name", "")
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": object_meta(None, _labels(selector, name), generate_name=f"controlplane-{name}-"),
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": cluster_role},
        "subjects": [
            {"kind": "ServiceAccount", "name": service_account, "namespace": meta.get("namespace", "")},
        ],
    }


def build_webhook_service(controlplane: dict, selector: OwnedSelector) -> Dict[str, Any]:
    meta = _meta(controlplane)
    name = meta.get("name", "")
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": object_meta(
            meta.get("namespace"), _labels(selector, name), owner=controlplane,
            generate_name=f"controlplane-webhook-{name}-", wait_for_owner=True,
        ),
        "spec": {
            "type": "ClusterIP",
            "selector": {LABEL_APP: label_value(name)},
            "ports": [{"name": WEBHOOK_PORT_NAME, "port": 443, "targetPort": WEBHOOK_PORT, "protocol": "TCP"}],
        },
    }


def build_certificate_secret(
    controlplane: dict,
    selector: OwnedSelector,
    purpose: str,
    data: Dict[str, str],
) -> Dict[str, Any]:
    meta = _meta(controlplane)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "kubernetes.io/tls",
        "metadata": object_meta(
            meta.get("namespace"), selector.secret_for(purpose).labels(), owner=controlplane,
            generate_name=f"controlplane-{meta.get('name', '')}-", wait_for_owner=True,
        ),
        "data": dict(data),
    }


def build_validating_webhook(
    controlplane: dict,
    selector: OwnedSelector,
    service_name: str,
    ca_bundle: str,
) -> Dict[str, Any]:
    meta = _meta(controlplane)
    name = meta.get("name", "")
    client_config = {
        "service": {"name": service_name, "namespace": meta.get("namespace", ""), "port": 443},
        "caBundle": ca_bundle,
    }
    return {
        "apiVersion": "admissionregistration.k8s.io/v1",
        "kind": "ValidatingWebhookConfiguration",
        "metadata": object_meta(None, _labels(selector, name), generate_name=f"controlplane-{name}-"),
        "webhooks": [
            {
                "name": "validations.kong.konghq.com",
                "admissionReviewVersions": ["v1"],
                "sideEffects": "None",
                "failurePolicy": "Ignore",
                "timeoutSeconds": 10,
                "clientConfig": client_config,
                "rules": [
                    {
                        "apiGroups": ["configuration.konghq.com"],
                        "apiVersions": ["*"],
                        "operations": ["CREATE", "UPDATE"],
                        "resources": ["kongclusterplugins", "kongconsumers", "kongingresses", "kongplugins"],
                    },
                    {
                        "apiGroups": [""],
                        "apiVersions": ["v1"],
                        "operations": ["CREATE", "UPDATE"],
                        "resources": ["secrets"],
                    },
                ],
            }
        ],
    }
