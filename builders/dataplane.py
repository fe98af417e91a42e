# builders/dataplane.py
from __future__ import annotations

import copy
import hashlib
import json
from typing import Any, Dict, List, Optional

from builders.common import (
    env_list,
    env_value,
    find_container,
    object_meta,
    strategic_merge,
)
from consts import (
    ADMIN_PORT,
    ADMIN_PORT_NAME,
    ANNOTATION_POD_TEMPLATE_HASH,
    CLUSTER_CERT_MOUNT_PATH,
    CLUSTER_CERT_VOLUME,
    ENV_ADMIN_LISTEN,
    ENV_DATABASE,
    ENV_LUA_PACKAGE_PATH,
    ENV_PLUGINS,
    ENV_PORT_MAPS,
    ENV_PROXY_LISTEN,
    ENV_STATUS_LISTEN,
    HTTP_PORT,
    HTTPS_PORT,
    LABEL_APP,
    LABEL_POD_STATE,
    METRICS_PORT_NAME,
    PLUGINS_MOUNT_ROOT,
    PROXY_CONTAINER,
    PROXY_PORT,
    PROXY_PORT_NAME,
    PROXY_SSL_PORT,
    PROXY_SSL_PORT_NAME,
    STATUS_PORT,
    STATUS_READY_PATH,
    Role,
    ServiceType,
)
from ownership import OwnedSelector, label_value

DEFAULT_INGRESS_PORTS: List[Dict[str, Any]] = [
    {"name": "http", "port": HTTP_PORT, "targetPort": PROXY_PORT},
    {"name": "https", "port": HTTPS_PORT, "targetPort": PROXY_SSL_PORT},
]

DEFAULT_RESOURCES: Dict[str, Any] = {
    # limits in canonical quantity form so the API server echoes them unchanged
    "requests": {"cpu": "100m", "memory": "20Mi"},
    "limits": {"cpu": "1", "memory": "1000Mi"},
}

READINESS_PROBE: Dict[str, Any] = {
    "httpGet": {"path": STATUS_READY_PATH, "port": STATUS_PORT, "scheme": "HTTP"},
    "failureThreshold": 3,
    "initialDelaySeconds": 5,
    "periodSeconds": 10,
    "successThreshold": 1,
    "timeoutSeconds": 1,
}

ROLLING_UPDATE: Dict[str, Any] = {
    "type": "RollingUpdate",
    "rollingUpdate": {"maxUnavailable": 0, "maxSurge": 1},
}

CERT_ENV: Dict[str, str] = {
    "KONG_CLUSTER_CERT": f"{CLUSTER_CERT_MOUNT_PATH}/tls.crt",
    "KONG_CLUSTER_CERT_KEY": f"{CLUSTER_CERT_MOUNT_PATH}/tls.key",
    "KONG_ADMIN_SSL_CERT": f"{CLUSTER_CERT_MOUNT_PATH}/tls.crt",
    "KONG_ADMIN_SSL_CERT_KEY": f"{CLUSTER_CERT_MOUNT_PATH}/tls.key",
    "KONG_NGINX_ADMIN_SSL_CLIENT_CERTIFICATE": f"{CLUSTER_CERT_MOUNT_PATH}/ca.crt",
    "KONG_NGINX_ADMIN_SSL_VERIFY_CLIENT": "on",
    "KONG_NGINX_ADMIN_SSL_VERIFY_DEPTH": "3",
}


def _spec(dataplane: dict) -> dict:
    return (dataplane or {}).get("spec", {}) or {}


def _name(dataplane: dict) -> str:
    return ((dataplane or {}).get("metadata", {}) or {}).get("name", "")


def _namespace(dataplane: dict) -> str:
    return ((dataplane or {}).get("metadata", {}) or {}).get("namespace", "")


def deployment_options(dataplane: dict) -> dict:
    return _spec(dataplane).get("deployment", {}) or {}


def ingress_options(dataplane: dict) -> dict:
    network = _spec(dataplane).get("network", {}) or {}
    return ((network.get("services", {}) or {}).get("ingress", {}) or {})


def ingress_ports(dataplane: dict) -> List[Dict[str, Any]]:
    ports = ingress_options(dataplane).get("ports") or DEFAULT_INGRESS_PORTS
    out = []
    for p in ports:
        item = {
            "name": p.get("name") or f"port-{p['port']}",
            "port": int(p["port"]),
            "targetPort": int(p.get("targetPort") or PROXY_PORT),
        }
        if p.get("nodePort"):
            item["nodePort"] = int(p["nodePort"])
        out.append(item)
    return out


def horizontal_scaling(dataplane: dict) -> Optional[dict]:
    scaling = deployment_options(dataplane).get("scaling") or {}
    return scaling.get("horizontalScaling") or None


def desired_replicas(dataplane: dict) -> int:
    """replicas when set; else horizontalScaling.minReplicas; else 1.

    Both set at once is rejected by gate.validate_dataplane before this runs.
    """
    opts = deployment_options(dataplane)
    hpa = horizontal_scaling(dataplane)
    if hpa is not None:
        return int(hpa.get("minReplicas") or 1)
    if opts.get("replicas") is not None:
        return int(opts["replicas"])
    return 1


# ─────────────────────────────────────────────
# Env / ports
# ─────────────────────────────────────────────
def port_maps(ports: List[Dict[str, Any]]) -> str:
    return ", ".join(f"{p['port']}:{p['targetPort']}" for p in ports)


def proxy_listen(ports: List[Dict[str, Any]]) -> str:
    targets: List[int] = []
    for p in ports:
        if p["targetPort"] not in targets:
            targets.append(p["targetPort"])
    for default in (PROXY_PORT, PROXY_SSL_PORT):
        if default not in targets:
            targets.append(default)
    parts = []
    for t in targets:
        if t == PROXY_SSL_PORT:
            parts.append(f"0.0.0.0:{t} http2 ssl reuseport backlog=16384")
        else:
            parts.append(f"0.0.0.0:{t} reuseport backlog=16384")
    return ", ".join(parts)


def parse_listen_ports(value: Optional[str]) -> List[int]:
    """Ports out of a Kong *_LISTEN value ("0.0.0.0:8000 reuseport, [::]:8443 ssl")."""
    ports: List[int] = []
    for part in (value or "").split(","):
        addr = part.strip().split(" ")[0]
        if not addr or addr == "off" or ":" not in addr:
            continue
        try:
            port = int(addr.rsplit(":", 1)[1])
        except ValueError:
            continue
        if port not in ports:
            ports.append(port)
    return ports


def parse_port_maps(value: Optional[str]) -> Dict[int, int]:
    out: Dict[int, int] = {}
    for part in (value or "").split(","):
        part = part.strip()
        if ":" not in part:
            continue
        src, _, dst = part.partition(":")
        try:
            out[int(src)] = int(dst)
        except ValueError:
            continue
    return out


def default_env(dataplane: dict, plugin_names: List[str]) -> Dict[str, str]:
    ports = ingress_ports(dataplane)
    env = {
        ENV_DATABASE: "off",
        ENV_PROXY_LISTEN: proxy_listen(ports),
        ENV_ADMIN_LISTEN: f"0.0.0.0:{ADMIN_PORT} http2 ssl reuseport backlog=16384",
        ENV_STATUS_LISTEN: f"0.0.0.0:{STATUS_PORT}",
        ENV_PORT_MAPS: port_maps(ports),
        "KONG_NGINX_WORKER_PROCESSES": "2",
        "KONG_PROXY_ACCESS_LOG": "/dev/stdout",
        "KONG_PROXY_ERROR_LOG": "/dev/stderr",
        "KONG_ADMIN_ACCESS_LOG": "/dev/stdout",
        "KONG_ADMIN_ERROR_LOG": "/dev/stderr",
    }
    env.update(CERT_ENV)
    if plugin_names:
        env[ENV_PLUGINS] = ",".join(["bundled", *plugin_names])
        env[ENV_LUA_PACKAGE_PATH] = "/opt/?.lua;;"
    return env


# ─────────────────────────────────────────────
# Pod template
# ─────────────────────────────────────────────
def render_pod_template(dataplane: dict, plugins: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Role-neutral pod template: operator defaults overlaid with the user template.

    ``plugins`` maps plugin name -> ConfigMap holding its code. The cluster
    certificate volume and role label are added later by build_deployment so
    live and preview render the same template for the same spec.
    """
    plugins = plugins or {}
    names = sorted(plugins)
    container = {
        "name": PROXY_CONTAINER,
        "env": env_list(default_env(dataplane, names)),
        "ports": [
            {"name": PROXY_PORT_NAME, "containerPort": PROXY_PORT, "protocol": "TCP"},
            {"name": PROXY_SSL_PORT_NAME, "containerPort": PROXY_SSL_PORT, "protocol": "TCP"},
            {"name": ADMIN_PORT_NAME, "containerPort": ADMIN_PORT, "protocol": "TCP"},
            {"name": METRICS_PORT_NAME, "containerPort": STATUS_PORT, "protocol": "TCP"},
        ],
        "readinessProbe": copy.deepcopy(READINESS_PROBE),
        "resources": copy.deepcopy(DEFAULT_RESOURCES),
        "lifecycle": {"preStop": {"exec": {"command": ["/bin/sh", "-c", "kong quit"]}}},
        "volumeMounts": [
            {"name": CLUSTER_CERT_VOLUME, "mountPath": CLUSTER_CERT_MOUNT_PATH, "readOnly": True},
        ],
    }
    volumes: List[Dict[str, Any]] = []
    for name in names:
        volume = f"plugin-{name}"
        container["volumeMounts"].append(
            {"name": volume, "mountPath": f"{PLUGINS_MOUNT_ROOT}/{name}", "readOnly": True}
        )
        volumes.append({"name": volume, "configMap": {"name": plugins[name]}})

    defaults: Dict[str, Any] = {
        "metadata": {"labels": {LABEL_APP: label_value(_name(dataplane))}},
        "spec": {"containers": [container]},
    }
    if volumes:
        defaults["spec"]["volumes"] = volumes

    user = deployment_options(dataplane).get("podTemplateSpec") or {}
    template = strategic_merge(defaults, user)
    # the app label is the selector; never let a user template drop it
    template.setdefault("metadata", {}).setdefault("labels", {})[LABEL_APP] = label_value(_name(dataplane))
    return template


def template_hash(template: dict) -> str:
    raw = json.dumps(template, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


def proxy_container(template: dict) -> Optional[dict]:
    return find_container((template or {}).get("spec", {}) or {}, PROXY_CONTAINER)


def effective_env(template: dict, name: str) -> Optional[str]:
    return env_value(proxy_container(template), name)


def pod_selector(dataplane: dict, role: Role) -> Dict[str, str]:
    return {LABEL_APP: label_value(_name(dataplane)), LABEL_POD_STATE: role.value}


# ─────────────────────────────────────────────
# Objects
# ─────────────────────────────────────────────
def build_deployment(
    dataplane: dict,
    selector: OwnedSelector,
    role: Role,
    template: dict,
    cert_secret: str,
    replicas: Optional[int] = None,
) -> Dict[str, Any]:
    tmpl = copy.deepcopy(template)
    h = template_hash(template)
    tmpl.setdefault("metadata", {}).setdefault("labels", {}).update(pod_selector(dataplane, role))
    spec = tmpl.setdefault("spec", {})
    volumes = [v for v in spec.get("volumes", []) or [] if v.get("name") != CLUSTER_CERT_VOLUME]
    volumes.insert(0, {"name": CLUSTER_CERT_VOLUME, "secret": {"secretName": cert_secret}})
    spec["volumes"] = volumes

    labels = selector.deployment(role).labels()
    labels[LABEL_APP] = label_value(_name(dataplane))
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": object_meta(
            _namespace(dataplane),
            labels,
            owner=dataplane,
            generate_name=f"dataplane-{role.value + '-' if role is Role.PREVIEW else ''}{_name(dataplane)}-",
            annotations={ANNOTATION_POD_TEMPLATE_HASH: h},
            wait_for_owner=True,
        ),
        "spec": {
            "replicas": desired_replicas(dataplane) if replicas is None else replicas,
            "selector": {"matchLabels": pod_selector(dataplane, role)},
            "strategy": copy.deepcopy(ROLLING_UPDATE),
            "template": tmpl,
        },
    }


def build_admin_service(dataplane: dict, selector: OwnedSelector, role: Role) -> Dict[str, Any]:
    labels = selector.service(ServiceType.ADMIN, role).labels()
    labels[LABEL_APP] = label_value(_name(dataplane))
    prefix = "dataplane-admin-" + ("preview-" if role is Role.PREVIEW else "")
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": object_meta(
            _namespace(dataplane), labels, owner=dataplane,
            generate_name=f"{prefix}{_name(dataplane)}-", wait_for_owner=True,
        ),
        "spec": {
            "type": "ClusterIP",
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": pod_selector(dataplane, role),
            "ports": [
                {"name": ADMIN_PORT_NAME, "port": ADMIN_PORT, "targetPort": ADMIN_PORT, "protocol": "TCP"},
            ],
        },
    }


def build_ingress_service(dataplane: dict, selector: OwnedSelector, role: Role) -> Dict[str, Any]:
    """Proxy Service. Preview is always ClusterIP so it is never exposed externally."""
    opts = ingress_options(dataplane)
    labels = selector.service(ServiceType.INGRESS, role).labels()
    labels[LABEL_APP] = label_value(_name(dataplane))

    svc_type = "ClusterIP" if role is Role.PREVIEW else (opts.get("type") or "LoadBalancer")
    ports = []
    for p in ingress_ports(dataplane):
        item = {"name": p["name"], "port": p["port"], "targetPort": p["targetPort"], "protocol": "TCP"}
        if p.get("nodePort") and svc_type != "ClusterIP":
            item["nodePort"] = p["nodePort"]
        ports.append(item)

    spec: Dict[str, Any] = {
        "type": svc_type,
        "selector": pod_selector(dataplane, role),
        "ports": ports,
    }
    if opts.get("externalTrafficPolicy") and svc_type in ("LoadBalancer", "NodePort"):
        spec["externalTrafficPolicy"] = opts["externalTrafficPolicy"]

    fixed_name = opts.get("name") if role is Role.LIVE else None
    prefix = "dataplane-ingress-" + ("preview-" if role is Role.PREVIEW else "")
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": object_meta(
            _namespace(dataplane), labels, owner=dataplane,
            name=fixed_name,
            generate_name=f"{prefix}{_name(dataplane)}-",
            annotations=opts.get("annotations") or None,
            wait_for_owner=True,
        ),
        "spec": spec,
    }


def build_certificate_secret(
    dataplane: dict,
    selector: OwnedSelector,
    role: Role,
    service_name: str,
    data: Dict[str, str],
) -> Dict[str, Any]:
    labels = selector.secret_for(service_name, role).labels()
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "kubernetes.io/tls",
        "metadata": object_meta(
            _namespace(dataplane), labels, owner=dataplane,
            generate_name=f"{service_name}-", wait_for_owner=True,
        ),
        "data": dict(data),
    }


def admin_dns_names(service_name: str, namespace: str) -> List[str]:
    # headless: clients address individual pods below the service domain
    return [
        f"*.{service_name}.{namespace}.svc",
        f"*.{service_name}.{namespace}.svc.cluster.local",
        f"{service_name}.{namespace}.svc",
    ]
