# builders/gateway.py
from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

from builders.common import find_container, object_meta, strategic_merge
from consts import (
    GATEWAY_API_GROUP,
    KIND_GATEWAY_CONFIGURATION,
    KIND_METRICS_EXTENSION,
    OPERATOR_GROUP,
    PROXY_CONTAINER,
    PROXY_PORT,
    PROXY_SSL_PORT,
)
from ownership import OwnedSelector

# listener protocol -> route kinds it accepts
SUPPORTED_PROTOCOLS: Dict[str, List[str]] = {
    "HTTP": ["HTTPRoute", "GRPCRoute"],
    "HTTPS": ["HTTPRoute", "GRPCRoute"],
    "TLS": ["TLSRoute"],
    "TCP": ["TCPRoute"],
    "UDP": ["UDPRoute"],
}
TLS_PROTOCOLS = ("HTTPS", "TLS")


def _meta(obj: Optional[dict]) -> dict:
    return (obj or {}).get("metadata", {}) or {}


def parameters_ref(gateway_class: Optional[dict]) -> Optional[dict]:
    return ((gateway_class or {}).get("spec", {}) or {}).get("parametersRef")


def parameters_ref_problem(ref: Optional[dict]) -> Optional[str]:
    """Why a GatewayClass parametersRef cannot be used, None when fine or absent."""
    if ref is None:
        return None
    if ref.get("group") != OPERATOR_GROUP or ref.get("kind") != KIND_GATEWAY_CONFIGURATION:
        return f"parametersRef must point at {OPERATOR_GROUP}/{KIND_GATEWAY_CONFIGURATION}"
    if not ref.get("namespace") or not ref.get("name"):
        return "parametersRef requires namespace and name"
    return None


def listener_ports(gateway: dict) -> List[Dict[str, Any]]:
    """Ingress Service ports for the supported listeners, one per distinct port."""
    out: List[Dict[str, Any]] = []
    seen = set()
    for listener in (gateway.get("spec", {}) or {}).get("listeners", []) or []:
        protocol = listener.get("protocol", "")
        port = listener.get("port")
        if protocol not in SUPPORTED_PROTOCOLS or port is None or port in seen:
            continue
        seen.add(port)
        target = PROXY_SSL_PORT if protocol in TLS_PROTOCOLS else PROXY_PORT
        out.append({"name": f"{protocol.lower()}-{port}", "port": int(port), "targetPort": target})
    return out


def build_dataplane(
    gateway: dict,
    selector: OwnedSelector,
    configuration: Optional[dict],
    default_image: str,
) -> Dict[str, Any]:
    meta = _meta(gateway)
    options = copy.deepcopy(((configuration or {}).get("spec", {}) or {}).get("dataPlaneOptions") or {})
    spec = strategic_merge({"deployment": {"podTemplateSpec": {"spec": {"containers": []}}}}, options)

    # the image is required on a DataPlane; Gateway-derived ones get the default
    pod_spec = spec["deployment"].setdefault("podTemplateSpec", {}).setdefault("spec", {})
    pod_spec.setdefault("containers", [])
    proxy = find_container(pod_spec, PROXY_CONTAINER)
    if proxy is None:
        pod_spec["containers"].append({"name": PROXY_CONTAINER, "image": default_image})
    elif not proxy.get("image"):
        proxy["image"] = default_image

    ports = listener_ports(gateway)
    if ports:
        ingress = spec.setdefault("network", {}).setdefault("services", {}).setdefault("ingress", {})
        ingress["ports"] = ports

    return {
        "apiVersion": f"{OPERATOR_GROUP}/v1beta1",
        "kind": "DataPlane",
        "metadata": object_meta(meta.get("namespace"), selector.labels(), owner=gateway,
                                generate_name=f"{meta.get('name', '')}-"),
        "spec": spec,
    }


def build_controlplane(
    gateway: dict,
    selector: OwnedSelector,
    configuration: Optional[dict],
    dataplane_name: str,
) -> Dict[str, Any]:
    meta = _meta(gateway)
    config_spec = (configuration or {}).get("spec", {}) or {}
    spec = copy.deepcopy(config_spec.get("controlPlaneOptions") or {})
    spec["dataplane"] = dataplane_name
    spec["gatewayClass"] = (gateway.get("spec", {}) or {}).get("gatewayClassName")

    extensions = list(spec.get("extensions") or [])
    for ref in config_spec.get("extensions", []) or []:
        if ref.get("kind") == KIND_METRICS_EXTENSION:
            item = {"group": ref.get("group") or OPERATOR_GROUP, "kind": ref["kind"], "name": ref.get("name", "")}
            if item not in extensions:
                extensions.append(item)
    if extensions:
        spec["extensions"] = extensions
    else:
        spec.pop("extensions", None)

    return {
        "apiVersion": f"{OPERATOR_GROUP}/v1beta1",
        "kind": "ControlPlane",
        "metadata": object_meta(meta.get("namespace"), selector.labels(), owner=gateway,
                                generate_name=f"{meta.get('name', '')}-"),
        "spec": spec,
    }


def supported_kinds(protocol: str) -> List[Dict[str, str]]:
    return [{"group": GATEWAY_API_GROUP, "kind": k} for k in SUPPORTED_PROTOCOLS.get(protocol, [])]
