# builders/network.py
from __future__ import annotations

from typing import Any, Dict, List

from builders.common import object_meta
from builders.dataplane import effective_env, parse_listen_ports
from consts import ENV_ADMIN_LISTEN, ENV_PROXY_LISTEN, ENV_STATUS_LISTEN, LABEL_APP
from ownership import OwnedSelector, label_value

NAMESPACE_NAME_LABEL = "kubernetes.io/metadata.name"


def _ports(ports: List[int]) -> List[Dict[str, Any]]:
    return [{"port": p, "protocol": "TCP"} for p in ports]


def build_network_policy(
    dataplane: dict,
    selector: OwnedSelector,
    template: dict,
    controlplanes: List[str],
) -> Dict[str, Any]:
    """Admin API reachable only from the named ControlPlanes' pods; proxy and metrics open.

    Ports come from the effective listen variables of ``template`` so a user
    override of KONG_*_LISTEN moves the rules with it.
    """
    meta = dataplane.get("metadata", {}) or {}
    namespace = meta.get("namespace", "")

    rules: List[Dict[str, Any]] = []
    admin_ports = parse_listen_ports(effective_env(template, ENV_ADMIN_LISTEN))
    if admin_ports and controlplanes:
        rules.append({
            "ports": _ports(admin_ports),
            "from": [
                {
                    "podSelector": {"matchLabels": {LABEL_APP: label_value(cp)}},
                    "namespaceSelector": {"matchLabels": {NAMESPACE_NAME_LABEL: namespace}},
                }
                for cp in sorted(controlplanes)
            ],
        })
    proxy_ports = parse_listen_ports(effective_env(template, ENV_PROXY_LISTEN))
    if proxy_ports:
        rules.append({"ports": _ports(proxy_ports)})
    status_ports = parse_listen_ports(effective_env(template, ENV_STATUS_LISTEN))
    if status_ports:
        rules.append({"ports": _ports(status_ports)})

    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": object_meta(
            namespace, selector.labels(), owner=dataplane,
            generate_name=f"{meta.get('name', '')}-limit-admin-api-",
        ),
        "spec": {
            "podSelector": {"matchLabels": {LABEL_APP: label_value(meta.get("name", ""))}},
            "policyTypes": ["Ingress"],
            "ingress": rules,
        },
    }
