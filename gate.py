# gate.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from builders.dataplane import (
    deployment_options,
    horizontal_scaling,
    ingress_ports,
    parse_port_maps,
    proxy_container,
    render_pod_template,
)
from consts import ENV_PORT_MAPS, MSG_IMAGE_REQUIRED, MSG_REPLICAS_AND_SCALING
from builders.common import env_value


@dataclass
class GateResult:
    ok: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return self.errors[0] if self.errors else ""


def validate_dataplane(dataplane: dict, template: Optional[dict] = None) -> GateResult:
    """Refuse to render a DataPlane whose spec is semantically incomplete.

    errors are terminal for the generation (a spec change is needed);
    warnings are reported through OptionsValid but do not stop reconcile:
    - proxy container image missing
    - replicas and horizontalScaling both set (no precedence between them)
    - horizontalScaling without a usable maxReplicas
    - a user-set KONG_PORT_MAPS that does not cover every ingress port
    """
    errors: List[str] = []
    warnings: List[str] = []

    template = template if template is not None else render_pod_template(dataplane)
    container = proxy_container(template)
    if not container or not container.get("image"):
        errors.append(MSG_IMAGE_REQUIRED)

    opts = deployment_options(dataplane)
    scaling = horizontal_scaling(dataplane)
    if scaling is not None and opts.get("replicas") is not None:
        errors.append(MSG_REPLICAS_AND_SCALING)
    if scaling is not None:
        min_r = int(scaling.get("minReplicas") or 1)
        max_r = scaling.get("maxReplicas")
        if max_r is None or int(max_r) < min_r:
            errors.append("DataPlane horizontalScaling.maxReplicas must be set and not below minReplicas")

    user_tmpl = opts.get("podTemplateSpec") or {}
    user_proxy = None
    for c in ((user_tmpl.get("spec", {}) or {}).get("containers", []) or []):
        if c.get("name") == "proxy":
            user_proxy = c
    user_maps = env_value(user_proxy, ENV_PORT_MAPS)
    if user_maps is not None:
        maps = parse_port_maps(user_maps)
        for p in ingress_ports(dataplane):
            if maps.get(p["port"]) != p["targetPort"]:
                warnings.append(
                    f"ingress port {p['port']}->{p['targetPort']} has no matching entry in {ENV_PORT_MAPS} ({user_maps!r})"
                )

    return GateResult(ok=not errors, errors=errors, warnings=warnings)


KNOWN_CONTROLLERS = (
    "INGRESS_NETWORKINGV1",
    "INGRESS_CLASS_NETWORKINGV1",
    "INGRESS_CLASS_PARAMETERS",
    "KONG_CLUSTERPLUGIN",
    "KONG_PLUGIN",
    "KONG_CONSUMER",
    "KONG_UPSTREAM_POLICY",
    "KONG_SERVICE_FACADE",
    "KONG_VAULT",
    "KONG_LICENSE",
    "KONG_CUSTOM_ENTITY",
    "SERVICE",
    "GWAPI_GATEWAY",
    "GWAPI_HTTPROUTE",
    "GWAPI_GRPCROUTE",
    "GWAPI_REFERENCE_GRANT",
)


def validate_controlplane(controlplane: dict, known: Iterable[str] = KNOWN_CONTROLLERS) -> GateResult:
    errors: List[str] = []
    warnings: List[str] = []
    spec = controlplane.get("spec", {}) or {}
    known = set(known)

    for item in spec.get("controllers", []) or []:
        name = item.get("name", "")
        if name not in known:
            warnings.append(f"unknown controller {name!r} ignored")
        if item.get("state") not in ("enabled", "disabled"):
            warnings.append(f"controller {name!r} has invalid state {item.get('state')!r}")

    watch = spec.get("watchNamespaces") or {}
    if watch.get("type") == "list" and not watch.get("list"):
        errors.append("ControlPlane watchNamespaces of type list requires at least one namespace")

    return GateResult(ok=not errors, errors=errors, warnings=warnings)
