# gateway_controller.py
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from builders.gateway import (
    SUPPORTED_PROTOCOLS,
    TLS_PROTOCOLS,
    build_controlplane,
    build_dataplane,
    parameters_ref,
    parameters_ref_problem,
    supported_kinds,
)
from conditions import is_true, set_condition
from config import OperatorConfig
from consts import (
    GATEWAY_API_GROUP,
    KIND_GATEWAY,
    KIND_GATEWAY_CONFIGURATION,
    KIND_GATEWAYCLASS,
    KIND_REFERENCE_GRANT,
    ConditionReason,
    ConditionType,
)
from ownership import for_gateway
from reconcile import ensure_owned, is_terminating, status_patch

log = logging.getLogger(__name__)

KIND = KIND_GATEWAY


def _meta(obj: Optional[dict]) -> dict:
    return (obj or {}).get("metadata", {}) or {}


def _name(obj: Optional[dict]) -> str:
    return _meta(obj).get("name", "")


def _conditions(obj: Optional[dict]) -> List[dict]:
    return list((((obj or {}).get("status", {}) or {}).get("conditions", [])) or [])


# ─────────────────────────────────────────────
# Listener evaluation
# ─────────────────────────────────────────────
def listener_conflicts(listeners: List[dict]) -> Dict[str, Tuple[ConditionReason, str]]:
    """Listener name -> (reason, message) for listeners that cannot share their port."""
    by_port: Dict[int, List[dict]] = defaultdict(list)
    for listener in listeners:
        by_port[listener.get("port")].append(listener)

    out: Dict[str, Tuple[ConditionReason, str]] = {}
    for port, group in by_port.items():
        protocols = {l.get("protocol") for l in group}
        if len(protocols) > 1:
            for l in group:
                out[l.get("name", "")] = (
                    ConditionReason.PROTOCOL_CONFLICT,
                    f"port {port} is used with protocols {', '.join(sorted(p or '' for p in protocols))}",
                )
            continue
        hostnames: Dict[str, List[dict]] = defaultdict(list)
        for l in group:
            hostnames[l.get("hostname") or ""].append(l)
        for hostname, same in hostnames.items():
            if len(same) < 2:
                continue
            for l in same:
                out[l.get("name", "")] = (
                    ConditionReason.HOSTNAME_CONFLICT,
                    f"hostname {hostname or '*'} is used by more than one listener on port {port}",
                )
    return out


def grant_permits(grant: dict, from_namespace: str, secret_name: str) -> bool:
    spec = grant.get("spec", {}) or {}
    allowed_from = any(
        f.get("group") == GATEWAY_API_GROUP and f.get("kind") == KIND_GATEWAY and f.get("namespace") == from_namespace
        for f in spec.get("from", []) or []
    )
    if not allowed_from:
        return False
    return any(
        (t.get("group") or "") == "" and t.get("kind") == "Secret" and t.get("name") in (None, "", secret_name)
        for t in spec.get("to", []) or []
    )


class GatewayReconciler:
    def __init__(self, cluster, config: OperatorConfig):
        self.cluster = cluster
        self.config = config

    # ─────────────────────────────────────────────
    # GatewayClass
    # ─────────────────────────────────────────────
    def is_ours(self, gateway_class: Optional[dict]) -> bool:
        controller = ((gateway_class or {}).get("spec", {}) or {}).get("controllerName")
        return controller == self.config.controller_name

    def class_parameters(self, gateway_class: dict) -> Tuple[Optional[dict], Optional[str]]:
        """(GatewayConfiguration or None, problem or None)."""
        ref = parameters_ref(gateway_class)
        problem = parameters_ref_problem(ref)
        if problem or ref is None:
            return None, problem
        configuration = self.cluster.get(KIND_GATEWAY_CONFIGURATION, ref["namespace"], ref["name"])
        if configuration is None:
            return None, f"GatewayConfiguration {ref['namespace']}/{ref['name']} not found"
        return configuration, None

    def reconcile_class(self, name: str) -> None:
        gateway_class = self.cluster.get(KIND_GATEWAYCLASS, None, name)
        if gateway_class is None or not self.is_ours(gateway_class):
            return
        generation = _meta(gateway_class).get("generation")
        _, problem = self.class_parameters(gateway_class)
        if problem:
            conditions = set_condition(
                _conditions(gateway_class), ConditionType.ACCEPTED, False,
                ConditionReason.INVALID_PARAMETERS, problem, generation,
            )
        else:
            conditions = set_condition(
                _conditions(gateway_class), ConditionType.ACCEPTED, True, ConditionReason.ACCEPTED, "", generation
            )
        patch = status_patch(gateway_class.get("status"), {"conditions": conditions})
        if patch:
            self.cluster.patch_status(KIND_GATEWAYCLASS, None, name, patch)

    # ─────────────────────────────────────────────
    # Gateway
    # ─────────────────────────────────────────────
    def reconcile(self, namespace: str, name: str) -> None:
        gateway = self.cluster.get(KIND, namespace, name)
        if gateway is None or is_terminating(gateway):
            return
        class_name = (gateway.get("spec", {}) or {}).get("gatewayClassName", "")
        gateway_class = self.cluster.get(KIND_GATEWAYCLASS, None, class_name)
        if not self.is_ours(gateway_class):
            log.debug("[gateway] %s/%s class %s is not ours", namespace, name, class_name)
            return

        generation = _meta(gateway).get("generation")
        conditions = _conditions(gateway)

        configuration, problem = self.class_parameters(gateway_class)
        if problem:
            log.warning("[gateway] %s/%s not accepted: %s", namespace, name, problem)
            conditions = set_condition(
                conditions, ConditionType.ACCEPTED, False, ConditionReason.INVALID_PARAMETERS, problem, generation
            )
            conditions = set_condition(
                conditions, ConditionType.PROGRAMMED, False, ConditionReason.PENDING, problem, generation
            )
            self._write_status(gateway, {"conditions": conditions})
            return

        conditions = set_condition(
            conditions, ConditionType.ACCEPTED, True, ConditionReason.ACCEPTED, "", generation
        )

        selector = for_gateway(gateway)
        op, dataplane = ensure_owned(
            self.cluster, build_dataplane(gateway, selector, configuration, self.config.dataplane_image), selector
        )
        if op != "noop":
            log.info("[gateway] %s/%s DataPlane %s %s", namespace, name, _name(dataplane), op)
        op, controlplane = ensure_owned(
            self.cluster, build_controlplane(gateway, selector, configuration, _name(dataplane)), selector
        )
        if op != "noop":
            log.info("[gateway] %s/%s ControlPlane %s %s", namespace, name, _name(controlplane), op)

        dataplane_ready = is_true(_conditions(dataplane), ConditionType.READY)
        controlplane_ready = is_true(_conditions(controlplane), ConditionType.READY)
        listeners = self._listeners(gateway, dataplane_ready, generation)
        all_programmed = all(is_true(l["conditions"], ConditionType.PROGRAMMED) for l in listeners)

        if dataplane_ready and controlplane_ready and all_programmed:
            conditions = set_condition(
                conditions, ConditionType.PROGRAMMED, True, ConditionReason.PROGRAMMED, "", generation
            )
        else:
            waiting = []
            if not dataplane_ready:
                waiting.append(f"DataPlane {_name(dataplane)}")
            if not controlplane_ready:
                waiting.append(f"ControlPlane {_name(controlplane)}")
            if not all_programmed:
                waiting.append("listeners")
            conditions = set_condition(
                conditions, ConditionType.PROGRAMMED, False, ConditionReason.PENDING,
                f"waiting for {', '.join(waiting)}", generation,
            )

        addresses = [
            {"type": a.get("type", "IPAddress"), "value": a.get("value")}
            for a in ((dataplane.get("status", {}) or {}).get("addresses", []) or [])
            if a.get("value")
        ]
        self._write_status(gateway, {
            "conditions": conditions,
            "listeners": listeners,
            "addresses": addresses or None,
        })

    def _resolve_refs(self, gateway: dict, listener: dict) -> Tuple[bool, ConditionReason, str]:
        if listener.get("protocol") not in TLS_PROTOCOLS:
            return True, ConditionReason.RESOLVED_REFS, ""
        ns = _meta(gateway).get("namespace", "")
        tls = listener.get("tls") or {}
        refs = tls.get("certificateRefs") or []
        if tls.get("mode", "Terminate") == "Passthrough":
            return True, ConditionReason.RESOLVED_REFS, ""
        if not refs:
            return False, ConditionReason.INVALID_CERTIFICATE_REF, "listener requires tls.certificateRefs"
        for ref in refs:
            if (ref.get("group") or "") not in ("", "core") or (ref.get("kind") or "Secret") != "Secret":
                return False, ConditionReason.INVALID_CERTIFICATE_REF, f"unsupported certificate ref kind {ref.get('kind')}"
            ref_ns = ref.get("namespace") or ns
            secret_name = ref.get("name", "")
            if ref_ns != ns:
                grants = self.cluster.list(KIND_REFERENCE_GRANT, ref_ns)
                if not any(grant_permits(g, ns, secret_name) for g in grants):
                    return (
                        False, ConditionReason.REF_NOT_PERMITTED,
                        f"no ReferenceGrant in {ref_ns} allows Secret {secret_name}",
                    )
            if self.cluster.get("Secret", ref_ns, secret_name) is None:
                return False, ConditionReason.INVALID_CERTIFICATE_REF, f"Secret {ref_ns}/{secret_name} not found"
        return True, ConditionReason.RESOLVED_REFS, ""

    def _listeners(self, gateway: dict, dataplane_ready: bool, generation: Optional[int]) -> List[dict]:
        spec_listeners = (gateway.get("spec", {}) or {}).get("listeners", []) or []
        previous = {
            l.get("name"): l for l in ((gateway.get("status", {}) or {}).get("listeners", []) or [])
        }
        conflicts = listener_conflicts(spec_listeners)
        out: List[dict] = []
        for listener in spec_listeners:
            name = listener.get("name", "")
            protocol = listener.get("protocol", "")
            prev = previous.get(name) or {}
            conditions = list(prev.get("conditions") or [])

            accepted = protocol in SUPPORTED_PROTOCOLS
            if accepted:
                conditions = set_condition(
                    conditions, ConditionType.ACCEPTED, True, ConditionReason.ACCEPTED, "", generation
                )
            else:
                conditions = set_condition(
                    conditions, ConditionType.ACCEPTED, False, ConditionReason.UNSUPPORTED_PROTOCOL,
                    f"protocol {protocol} is not supported", generation,
                )

            conflict = conflicts.get(name)
            if conflict:
                conditions = set_condition(
                    conditions, ConditionType.CONFLICTED, True, conflict[0], conflict[1], generation
                )
            else:
                conditions = set_condition(
                    conditions, ConditionType.CONFLICTED, False, ConditionReason.NO_CONFLICTS, "", generation
                )

            resolved, reason, message = self._resolve_refs(gateway, listener)
            conditions = set_condition(conditions, ConditionType.RESOLVED_REFS, resolved, reason, message, generation)

            if accepted and resolved and not conflict and dataplane_ready:
                conditions = set_condition(
                    conditions, ConditionType.PROGRAMMED, True, ConditionReason.PROGRAMMED, "", generation
                )
            else:
                conditions = set_condition(
                    conditions, ConditionType.PROGRAMMED, False,
                    ConditionReason.PENDING if accepted and resolved and not conflict else ConditionReason.INVALID,
                    "waiting for DataPlane" if accepted and resolved and not conflict else "listener is not valid",
                    generation,
                )

            out.append({
                "name": name,
                "supportedKinds": supported_kinds(protocol),
                "attachedRoutes": int(prev.get("attachedRoutes") or 0),
                "conditions": conditions,
            })
        return out

    def _write_status(self, gateway: dict, desired: dict) -> None:
        patch = status_patch(gateway.get("status"), desired)
        if not patch:
            return
        meta = _meta(gateway)
        self.cluster.patch_status(KIND, meta.get("namespace"), meta.get("name"), patch)
