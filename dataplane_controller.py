# dataplane_controller.py
from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from builders.dataplane import (
    admin_dns_names,
    build_admin_service,
    build_certificate_secret,
    build_deployment,
    build_ingress_service,
    horizontal_scaling,
    pod_selector,
    render_pod_template,
    template_hash,
)
from builders.network import build_network_policy
from builders.scaling import build_hpa, build_pdb
from certs import certificate_data, ensure_cluster_ca
from conditions import aggregate_ready, get_condition, remove_condition, set_condition
from config import OperatorConfig
from consts import (
    ANNOTATION_PROMOTE_WHEN_READY,
    CLUSTER_CERT_VOLUME,
    KIND_PLUGIN_INSTALLATION,
    PLAN_DELETE_ON_PROMOTION,
    PLAN_SCALE_DOWN_ON_PROMOTION,
    ConditionReason,
    ConditionType,
    Role,
    ServiceType,
)
from gate import validate_dataplane
from ownership import OwnedSelector, for_dataplane
from reconcile import (
    delete_owned,
    ensure_absent,
    ensure_owned,
    is_terminating,
    list_owned,
    status_patch,
)
from rollout import (
    RolloutObservation,
    RolloutState,
    available_replicas,
    compute_state,
    deployment_hash,
    deployment_plan,
    promotion_requested,
    promotion_triggered,
)

log = logging.getLogger(__name__)

KIND = "DataPlane"
OWNED_KINDS = (
    "Deployment",
    "Service",
    "Secret",
    "HorizontalPodAutoscaler",
    "PodDisruptionBudget",
    "NetworkPolicy",
)


@dataclass
class ResourceSet:
    """One role's Deployment, Services and admin certificate."""

    deployment: Optional[dict]
    ingress: dict
    admin: dict
    secret: dict


def _meta(obj: Optional[dict]) -> dict:
    return (obj or {}).get("metadata", {}) or {}


def _name(obj: Optional[dict]) -> str:
    return _meta(obj).get("name", "")


def _newest(objs: List[dict]) -> Optional[dict]:
    if not objs:
        return None
    return sorted(objs, key=lambda o: (_meta(o).get("creationTimestamp") or "", _name(o)))[-1]


def service_addresses(service: Optional[dict]) -> List[Dict[str, str]]:
    """LoadBalancer ingress addresses, falling back to the ClusterIP."""
    out: List[Dict[str, str]] = []
    if not service:
        return out
    lb = ((service.get("status", {}) or {}).get("loadBalancer", {}) or {})
    for ing in lb.get("ingress", []) or []:
        if ing.get("ip"):
            try:
                private = ipaddress.ip_address(ing["ip"]).is_private
            except ValueError:
                private = False
            source = "PrivateLoadBalancer" if private else "PublicLoadBalancer"
            out.append({"type": "IPAddress", "value": ing["ip"], "sourceType": source})
        if ing.get("hostname"):
            out.append({"type": "Hostname", "value": ing["hostname"], "sourceType": "PublicLoadBalancer"})
    if out:
        return out
    cluster_ip = (service.get("spec", {}) or {}).get("clusterIP")
    if cluster_ip and cluster_ip != "None":
        out.append({"type": "IPAddress", "value": cluster_ip, "sourceType": "PrivateIP"})
    return out


def deployment_ready(deployment: Optional[dict]) -> Tuple[bool, int, int]:
    """(rolled out and every replica ready, ready replicas, desired replicas)."""
    if not deployment:
        return False, 0, 0
    spec = deployment.get("spec", {}) or {}
    status = deployment.get("status", {}) or {}
    want = int(spec.get("replicas") if spec.get("replicas") is not None else 1)
    ready = int(status.get("readyReplicas") or 0)
    observed = int(status.get("observedGeneration") or 0) >= int(_meta(deployment).get("generation") or 0)
    updated = int(status.get("updatedReplicas") or 0) >= want
    return observed and updated and ready >= want, ready, want


def preview_available(deployment: Optional[dict]) -> int:
    """Available replicas, counted only once the current template finished rolling out."""
    ok, _, want = deployment_ready(deployment)
    if not ok or want < 1:
        return 0
    return available_replicas(deployment)


class DataPlaneReconciler:
    def __init__(self, cluster, config: OperatorConfig):
        self.cluster = cluster
        self.config = config

    # ─────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────
    def reconcile(self, namespace: str, name: str) -> None:
        dataplane = self.cluster.get(KIND, namespace, name)
        if dataplane is None or is_terminating(dataplane):
            return

        selector = for_dataplane(dataplane)
        generation = _meta(dataplane).get("generation")
        status = dataplane.get("status", {}) or {}
        conditions = list(status.get("conditions", []) or [])

        plugins, plugin_problem = self._plugins(dataplane)
        template = render_pod_template(dataplane, plugins)
        gate = validate_dataplane(dataplane, template)

        if gate.warnings:
            for w in gate.warnings:
                log.warning("[dataplane] %s/%s options: %s", namespace, name, w)
            conditions = set_condition(
                conditions, ConditionType.OPTIONS_VALID, False, ConditionReason.PORT_MAP_MISMATCH,
                "; ".join(gate.warnings), generation,
            )
        else:
            conditions = set_condition(
                conditions, ConditionType.OPTIONS_VALID, True, ConditionReason.OPTIONS_VALID, "", generation
            )

        if not gate.ok:
            log.warning("[dataplane] %s/%s invalid: %s", namespace, name, gate.message)
            conditions = set_condition(
                conditions, ConditionType.READY, False, ConditionReason.INVALID, gate.message, generation
            )
            self._write_status(dataplane, {"conditions": conditions})
            return

        if plugin_problem:
            conditions = set_condition(
                conditions, ConditionType.PROVISIONED, False,
                ConditionReason.PLUGIN_INSTALLATION_NOT_READY, plugin_problem, generation,
            )
            conditions = aggregate_ready(conditions, generation=generation)
            self._write_status(dataplane, {"conditions": conditions})
            return

        desired_hash = template_hash(template)
        obs = self._observe(dataplane, selector)
        state = compute_state(dataplane, desired_hash, obs)
        log.debug("[dataplane] %s/%s rollout state=%s", namespace, name, state.value)

        rollout_status: Optional[dict] = None
        clear_annotation = False

        if state is RolloutState.SIMPLE:
            self._remove_preview(dataplane, selector, PLAN_DELETE_ON_PROMOTION)
            live = self._ensure_live(dataplane, selector, template, update_deployment=True)
            conditions = remove_condition(conditions, ConditionType.ROLLED_OUT)

        elif state is RolloutState.PROMOTED:
            live = self._ensure_live(dataplane, selector, template, update_deployment=True)
            finished = self._remove_preview(dataplane, selector, deployment_plan(dataplane))
            finished = finished or bool(status.get("rollout"))
            previous = get_condition(conditions, ConditionType.ROLLED_OUT) or {}
            if finished or previous.get("reason") == ConditionReason.ROLLOUT_PROMOTION_DONE.value:
                reason, message = ConditionReason.ROLLOUT_PROMOTION_DONE, "promotion done"
            else:
                reason, message = ConditionReason.ROLLOUT_WAITING_FOR_CHANGE, "waiting for a spec change"
            conditions = set_condition(conditions, ConditionType.ROLLED_OUT, True, reason, message, generation)
            # nothing left to promote: a lingering trigger is consumed
            clear_annotation = promotion_requested(dataplane)

        elif state in (RolloutState.PROGRESSING, RolloutState.AWAITING_PROMOTION):
            live = self._ensure_live(dataplane, selector, template, update_deployment=False)
            preview = self._ensure_preview(dataplane, selector, template)

            if state is RolloutState.AWAITING_PROMOTION and promotion_triggered(dataplane):
                log.info("[dataplane] %s/%s promoting preview %s", namespace, name, _name(preview.deployment))
                live = self._promote(dataplane, selector, template)
                conditions = set_condition(
                    conditions, ConditionType.ROLLED_OUT, True,
                    ConditionReason.ROLLOUT_PROMOTION_DONE, "promotion done", generation,
                )
                clear_annotation = promotion_requested(dataplane)
            else:
                rollout_status, conditions = self._rollout_status(
                    dataplane, state, preview, status.get("rollout") or {}, conditions, generation
                )

        else:  # pragma: no cover - RolloutState is closed
            raise AssertionError(f"unhandled rollout state {state}")

        conditions = self._readiness(dataplane, live, conditions, generation)
        _, ready_replicas, replicas = deployment_ready(live.deployment)
        new_status = {
            "conditions": conditions,
            "service": _name(live.ingress),
            "addresses": service_addresses(live.ingress),
            "selector": ",".join(f"{k}={v}" for k, v in sorted(pod_selector(dataplane, Role.LIVE).items())),
            "readyReplicas": ready_replicas,
            "replicas": replicas,
            "rollout": rollout_status,
        }
        # preview objects are already gone at this point, so clearing rollout
        # status cannot lose track of anything
        self._write_status(dataplane, new_status)

        if clear_annotation:
            self.cluster.patch(
                KIND, namespace, name, {"metadata": {"annotations": {ANNOTATION_PROMOTE_WHEN_READY: None}}}
            )
            log.info("[dataplane] %s/%s cleared promotion annotation", namespace, name)

    def cleanup(self, namespace: str, name: str) -> None:
        """Delete owned objects (releasing their finalizers) before the DataPlane goes."""
        dataplane = self.cluster.get(KIND, namespace, name)
        if dataplane is None:
            return
        selector = for_dataplane(dataplane).owner()
        for kind in OWNED_KINDS:
            deleted = ensure_absent(self.cluster, kind, namespace, selector)
            if deleted:
                log.info("[dataplane] %s/%s cleanup removed %s %s", namespace, name, kind, deleted)

    # ─────────────────────────────────────────────
    # Observation
    # ─────────────────────────────────────────────
    def _observe(self, dataplane: dict, selector: OwnedSelector) -> RolloutObservation:
        ns = _meta(dataplane).get("namespace")
        live = _newest(list_owned(self.cluster, "Deployment", ns, selector.deployment(Role.LIVE)))
        preview = _newest(list_owned(self.cluster, "Deployment", ns, selector.deployment(Role.PREVIEW)))
        return RolloutObservation(
            live_hash=deployment_hash(live),
            preview_hash=deployment_hash(preview),
            preview_available=preview_available(preview),
            preview_wired=self._preview_wired(dataplane, selector),
        )

    def _preview_wired(self, dataplane: dict, selector: OwnedSelector) -> bool:
        ns = _meta(dataplane).get("namespace")
        want = pod_selector(dataplane, Role.PREVIEW)
        for service_type in (ServiceType.INGRESS, ServiceType.ADMIN):
            services = list_owned(self.cluster, "Service", ns, selector.service(service_type, Role.PREVIEW))
            if not services:
                return False
            spec = services[0].get("spec", {}) or {}
            if spec.get("selector") != want:
                return False
            if service_type is ServiceType.INGRESS and not spec.get("clusterIP"):
                return False
        return True

    def _plugins(self, dataplane: dict) -> Tuple[Dict[str, str], Optional[str]]:
        """Plugin name -> ConfigMap for every ready KongPluginInstallation referenced."""
        ns = _meta(dataplane).get("namespace")
        out: Dict[str, str] = {}
        for ref in (dataplane.get("spec", {}) or {}).get("pluginsToInstall", []) or []:
            ref_ns = ref.get("namespace") or ns
            name = ref.get("name", "")
            if ref_ns != ns:
                return {}, f"KongPluginInstallation {ref_ns}/{name} must be in namespace {ns}"
            kpi = self.cluster.get(KIND_PLUGIN_INSTALLATION, ref_ns, name)
            if kpi is None:
                return {}, f"KongPluginInstallation {ref_ns}/{name} not found"
            config_map = (kpi.get("status", {}) or {}).get("underlyingConfigMapName")
            if not config_map:
                return {}, f"KongPluginInstallation {ref_ns}/{name} is not ready"
            out[name] = config_map
        return out, None

    def _controlplanes(self, dataplane: dict) -> List[str]:
        ns = _meta(dataplane).get("namespace")
        return [
            _name(cp)
            for cp in self.cluster.list("ControlPlane", ns)
            if (cp.get("spec", {}) or {}).get("dataplane") == _name(dataplane)
        ]

    # ─────────────────────────────────────────────
    # Owned objects
    # ─────────────────────────────────────────────
    def _ensure_certificate(self, dataplane: dict, selector: OwnedSelector, role: Role, service: dict) -> dict:
        ns = _meta(dataplane).get("namespace")
        svc_name = _name(service)
        secret_selector = selector.secret_for(svc_name, role)
        existing = _newest(list_owned(self.cluster, "Secret", ns, secret_selector))
        ca = ensure_cluster_ca(self.cluster, self.config.ca_secret_namespace, self.config.ca_secret_name)
        data = certificate_data(
            ca, f"{svc_name}.{ns}.svc", admin_dns_names(svc_name, ns),
            existing=(existing or {}).get("data"),
        )
        _, secret = ensure_owned(
            self.cluster, build_certificate_secret(dataplane, selector, role, svc_name, data), secret_selector
        )
        # certificates issued for admin Services that no longer exist
        for stale in list_owned(self.cluster, "Secret", ns, selector.state(role)):
            if _name(stale) != _name(secret):
                delete_owned(self.cluster, stale)
        return secret

    def _ensure_live(
        self,
        dataplane: dict,
        selector: OwnedSelector,
        template: dict,
        update_deployment: bool,
    ) -> ResourceSet:
        """Converge the live set. With ``update_deployment`` False an existing live
        Deployment keeps its current template (a rollout is in flight)."""
        ns = _meta(dataplane).get("namespace")
        _, admin = ensure_owned(
            self.cluster, build_admin_service(dataplane, selector, Role.LIVE),
            selector.service(ServiceType.ADMIN, Role.LIVE),
        )
        # Secret before the Deployment that mounts it
        secret = self._ensure_certificate(dataplane, selector, Role.LIVE, admin)
        _, ingress = ensure_owned(
            self.cluster, build_ingress_service(dataplane, selector, Role.LIVE),
            selector.service(ServiceType.INGRESS, Role.LIVE),
        )

        deployment_selector = selector.deployment(Role.LIVE)
        existing = list_owned(self.cluster, "Deployment", ns, deployment_selector)
        if update_deployment or not existing:
            ignore = (("spec", "replicas"),) if horizontal_scaling(dataplane) else ()
            _, deployment = ensure_owned(
                self.cluster,
                build_deployment(dataplane, selector, Role.LIVE, template, _name(secret)),
                deployment_selector,
                keep="newest",
                ignore=ignore,
            )
        else:
            deployment = _newest(existing)
            for extra in existing:
                if extra is not deployment:
                    delete_owned(self.cluster, extra)
            deployment = self._retarget_certificate(deployment, _name(secret))

        hpa = build_hpa(dataplane, selector, _name(deployment))
        if hpa is None:
            ensure_absent(self.cluster, "HorizontalPodAutoscaler", ns, selector)
        else:
            ensure_owned(self.cluster, hpa, selector)

        pdb = build_pdb(dataplane, selector)
        if pdb is None:
            ensure_absent(self.cluster, "PodDisruptionBudget", ns, selector)
        else:
            ensure_owned(self.cluster, pdb, selector)

        ensure_owned(
            self.cluster,
            build_network_policy(dataplane, selector, template, self._controlplanes(dataplane)),
            selector,
        )
        return ResourceSet(deployment=deployment, ingress=ingress, admin=admin, secret=secret)

    def _retarget_certificate(self, deployment: dict, secret_name: str) -> dict:
        """Point a frozen live Deployment at a re-issued certificate Secret."""
        spec = ((deployment.get("spec", {}) or {}).get("template", {}) or {}).get("spec", {}) or {}
        volumes = list(spec.get("volumes", []) or [])
        changed = False
        for i, v in enumerate(volumes):
            if v.get("name") == CLUSTER_CERT_VOLUME and (v.get("secret") or {}).get("secretName") != secret_name:
                volumes[i] = {"name": CLUSTER_CERT_VOLUME, "secret": {"secretName": secret_name}}
                changed = True
        if not changed:
            return deployment
        meta = _meta(deployment)
        return self.cluster.patch(
            "Deployment", meta.get("namespace"), meta.get("name"),
            {"spec": {"template": {"spec": {"volumes": volumes}}}},
        )

    def _ensure_preview(self, dataplane: dict, selector: OwnedSelector, template: dict) -> ResourceSet:
        _, admin = ensure_owned(
            self.cluster, build_admin_service(dataplane, selector, Role.PREVIEW),
            selector.service(ServiceType.ADMIN, Role.PREVIEW),
        )
        secret = self._ensure_certificate(dataplane, selector, Role.PREVIEW, admin)
        _, ingress = ensure_owned(
            self.cluster, build_ingress_service(dataplane, selector, Role.PREVIEW),
            selector.service(ServiceType.INGRESS, Role.PREVIEW),
        )
        _, deployment = ensure_owned(
            self.cluster,
            build_deployment(dataplane, selector, Role.PREVIEW, template, _name(secret)),
            selector.deployment(Role.PREVIEW),
            keep="newest",
        )
        return ResourceSet(deployment=deployment, ingress=ingress, admin=admin, secret=secret)

    def _remove_preview(self, dataplane: dict, selector: OwnedSelector, plan: str) -> bool:
        """Delete preview objects (the Deployment is only scaled down under the
        scale-down plan). Returns True when anything changed."""
        ns = _meta(dataplane).get("namespace")
        changed = False
        if plan == PLAN_SCALE_DOWN_ON_PROMOTION:
            for dep in list_owned(self.cluster, "Deployment", ns, selector.deployment(Role.PREVIEW)):
                if (dep.get("spec", {}) or {}).get("replicas") != 0:
                    self.cluster.patch("Deployment", ns, _name(dep), {"spec": {"replicas": 0}})
                    changed = True
        else:
            changed |= bool(ensure_absent(self.cluster, "Deployment", ns, selector.deployment(Role.PREVIEW)))
        for service_type in (ServiceType.INGRESS, ServiceType.ADMIN):
            changed |= bool(ensure_absent(self.cluster, "Service", ns, selector.service(service_type, Role.PREVIEW)))
        changed |= bool(ensure_absent(self.cluster, "Secret", ns, selector.state(Role.PREVIEW)))
        return changed

    def _promote(self, dataplane: dict, selector: OwnedSelector, template: dict) -> ResourceSet:
        """Promotion steps 1-3; the caller clears rollout status, then the annotation.

        Each step is idempotent, and once step 1 lands the next pass computes
        PROMOTED and finishes the cleanup on its own.
        """
        # 1 + 2: live Deployment gets the desired template, live Services keep selecting live pods
        live = self._ensure_live(dataplane, selector, template, update_deployment=True)
        # 3: preview set goes away
        self._remove_preview(dataplane, selector, deployment_plan(dataplane))
        return live

    # ─────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────
    def _rollout_status(
        self,
        dataplane: dict,
        state: RolloutState,
        preview: ResourceSet,
        current: dict,
        conditions: List[dict],
        generation: Optional[int],
    ) -> Tuple[dict, List[dict]]:
        if state is RolloutState.AWAITING_PROMOTION:
            reason = ConditionReason.ROLLOUT_AWAITING_PROMOTION
            message = f"preview deployment ready; annotate with {ANNOTATION_PROMOTE_WHEN_READY}=true to promote"
        else:
            reason = ConditionReason.ROLLOUT_PROGRESSING
            message = "Rollout initialized" if not current else "preview deployment not yet ready"
            previous = get_condition(current.get("conditions"), ConditionType.ROLLED_OUT) or {}
            if previous.get("reason") == ConditionReason.ROLLOUT_PROGRESSING.value:
                message = previous.get("message") or message
        rollout_conditions = set_condition(
            current.get("conditions"), ConditionType.ROLLED_OUT, False, reason, message, generation
        )
        conditions = set_condition(conditions, ConditionType.ROLLED_OUT, False, reason, message, generation)
        rollout = {
            "phase": state.value,
            "conditions": rollout_conditions,
            "services": {
                "ingress": {"name": _name(preview.ingress), "addresses": service_addresses(preview.ingress)},
                "adminAPI": {"name": _name(preview.admin), "addresses": service_addresses(preview.admin)},
            },
            "deployment": {
                "name": _name(preview.deployment),
                "selector": ",".join(
                    f"{k}={v}" for k, v in sorted(pod_selector(dataplane, Role.PREVIEW).items())
                ),
            },
        }
        return rollout, conditions

    def _readiness(
        self,
        dataplane: dict,
        live: ResourceSet,
        conditions: List[dict],
        generation: Optional[int],
    ) -> List[dict]:
        conditions = set_condition(
            conditions, ConditionType.PROVISIONED, True, ConditionReason.PROVISIONED,
            "live Deployment and Services provisioned", generation,
        )
        ready, ready_replicas, replicas = deployment_ready(live.deployment)
        if not ready:
            return set_condition(
                conditions, ConditionType.READY, False, ConditionReason.DEPENDENCIES_NOT_READY,
                f"Deployment {_name(live.deployment)} has {ready_replicas}/{replicas} ready replicas",
                generation,
            )
        if not service_addresses(live.ingress):
            return set_condition(
                conditions, ConditionType.READY, False, ConditionReason.DEPENDENCIES_NOT_READY,
                f"Service {_name(live.ingress)} has no address yet", generation,
            )
        return aggregate_ready(conditions, generation=generation)

    def _write_status(self, dataplane: dict, desired: dict) -> None:
        patch = status_patch(dataplane.get("status"), desired)
        if not patch:
            return
        meta = _meta(dataplane)
        self.cluster.patch_status(KIND, meta.get("namespace"), meta.get("name"), patch)
