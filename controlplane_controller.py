# controlplane_controller.py
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from builders.controlplane import (
    ADMIN_CLIENT_SECRET,
    build_certificate_secret,
    build_cluster_role,
    build_cluster_role_binding,
    build_deployment,
    build_service_account,
    build_validating_webhook,
    build_webhook_service,
    controller_env,
    effective_controllers,
    watch_namespaces,
)
from certs import b64, certificate_data, ensure_cluster_ca
from conditions import aggregate_ready, is_true, set_condition
from config import OperatorConfig
from consts import (
    KIND_CONTROLPLANE,
    KIND_WATCH_NAMESPACE_GRANT,
    OPERATOR_GROUP,
    ConditionReason,
    ConditionType,
    Role,
    ServiceType,
)
from dataplane_controller import deployment_ready
from extensions import MetricsExtensions
from gate import KNOWN_CONTROLLERS, validate_controlplane
from ownership import OwnedSelector, for_controlplane, for_dataplane
from reconcile import delete_owned, ensure_absent, ensure_owned, is_terminating, list_owned, status_patch

log = logging.getLogger(__name__)

KIND = KIND_CONTROLPLANE
NAMESPACED_KINDS = ("Deployment", "Service", "Secret", "ServiceAccount")
CLUSTER_KINDS = ("ValidatingWebhookConfiguration", "ClusterRoleBinding", "ClusterRole")
WEBHOOK_SECRET = "webhook"


def _meta(obj: Optional[dict]) -> dict:
    return (obj or {}).get("metadata", {}) or {}


def _name(obj: Optional[dict]) -> str:
    return _meta(obj).get("name", "")


def grant_allows(grant: dict, namespace: str) -> bool:
    for entry in (grant.get("spec", {}) or {}).get("from", []) or []:
        if entry.get("namespace") != namespace:
            continue
        if (entry.get("kind") or KIND_CONTROLPLANE) != KIND_CONTROLPLANE:
            continue
        if (entry.get("group") or OPERATOR_GROUP) != OPERATOR_GROUP:
            continue
        return True
    return False


def desired_replicas(controlplane: dict) -> int:
    replicas = ((controlplane.get("spec", {}) or {}).get("deployment", {}) or {}).get("replicas")
    return 1 if replicas is None else int(replicas)


class ControlPlaneReconciler:
    def __init__(self, cluster, config: OperatorConfig, extensions: Optional[MetricsExtensions] = None):
        self.cluster = cluster
        self.config = config
        self.extensions = extensions or MetricsExtensions(cluster)

    # ─────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────
    def reconcile(self, namespace: str, name: str) -> None:
        controlplane = self.cluster.get(KIND, namespace, name)
        if controlplane is None or is_terminating(controlplane):
            return

        selector = for_controlplane(controlplane)
        generation = _meta(controlplane).get("generation")
        conditions = list(((controlplane.get("status", {}) or {}).get("conditions", [])) or [])

        gate = validate_controlplane(controlplane)
        if not gate.ok:
            log.warning("[controlplane] %s/%s invalid: %s", namespace, name, gate.message)
            conditions = set_condition(
                conditions, ConditionType.READY, False, ConditionReason.INVALID, gate.message, generation
            )
            self._write_status(controlplane, {"conditions": conditions})
            return

        dataplane, admin_service, publish_service = self._dataplane_services(controlplane)
        env = controller_env(
            controlplane, self.config.controller_name, list(KNOWN_CONTROLLERS),
            admin_service=admin_service, publish_service=publish_service,
        )
        wired = admin_service is not None
        replicas = desired_replicas(controlplane) if wired else 0

        deployment = self._ensure_owned_objects(controlplane, selector, env, replicas)
        problems = self.extensions.reconcile(controlplane, selector)

        warnings = gate.warnings + problems
        if warnings:
            conditions = set_condition(
                conditions, ConditionType.OPTIONS_VALID, False, ConditionReason.UNKNOWN_CONTROLLER,
                "; ".join(warnings), generation,
            )
        else:
            conditions = set_condition(
                conditions, ConditionType.OPTIONS_VALID, True, ConditionReason.OPTIONS_VALID, "", generation
            )

        missing = self._missing_grants(controlplane)
        if missing:
            log.warning("[controlplane] %s/%s no WatchNamespaceGrant in %s", namespace, name, missing)
            conditions = set_condition(
                conditions, ConditionType.WATCH_NAMESPACE_GRANT_VALID, False,
                ConditionReason.WATCH_NAMESPACE_GRANT_INVALID,
                f"WatchNamespaceGrant missing or not permitting {namespace} in: {', '.join(missing)}",
                generation,
            )
        else:
            conditions = set_condition(
                conditions, ConditionType.WATCH_NAMESPACE_GRANT_VALID, True,
                ConditionReason.WATCH_NAMESPACE_GRANT_VALID, "", generation,
            )

        conditions = self._readiness(controlplane, dataplane, wired, deployment, conditions, generation)
        self._write_status(controlplane, {
            "conditions": conditions,
            "controllers": effective_controllers(controlplane, list(KNOWN_CONTROLLERS)),
            "dataPlane": _name(dataplane) if dataplane else None,
        })

    def cleanup(self, namespace: str, name: str) -> None:
        """Cluster-scoped objects cannot be garbage collected through an owner
        reference to a namespaced ControlPlane, so they go here."""
        controlplane = self.cluster.get(KIND, namespace, name)
        if controlplane is None:
            return
        selector = for_controlplane(controlplane)
        self.extensions.cleanup(controlplane, selector)
        owner = selector.owner()
        for kind in CLUSTER_KINDS:
            deleted = ensure_absent(self.cluster, kind, None, owner)
            if deleted:
                log.info("[controlplane] %s/%s cleanup removed %s %s", namespace, name, kind, deleted)
        for kind in NAMESPACED_KINDS:
            ensure_absent(self.cluster, kind, namespace, owner)

    # ─────────────────────────────────────────────
    # Cross-object reads
    # ─────────────────────────────────────────────
    def _dataplane_services(self, controlplane: dict) -> Tuple[Optional[dict], Optional[str], Optional[str]]:
        """(DataPlane, "ns/admin-service", "ns/ingress-service"), read fresh."""
        ns = _meta(controlplane).get("namespace")
        dp_name = (controlplane.get("spec", {}) or {}).get("dataplane")
        if not dp_name:
            return None, None, None
        dataplane = self.cluster.get("DataPlane", ns, dp_name)
        if dataplane is None or is_terminating(dataplane):
            return None, None, None
        dp_selector = for_dataplane(dataplane)
        admin = list_owned(self.cluster, "Service", ns, dp_selector.service(ServiceType.ADMIN, Role.LIVE))
        ingress = list_owned(self.cluster, "Service", ns, dp_selector.service(ServiceType.INGRESS, Role.LIVE))
        admin_ref = f"{ns}/{_name(admin[0])}" if admin else None
        ingress_ref = f"{ns}/{_name(ingress[0])}" if ingress else None
        return dataplane, admin_ref, ingress_ref

    def _missing_grants(self, controlplane: dict) -> List[str]:
        own = _meta(controlplane).get("namespace", "")
        missing: List[str] = []
        for ns in watch_namespaces(controlplane) or []:
            if ns == own:
                continue
            grants = self.cluster.list(KIND_WATCH_NAMESPACE_GRANT, ns)
            if not any(grant_allows(g, own) for g in grants):
                missing.append(ns)
        return missing

    # ─────────────────────────────────────────────
    # Owned objects
    # ─────────────────────────────────────────────
    def _ensure_secret(self, controlplane: dict, selector: OwnedSelector, purpose: str,
                       common_name: str, dns_names: List[str], client: bool) -> dict:
        ns = _meta(controlplane).get("namespace")
        secret_selector = selector.secret_for(purpose)
        existing = list_owned(self.cluster, "Secret", ns, secret_selector)
        ca = ensure_cluster_ca(self.cluster, self.config.ca_secret_namespace, self.config.ca_secret_name)
        data = certificate_data(
            ca, common_name, dns_names,
            existing=(existing[0].get("data") if existing else None), client=client,
        )
        _, secret = ensure_owned(
            self.cluster, build_certificate_secret(controlplane, selector, purpose, data), secret_selector
        )
        return secret

    def _ensure_owned_objects(
        self,
        controlplane: dict,
        selector: OwnedSelector,
        env: Dict[str, str],
        replicas: int,
    ) -> dict:
        meta = _meta(controlplane)
        ns = meta.get("namespace", "")
        image = self._image(controlplane)

        _, account = ensure_owned(self.cluster, build_service_account(controlplane, selector), selector)
        admin_secret = self._ensure_secret(
            controlplane, selector, ADMIN_CLIENT_SECRET, f"{meta.get('name')}.{ns}", [], client=True
        )
        _, webhook_service = ensure_owned(self.cluster, build_webhook_service(controlplane, selector), selector)
        webhook_host = f"{_name(webhook_service)}.{ns}.svc"
        webhook_secret = self._ensure_secret(
            controlplane, selector, WEBHOOK_SECRET, webhook_host,
            [webhook_host, f"{webhook_host}.cluster.local"], client=False,
        )

        _, deployment = ensure_owned(
            self.cluster,
            build_deployment(
                controlplane, selector, image, env, replicas,
                _name(account), _name(admin_secret), _name(webhook_secret),
            ),
            selector,
        )

        _, role = ensure_owned(self.cluster, build_cluster_role(controlplane, selector), selector)
        # roleRef is immutable: a binding to another role is replaced, not patched
        for binding in list_owned(self.cluster, "ClusterRoleBinding", None, selector):
            if (binding.get("roleRef") or {}).get("name") != _name(role):
                log.info("[controlplane] %s/%s recreating ClusterRoleBinding %s", ns, meta.get("name"), _name(binding))
                delete_owned(self.cluster, binding)
        ensure_owned(
            self.cluster, build_cluster_role_binding(controlplane, selector, _name(role), _name(account)), selector
        )

        ca = ensure_cluster_ca(self.cluster, self.config.ca_secret_namespace, self.config.ca_secret_name)
        ensure_owned(
            self.cluster,
            build_validating_webhook(controlplane, selector, _name(webhook_service), b64(ca.cert_pem)),
            selector,
        )
        return deployment

    def _image(self, controlplane: dict) -> str:
        template = ((controlplane.get("spec", {}) or {}).get("deployment", {}) or {}).get("podTemplateSpec") or {}
        for c in ((template.get("spec", {}) or {}).get("containers", []) or []):
            if c.get("name") == "controller" and c.get("image"):
                return c["image"]
        return self.config.controlplane_image

    # ─────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────
    def _readiness(
        self,
        controlplane: dict,
        dataplane: Optional[dict],
        wired: bool,
        deployment: dict,
        conditions: List[dict],
        generation: Optional[int],
    ) -> List[dict]:
        if dataplane is None:
            dp_name = (controlplane.get("spec", {}) or {}).get("dataplane")
            message = f"DataPlane {dp_name} not found" if dp_name else "no DataPlane configured"
            conditions = set_condition(
                conditions, ConditionType.PROVISIONED, False, ConditionReason.NO_DATAPLANE, message, generation
            )
            return set_condition(
                conditions, ConditionType.READY, False, ConditionReason.NO_DATAPLANE, message, generation
            )
        if not wired:
            conditions = set_condition(
                conditions, ConditionType.PROVISIONED, False, ConditionReason.WAITING_FOR_DATAPLANE,
                f"DataPlane {_name(dataplane)} has no admin Service yet", generation,
            )
            return aggregate_ready(conditions, generation=generation)

        conditions = set_condition(
            conditions, ConditionType.PROVISIONED, True, ConditionReason.PROVISIONED,
            f"Deployment {_name(deployment)} provisioned", generation,
        )
        ready, ready_replicas, replicas = deployment_ready(deployment)
        if not ready and is_true(conditions, ConditionType.WATCH_NAMESPACE_GRANT_VALID):
            return set_condition(
                conditions, ConditionType.READY, False, ConditionReason.DEPENDENCIES_NOT_READY,
                f"Deployment {_name(deployment)} has {ready_replicas}/{replicas} ready replicas", generation,
            )
        return aggregate_ready(conditions, blocking=(ConditionType.WATCH_NAMESPACE_GRANT_VALID,), generation=generation)

    def _write_status(self, controlplane: dict, desired: dict) -> None:
        patch = status_patch(controlplane.get("status"), desired)
        if not patch:
            return
        meta = _meta(controlplane)
        self.cluster.patch_status(KIND, meta.get("namespace"), meta.get("name"), patch)
