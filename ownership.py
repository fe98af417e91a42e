# ownership.py
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, replace
from typing import Dict, Optional

from consts import (
    LABEL_DEPLOYMENT_STATE,
    LABEL_KONG_PLUGIN_TYPE,
    LABEL_MANAGED_BY,
    LABEL_MANAGED_BY_NAME,
    LABEL_MANAGED_BY_NAMESPACE,
    LABEL_OWNER_UID,
    LABEL_SERVICE_SECRET,
    LABEL_SERVICE_STATE,
    LABEL_SERVICE_TYPE,
    LABEL_VALUE_MAX,
    ManagedBy,
    Role,
    ServiceType,
)


def _meta(obj: dict) -> dict:
    return (obj or {}).get("metadata", {}) or {}


def label_value(value: str) -> str:
    """Object name as a label value: at most 63 characters, over-long names keep
    a prefix and gain a short hash of the full name."""
    v = re.sub(r"[^A-Za-z0-9-_.]", "-", str(value or ""))
    v = re.sub(r"^[^A-Za-z0-9]+", "", v)
    v = re.sub(r"[^A-Za-z0-9]+$", "", v)
    if len(v) <= LABEL_VALUE_MAX:
        return v
    h = hashlib.sha1(str(value).encode()).hexdigest()[:6]
    return re.sub(r"[^A-Za-z0-9]+$", "", v[:LABEL_VALUE_MAX - 7]) + "-" + h


@dataclass(frozen=True)
class OwnedSelector:
    """Typed "objects I own" query.

    The same instance renders the labels builders write and the selector the
    reconciler lists with, so the two cannot drift apart.
    """

    managed_by: ManagedBy
    owner_name: str
    owner_namespace: str
    owner_uid: str
    service_type: Optional[ServiceType] = None
    service_state: Optional[Role] = None
    deployment_state: Optional[Role] = None
    service_secret: Optional[str] = None
    plugin_type: Optional[str] = None

    def owner_labels(self) -> Dict[str, str]:
        return {
            LABEL_MANAGED_BY: self.managed_by.value,
            LABEL_MANAGED_BY_NAME: label_value(self.owner_name),
            LABEL_MANAGED_BY_NAMESPACE: self.owner_namespace,
            LABEL_OWNER_UID: self.owner_uid,
        }

    def labels(self) -> Dict[str, str]:
        out = self.owner_labels()
        if self.service_type is not None:
            out[LABEL_SERVICE_TYPE] = self.service_type.value
        if self.service_state is not None:
            out[LABEL_SERVICE_STATE] = self.service_state.value
        if self.deployment_state is not None:
            out[LABEL_DEPLOYMENT_STATE] = self.deployment_state.value
        if self.service_secret is not None:
            out[LABEL_SERVICE_SECRET] = self.service_secret
        if self.plugin_type is not None:
            out[LABEL_KONG_PLUGIN_TYPE] = self.plugin_type
        return out

    # narrowing helpers
    def deployment(self, role: Role) -> "OwnedSelector":
        return replace(self, deployment_state=role)

    def service(self, service_type: ServiceType, role: Role) -> "OwnedSelector":
        return replace(self, service_type=service_type, service_state=role)

    def secret_for(self, service_name: str, role: Optional[Role] = None) -> "OwnedSelector":
        return replace(self, service_secret=service_name, service_state=role)

    def state(self, role: Role) -> "OwnedSelector":
        return replace(self, service_state=role)

    def plugin(self, plugin_type: str) -> "OwnedSelector":
        return replace(self, plugin_type=plugin_type)

    def owner(self) -> "OwnedSelector":
        return OwnedSelector(self.managed_by, self.owner_name, self.owner_namespace, self.owner_uid)


def owned_by(managed_by: ManagedBy, owner: dict) -> OwnedSelector:
    meta = _meta(owner)
    return OwnedSelector(
        managed_by=managed_by,
        owner_name=meta.get("name", ""),
        owner_namespace=meta.get("namespace", ""),
        owner_uid=meta.get("uid", ""),
    )


def for_dataplane(dataplane: dict) -> OwnedSelector:
    return owned_by(ManagedBy.DATAPLANE, dataplane)


def for_controlplane(controlplane: dict) -> OwnedSelector:
    return owned_by(ManagedBy.CONTROLPLANE, controlplane)


def for_gateway(gateway: dict) -> OwnedSelector:
    return owned_by(ManagedBy.GATEWAY, gateway)
