# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class OperatorConfig:
    resync_seconds: int = 60
    max_workers: int = 8
    request_timeout: int = 30
    dataplane_image: str = "kong:3.9"
    controlplane_image: str = "kong/kubernetes-ingress-controller:3.4"
    ca_secret_name: str = "kong-operator-ca"
    ca_secret_namespace: str = "kong-system"
    controller_name: str = "konghq.com/gateway-operator"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OperatorConfig":
        env = os.environ if environ is None else environ
        return cls(
            resync_seconds=_int(env, "RESYNC_SECONDS", 60),
            max_workers=_int(env, "MAX_WORKERS", 8),
            request_timeout=_int(env, "RECONCILE_TIMEOUT_SECONDS", 30),
            dataplane_image=env.get("DATAPLANE_DEFAULT_IMAGE", "kong:3.9"),
            controlplane_image=env.get(
                "CONTROLPLANE_DEFAULT_IMAGE", "kong/kubernetes-ingress-controller:3.4"
            ),
            ca_secret_name=env.get("CLUSTER_CA_SECRET_NAME", "kong-operator-ca"),
            ca_secret_namespace=env.get("CLUSTER_CA_SECRET_NAMESPACE", "kong-system"),
            controller_name=env.get("GATEWAY_CONTROLLER_NAME", "konghq.com/gateway-operator"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
