# builders/plugins.py
from __future__ import annotations

from typing import Any, Dict

from builders.common import object_meta
from consts import KIND_KONG_PLUGIN, KONG_CONFIGURATION_GROUP
from ownership import OwnedSelector

PROMETHEUS = "prometheus"


def prometheus_plugin_name(controlplane: dict) -> str:
    """Deterministic so Services can name the plugin before it exists."""
    return f"{controlplane['metadata']['name']}-{PROMETHEUS}"


def prometheus_config(extension: dict) -> Dict[str, bool]:
    metrics = ((extension.get("spec", {}) or {}).get("config") or {})
    return {
        "latency_metrics": bool(metrics.get("latency", False)),
        "bandwidth_metrics": bool(metrics.get("bandwidth", False)),
        "status_code_metrics": bool(metrics.get("statusCode", False)),
        "upstream_health_metrics": bool(metrics.get("upstreamHealth", False)),
    }


def build_prometheus_plugin(controlplane: dict, selector: OwnedSelector, extensions) -> Dict[str, Any]:
    # several extensions share one plugin: a metric is on when any of them asks
    config = {k: False for k in prometheus_config({})}
    for ext in extensions:
        for k, v in prometheus_config(ext).items():
            config[k] = config[k] or v
    meta = controlplane.get("metadata", {}) or {}
    return {
        "apiVersion": f"{KONG_CONFIGURATION_GROUP}/v1",
        "kind": KIND_KONG_PLUGIN,
        "metadata": object_meta(
            meta.get("namespace"), selector.plugin(PROMETHEUS).labels(), owner=controlplane,
            name=prometheus_plugin_name(controlplane),
        ),
        "plugin": PROMETHEUS,
        "config": config,
    }
