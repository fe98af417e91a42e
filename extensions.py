# extensions.py
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from builders.plugins import PROMETHEUS, build_prometheus_plugin, prometheus_plugin_name
from consts import (
    ANNOTATION_KONG_PLUGINS,
    ANNOTATION_MANAGED_PLUGINS,
    KIND_KONG_PLUGIN,
    KIND_METRICS_EXTENSION,
    LABEL_CP_PLUGINS_NAME,
    LABEL_CP_PLUGINS_NAMESPACE,
    OPERATOR_GROUP,
)
from ownership import OwnedSelector, label_value
from reconcile import ensure_absent, ensure_owned

log = logging.getLogger(__name__)


def _meta(obj: Optional[dict]) -> dict:
    return (obj or {}).get("metadata", {}) or {}


def _split(value: Optional[str]) -> List[str]:
    return [p.strip() for p in (value or "").split(",") if p.strip()]


def metrics_extension_refs(controlplane: dict) -> List[dict]:
    return [
        ref
        for ref in (controlplane.get("spec", {}) or {}).get("extensions", []) or []
        if ref.get("kind") == KIND_METRICS_EXTENSION and (ref.get("group") or OPERATOR_GROUP) == OPERATOR_GROUP
    ]


def add_plugin(service: dict, plugin: str) -> Optional[dict]:
    """Metadata patch that adds ``plugin`` to the Service, or None if already there.

    Only a plugin added here is recorded as managed; one the user listed
    themselves stays when the extension goes away.
    """
    annotations = _meta(service).get("annotations", {}) or {}
    plugins = _split(annotations.get(ANNOTATION_KONG_PLUGINS))
    if plugin in plugins:
        return None
    plugins.append(plugin)
    managed = [p for p in _split(annotations.get(ANNOTATION_MANAGED_PLUGINS)) if p != plugin] + [plugin]
    return {
        "annotations": {
            ANNOTATION_KONG_PLUGINS: ",".join(plugins),
            ANNOTATION_MANAGED_PLUGINS: ",".join(managed),
        }
    }


def strip_plugins(service: dict) -> dict:
    """Metadata patch removing every plugin we added and our labels; user plugins stay."""
    annotations = _meta(service).get("annotations", {}) or {}
    managed = set(_split(annotations.get(ANNOTATION_MANAGED_PLUGINS)))
    remaining = [p for p in _split(annotations.get(ANNOTATION_KONG_PLUGINS)) if p not in managed]
    return {
        "labels": {LABEL_CP_PLUGINS_NAME: None, LABEL_CP_PLUGINS_NAMESPACE: None},
        "annotations": {
            ANNOTATION_KONG_PLUGINS: ",".join(remaining) if remaining else None,
            ANNOTATION_MANAGED_PLUGINS: None,
        },
    }


class MetricsExtensions:
    """Wires DataPlaneMetricsExtension references of a ControlPlane.

    The ControlPlane owns one prometheus KongPlugin. Every Service an
    extension selects gets the plugin in its ``konghq.com/plugins``
    annotation plus labels naming the managing ControlPlane; those labels are
    how Services that fall out of selection are found again.
    """

    def __init__(self, cluster):
        self.cluster = cluster

    def reconcile(self, controlplane: dict, selector: OwnedSelector) -> List[str]:
        """Converge plugin and Services; returns problems worth surfacing."""
        meta = _meta(controlplane)
        ns = meta.get("namespace")
        extensions, problems = self._resolve(controlplane)

        selected: Dict[str, dict] = {}
        if extensions:
            ensure_owned(self.cluster, build_prometheus_plugin(controlplane, selector, extensions),
                         selector.plugin(PROMETHEUS))
            plugin = prometheus_plugin_name(controlplane)
            for ext in extensions:
                service_name = (((ext.get("spec", {}) or {}).get("serviceSelector") or {}).get("matchName")) or ""
                service = self.cluster.get("Service", ns, service_name) if service_name else None
                if service is None:
                    problems.append(f"Service {ns}/{service_name} selected by extension {_meta(ext).get('name')} not found")
                    continue
                selected[service_name] = service
                self._label(controlplane, service, plugin)

        for service in self._managed_services(controlplane):
            if _meta(service).get("name") not in selected:
                self._strip(service)

        if not extensions:
            removed = ensure_absent(self.cluster, KIND_KONG_PLUGIN, ns, selector.plugin(PROMETHEUS))
            if removed:
                log.info("[extensions] %s/%s removed metrics plugin %s", ns, meta.get("name"), removed)
        return problems

    def cleanup(self, controlplane: dict, selector: OwnedSelector) -> None:
        for service in self._managed_services(controlplane):
            self._strip(service)
        ensure_absent(self.cluster, KIND_KONG_PLUGIN, _meta(controlplane).get("namespace"), selector.plugin(PROMETHEUS))

    def _resolve(self, controlplane: dict) -> Tuple[List[dict], List[str]]:
        ns = _meta(controlplane).get("namespace")
        found: List[dict] = []
        problems: List[str] = []
        for ref in metrics_extension_refs(controlplane):
            ref_ns = ref.get("namespace") or ns
            if ref_ns != ns:
                problems.append(f"extension {ref_ns}/{ref.get('name')} must be in namespace {ns}")
                continue
            ext = self.cluster.get(KIND_METRICS_EXTENSION, ns, ref.get("name", ""))
            if ext is None:
                problems.append(f"extension {ns}/{ref.get('name')} not found")
                continue
            found.append(ext)
        return found, problems

    def _managed_services(self, controlplane: dict) -> List[dict]:
        meta = _meta(controlplane)
        labels = {
            LABEL_CP_PLUGINS_NAME: label_value(meta.get("name", "")),
            LABEL_CP_PLUGINS_NAMESPACE: meta.get("namespace", ""),
        }
        return self.cluster.list("Service", meta.get("namespace"), labels)

    def _label(self, controlplane: dict, service: dict, plugin: str) -> None:
        meta = _meta(controlplane)
        labels = _meta(service).get("labels", {}) or {}
        patch = add_plugin(service, plugin) or {}
        if labels.get(LABEL_CP_PLUGINS_NAME) != label_value(meta.get("name", "")) or \
                labels.get(LABEL_CP_PLUGINS_NAMESPACE) != meta.get("namespace"):
            patch["labels"] = {
                LABEL_CP_PLUGINS_NAME: label_value(meta.get("name", "")),
                LABEL_CP_PLUGINS_NAMESPACE: meta.get("namespace", ""),
            }
        if not patch:
            return
        svc = _meta(service)
        self.cluster.patch("Service", svc.get("namespace"), svc.get("name"), {"metadata": patch})
        log.info("[extensions] added %s to Service %s/%s", plugin, svc.get("namespace"), svc.get("name"))

    def _strip(self, service: dict) -> None:
        svc = _meta(service)
        self.cluster.patch("Service", svc.get("namespace"), svc.get("name"), {"metadata": strip_plugins(service)})
        log.info("[extensions] stripped metrics plugin from Service %s/%s", svc.get("namespace"), svc.get("name"))
