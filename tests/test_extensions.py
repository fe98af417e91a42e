from __future__ import annotations

from consts import (
    ANNOTATION_KONG_PLUGINS,
    ANNOTATION_MANAGED_PLUGINS,
    LABEL_CP_PLUGINS_NAME,
    LABEL_CP_PLUGINS_NAMESPACE,
)
from extensions import MetricsExtensions, add_plugin, strip_plugins
from ownership import for_controlplane

NS = "kong"
EXTENSION_REF = {"group": "gateway-operator.konghq.com", "kind": "DataPlaneMetricsExtension", "name": "metrics"}


def _service(name: str = "echo", plugins: str = None) -> dict:
    meta = {"name": name, "namespace": NS}
    if plugins is not None:
        meta["annotations"] = {ANNOTATION_KONG_PLUGINS: plugins}
    return {"apiVersion": "v1", "kind": "Service", "metadata": meta, "spec": {"ports": [{"port": 80}]}}


def _extension(service: str = "echo", **config) -> dict:
    return {
        "apiVersion": "gateway-operator.konghq.com/v1alpha1",
        "kind": "DataPlaneMetricsExtension",
        "metadata": {"name": "metrics", "namespace": NS},
        "spec": {"serviceSelector": {"matchName": service}, "config": config},
    }


def _controlplane(cluster, extensions=None) -> dict:
    return cluster.add({
        "apiVersion": "gateway-operator.konghq.com/v1beta1",
        "kind": "ControlPlane",
        "metadata": {"name": "cp", "namespace": NS},
        "spec": {"extensions": extensions} if extensions is not None else {},
    })


def _annotations(cluster, name: str = "echo") -> dict:
    return cluster.get("Service", NS, name)["metadata"].get("annotations") or {}


def test_add_plugin_keeps_user_plugins() -> None:
    patch = add_plugin(_service(plugins="rate-limit"), "cp-prometheus")
    assert patch == {"annotations": {
        ANNOTATION_KONG_PLUGINS: "rate-limit,cp-prometheus",
        ANNOTATION_MANAGED_PLUGINS: "cp-prometheus",
    }}


def test_add_plugin_is_a_noop_once_present() -> None:
    service = _service(plugins="cp-prometheus")
    service["metadata"]["annotations"][ANNOTATION_MANAGED_PLUGINS] = "cp-prometheus"
    assert add_plugin(service, "cp-prometheus") is None


def test_add_plugin_leaves_user_listed_plugin_unmanaged() -> None:
    assert add_plugin(_service(plugins="cp-prometheus,rate-limit"), "cp-prometheus") is None


def test_strip_plugins_removes_only_managed_entries() -> None:
    service = _service(plugins="rate-limit,cp-prometheus")
    service["metadata"]["annotations"][ANNOTATION_MANAGED_PLUGINS] = "cp-prometheus"
    patch = strip_plugins(service)
    assert patch["annotations"] == {ANNOTATION_KONG_PLUGINS: "rate-limit", ANNOTATION_MANAGED_PLUGINS: None}
    assert patch["labels"] == {LABEL_CP_PLUGINS_NAME: None, LABEL_CP_PLUGINS_NAMESPACE: None}


def test_strip_plugins_drops_annotation_left_empty() -> None:
    service = _service(plugins="cp-prometheus")
    service["metadata"]["annotations"][ANNOTATION_MANAGED_PLUGINS] = "cp-prometheus"
    assert strip_plugins(service)["annotations"][ANNOTATION_KONG_PLUGINS] is None


def test_extension_wires_plugin_into_selected_service(cluster) -> None:
    cluster.add(_service(plugins="rate-limit"))
    cluster.add(_extension(latency=True, statusCode=True))
    cp = _controlplane(cluster, [EXTENSION_REF])

    problems = MetricsExtensions(cluster).reconcile(cp, for_controlplane(cp))

    assert problems == []
    plugin = cluster.get("KongPlugin", NS, "cp-prometheus")
    assert plugin["plugin"] == "prometheus"
    assert plugin["config"] == {
        "latency_metrics": True,
        "bandwidth_metrics": False,
        "status_code_metrics": True,
        "upstream_health_metrics": False,
    }
    service = cluster.get("Service", NS, "echo")
    assert service["metadata"]["annotations"][ANNOTATION_KONG_PLUGINS] == "rate-limit,cp-prometheus"
    assert service["metadata"]["labels"] == {LABEL_CP_PLUGINS_NAME: "cp", LABEL_CP_PLUGINS_NAMESPACE: NS}

    cluster.clear_writes()
    MetricsExtensions(cluster).reconcile(cp, for_controlplane(cp))
    assert cluster.writes == []


def test_removing_extension_strips_service_and_deletes_plugin(cluster) -> None:
    cluster.add(_service(plugins="rate-limit"))
    cluster.add(_extension(latency=True))
    cp = _controlplane(cluster, [EXTENSION_REF])
    extensions = MetricsExtensions(cluster)
    extensions.reconcile(cp, for_controlplane(cp))

    cp["spec"]["extensions"] = []
    extensions.reconcile(cp, for_controlplane(cp))

    assert _annotations(cluster) == {ANNOTATION_KONG_PLUGINS: "rate-limit"}
    assert not cluster.get("Service", NS, "echo")["metadata"].get("labels")
    assert cluster.get("KongPlugin", NS, "cp-prometheus") is None


def test_user_listed_plugin_survives_extension_removal(cluster) -> None:
    cluster.add(_service(plugins="cp-prometheus"))
    cluster.add(_extension(latency=True))
    cp = _controlplane(cluster, [EXTENSION_REF])
    extensions = MetricsExtensions(cluster)
    extensions.reconcile(cp, for_controlplane(cp))
    assert ANNOTATION_MANAGED_PLUGINS not in _annotations(cluster)

    cp["spec"]["extensions"] = []
    extensions.reconcile(cp, for_controlplane(cp))

    assert _annotations(cluster) == {ANNOTATION_KONG_PLUGINS: "cp-prometheus"}


def test_reselecting_moves_plugin_between_services(cluster) -> None:
    cluster.add(_service("echo"))
    cluster.add(_service("other"))
    cluster.add(_extension("echo"))
    cp = _controlplane(cluster, [EXTENSION_REF])
    extensions = MetricsExtensions(cluster)
    extensions.reconcile(cp, for_controlplane(cp))

    cluster.patch("DataPlaneMetricsExtension", NS, "metrics", {"spec": {"serviceSelector": {"matchName": "other"}}})
    extensions.reconcile(cp, for_controlplane(cp))

    assert ANNOTATION_KONG_PLUGINS not in _annotations(cluster, "echo")
    assert _annotations(cluster, "other")[ANNOTATION_KONG_PLUGINS] == "cp-prometheus"


def test_missing_service_and_foreign_namespace_are_reported(cluster) -> None:
    cluster.add(_extension("absent"))
    foreign = dict(EXTENSION_REF, name="elsewhere", namespace="other")
    cp = _controlplane(cluster, [EXTENSION_REF, foreign])

    problems = MetricsExtensions(cluster).reconcile(cp, for_controlplane(cp))

    assert len(problems) == 2
    assert any("must be in namespace kong" in p for p in problems)
    assert any("Service kong/absent" in p for p in problems)


def test_cleanup_strips_services(cluster) -> None:
    cluster.add(_service())
    cluster.add(_extension())
    cp = _controlplane(cluster, [EXTENSION_REF])
    extensions = MetricsExtensions(cluster)
    extensions.reconcile(cp, for_controlplane(cp))

    extensions.cleanup(cp, for_controlplane(cp))

    assert _annotations(cluster) == {}
    assert cluster.list("KongPlugin", NS) == []
