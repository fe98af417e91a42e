from __future__ import annotations

from builders.common import find_container
from conditions import get_condition
from config import OperatorConfig
from consts import ConditionReason
from gateway_controller import GatewayReconciler, grant_permits, listener_conflicts

NS = "kong"
CONTROLLER = OperatorConfig().controller_name
GATEWAY_API = "gateway.networking.k8s.io"


def _gateway_class(name: str = "kong", controller: str = CONTROLLER, parameters: dict = None) -> dict:
    spec = {"controllerName": controller}
    if parameters is not None:
        spec["parametersRef"] = parameters
    return {"apiVersion": f"{GATEWAY_API}/v1", "kind": "GatewayClass", "metadata": {"name": name}, "spec": spec}


def _configuration(**spec) -> dict:
    return {
        "apiVersion": "gateway-operator.konghq.com/v1beta1",
        "kind": "GatewayConfiguration",
        "metadata": {"name": "config", "namespace": NS},
        "spec": spec,
    }


CONFIG_REF = {"group": "gateway-operator.konghq.com", "kind": "GatewayConfiguration", "namespace": NS, "name": "config"}


def _listener(name: str, protocol: str, port: int, **extra) -> dict:
    return dict({"name": name, "protocol": protocol, "port": port}, **extra)


def _gateway(listeners=None, class_name: str = "kong") -> dict:
    return {
        "apiVersion": f"{GATEWAY_API}/v1",
        "kind": "Gateway",
        "metadata": {"name": "gw", "namespace": NS},
        "spec": {
            "gatewayClassName": class_name,
            "listeners": listeners if listeners is not None else [_listener("http", "HTTP", 80)],
        },
    }


def _reconciler(cluster) -> GatewayReconciler:
    return GatewayReconciler(cluster, OperatorConfig())


def _status(cluster) -> dict:
    return cluster.get("Gateway", NS, "gw").get("status", {})


def _listener_status(cluster, name: str) -> dict:
    return next(l for l in _status(cluster)["listeners"] if l["name"] == name)


# ─────────────────────────────────────────────
# Pure helpers
# ─────────────────────────────────────────────
def test_listener_conflicts_protocol_on_shared_port() -> None:
    conflicts = listener_conflicts([_listener("a", "HTTP", 80), _listener("b", "TCP", 80), _listener("c", "HTTP", 81)])
    assert conflicts["a"][0] is ConditionReason.PROTOCOL_CONFLICT
    assert conflicts["b"][0] is ConditionReason.PROTOCOL_CONFLICT
    assert "c" not in conflicts


def test_listener_conflicts_duplicate_hostname() -> None:
    conflicts = listener_conflicts([
        _listener("a", "HTTP", 80, hostname="example.com"),
        _listener("b", "HTTP", 80, hostname="example.com"),
        _listener("c", "HTTP", 80, hostname="other.example.com"),
    ])
    assert set(conflicts) == {"a", "b"}
    assert conflicts["a"][0] is ConditionReason.HOSTNAME_CONFLICT


def test_grant_permits_gateway_to_secret() -> None:
    grant = {"spec": {
        "from": [{"group": GATEWAY_API, "kind": "Gateway", "namespace": NS}],
        "to": [{"group": "", "kind": "Secret", "name": "tls"}],
    }}
    assert grant_permits(grant, NS, "tls")
    assert not grant_permits(grant, NS, "other")
    assert not grant_permits(grant, "elsewhere", "tls")


# ─────────────────────────────────────────────
# GatewayClass
# ─────────────────────────────────────────────
def test_gateway_class_accepted(cluster) -> None:
    cluster.add(_configuration())
    cluster.add(_gateway_class(parameters=CONFIG_REF))
    _reconciler(cluster).reconcile_class("kong")

    accepted = get_condition(cluster.get("GatewayClass", None, "kong")["status"]["conditions"], "Accepted")
    assert accepted["status"] == "True"


def test_gateway_class_with_bad_parameters_is_not_accepted(cluster) -> None:
    cluster.add(_gateway_class(parameters=dict(CONFIG_REF, kind="ConfigMap")))
    _reconciler(cluster).reconcile_class("kong")

    accepted = get_condition(cluster.get("GatewayClass", None, "kong")["status"]["conditions"], "Accepted")
    assert accepted["status"] == "False"
    assert accepted["reason"] == "InvalidParameters"


def test_foreign_gateway_class_is_ignored(cluster) -> None:
    cluster.add(_gateway_class(controller="example.com/other"))
    cluster.add(_gateway())
    reconciler = _reconciler(cluster)
    reconciler.reconcile_class("kong")
    reconciler.reconcile(NS, "gw")

    assert "status" not in cluster.get("GatewayClass", None, "kong")
    assert cluster.list("DataPlane", NS) == []
    assert cluster.writes == []


# ─────────────────────────────────────────────
# Gateway
# ─────────────────────────────────────────────
def test_gateway_derives_dataplane_and_controlplane(cluster) -> None:
    cluster.add(_gateway_class())
    cluster.add(_gateway([_listener("http", "HTTP", 80), _listener("tcp", "TCP", 9000)]))
    _reconciler(cluster).reconcile(NS, "gw")

    dataplane = cluster.only("DataPlane", NS)
    controlplane = cluster.only("ControlPlane", NS)
    proxy = find_container(dataplane["spec"]["deployment"]["podTemplateSpec"]["spec"], "proxy")
    assert proxy["image"] == OperatorConfig().dataplane_image
    assert dataplane["spec"]["network"]["services"]["ingress"]["ports"] == [
        {"name": "http-80", "port": 80, "targetPort": 8000},
        {"name": "tcp-9000", "port": 9000, "targetPort": 8000},
    ]
    assert dataplane["metadata"]["ownerReferences"][0]["kind"] == "Gateway"
    assert controlplane["spec"]["dataplane"] == dataplane["metadata"]["name"]
    assert controlplane["spec"]["gatewayClass"] == "kong"

    status = _status(cluster)
    assert get_condition(status["conditions"], "Accepted")["status"] == "True"
    assert get_condition(status["conditions"], "Programmed")["status"] == "False"

    cluster.clear_writes()
    _reconciler(cluster).reconcile(NS, "gw")
    assert cluster.writes == []


def test_configuration_options_flow_into_children(cluster) -> None:
    cluster.add(_configuration(
        dataPlaneOptions={"deployment": {"replicas": 2, "podTemplateSpec": {"spec": {"containers": [
            {"name": "proxy", "image": "kong/kong-gateway:3.9"},
        ]}}}},
        controlPlaneOptions={"watchNamespaces": {"type": "own"}},
    ))
    cluster.add(_gateway_class(parameters=CONFIG_REF))
    cluster.add(_gateway())
    _reconciler(cluster).reconcile(NS, "gw")

    dataplane = cluster.only("DataPlane", NS)
    proxy = find_container(dataplane["spec"]["deployment"]["podTemplateSpec"]["spec"], "proxy")
    assert proxy["image"] == "kong/kong-gateway:3.9"
    assert dataplane["spec"]["deployment"]["replicas"] == 2
    assert cluster.only("ControlPlane", NS)["spec"]["watchNamespaces"] == {"type": "own"}


def test_out_of_band_deleted_dataplane_is_recreated(cluster) -> None:
    cluster.add(_gateway_class())
    cluster.add(_gateway())
    reconciler = _reconciler(cluster)
    reconciler.reconcile(NS, "gw")
    old = cluster.only("DataPlane", NS)["metadata"]["name"]

    cluster.delete("DataPlane", NS, old)
    reconciler.reconcile(NS, "gw")

    dataplane = cluster.only("DataPlane", NS)
    assert dataplane["metadata"]["name"] != old
    assert cluster.only("ControlPlane", NS)["spec"]["dataplane"] == dataplane["metadata"]["name"]


def test_removing_extension_from_configuration_updates_controlplane(cluster) -> None:
    extension = {"group": "gateway-operator.konghq.com", "kind": "DataPlaneMetricsExtension", "name": "metrics"}
    cluster.add(_configuration(extensions=[extension]))
    cluster.add(_gateway_class(parameters=CONFIG_REF))
    cluster.add(_gateway())
    reconciler = _reconciler(cluster)
    reconciler.reconcile(NS, "gw")
    assert cluster.only("ControlPlane", NS)["spec"]["extensions"] == [extension]

    cluster.patch("GatewayConfiguration", NS, "config", {"spec": {"extensions": None}})
    reconciler.reconcile(NS, "gw")

    assert "extensions" not in cluster.only("ControlPlane", NS)["spec"]


def test_missing_configuration_blocks_acceptance(cluster) -> None:
    cluster.add(_gateway_class(parameters=CONFIG_REF))
    cluster.add(_gateway())
    _reconciler(cluster).reconcile(NS, "gw")

    status = _status(cluster)
    assert get_condition(status["conditions"], "Accepted")["reason"] == "InvalidParameters"
    assert get_condition(status["conditions"], "Programmed")["status"] == "False"
    assert cluster.list("DataPlane", NS) == []


def test_listener_conditions(cluster) -> None:
    cluster.add(_gateway_class())
    cluster.add(_gateway([
        _listener("http", "HTTP", 80),
        _listener("tcp", "TCP", 80),
        _listener("sctp", "SCTP", 9000),
    ]))
    _reconciler(cluster).reconcile(NS, "gw")

    http = _listener_status(cluster, "http")
    assert get_condition(http["conditions"], "Conflicted")["reason"] == "ProtocolConflict"
    assert get_condition(http["conditions"], "Programmed")["status"] == "False"
    assert http["supportedKinds"] == [
        {"group": GATEWAY_API, "kind": "HTTPRoute"},
        {"group": GATEWAY_API, "kind": "GRPCRoute"},
    ]
    sctp = _listener_status(cluster, "sctp")
    assert get_condition(sctp["conditions"], "Accepted")["reason"] == "UnsupportedProtocol"
    assert sctp["supportedKinds"] == []


def test_cross_namespace_certificate_needs_reference_grant(cluster) -> None:
    cluster.add(_gateway_class())
    cluster.add({"apiVersion": "v1", "kind": "Secret", "metadata": {"name": "tls", "namespace": "certs"}})
    cluster.add(_gateway([_listener("https", "HTTPS", 443, tls={
        "mode": "Terminate",
        "certificateRefs": [{"kind": "Secret", "name": "tls", "namespace": "certs"}],
    })]))
    reconciler = _reconciler(cluster)
    reconciler.reconcile(NS, "gw")

    resolved = get_condition(_listener_status(cluster, "https")["conditions"], "ResolvedRefs")
    assert resolved["status"] == "False"
    assert resolved["reason"] == "RefNotPermitted"

    cluster.add({
        "apiVersion": f"{GATEWAY_API}/v1beta1",
        "kind": "ReferenceGrant",
        "metadata": {"name": "gateways", "namespace": "certs"},
        "spec": {
            "from": [{"group": GATEWAY_API, "kind": "Gateway", "namespace": NS}],
            "to": [{"group": "", "kind": "Secret"}],
        },
    })
    reconciler.reconcile(NS, "gw")

    resolved = get_condition(_listener_status(cluster, "https")["conditions"], "ResolvedRefs")
    assert resolved["status"] == "True"
    ports = cluster.only("DataPlane", NS)["spec"]["network"]["services"]["ingress"]["ports"]
    assert ports == [{"name": "https-443", "port": 443, "targetPort": 8443}]


def test_programmed_once_children_ready(cluster) -> None:
    cluster.add(_gateway_class())
    cluster.add(_gateway())
    reconciler = _reconciler(cluster)
    reconciler.reconcile(NS, "gw")

    ready = [{"type": "Ready", "status": "True", "reason": "Ready", "message": ""}]
    dataplane = cluster.only("DataPlane", NS)
    cluster.patch_status("DataPlane", NS, dataplane["metadata"]["name"], {
        "conditions": ready,
        "addresses": [{"type": "IPAddress", "value": "10.96.0.20", "sourceType": "PrivateIP"}],
    })
    reconciler.reconcile(NS, "gw")
    assert get_condition(_status(cluster)["conditions"], "Programmed")["status"] == "False"
    assert "ControlPlane" in get_condition(_status(cluster)["conditions"], "Programmed")["message"]

    controlplane = cluster.only("ControlPlane", NS)
    cluster.patch_status("ControlPlane", NS, controlplane["metadata"]["name"], {"conditions": ready})
    reconciler.reconcile(NS, "gw")

    status = _status(cluster)
    assert get_condition(status["conditions"], "Programmed")["status"] == "True"
    assert get_condition(_listener_status(cluster, "http")["conditions"], "Programmed")["status"] == "True"
    assert status["addresses"] == [{"type": "IPAddress", "value": "10.96.0.20"}]


def test_programmed_gateway_status_converges(cluster) -> None:
    cluster.add(_gateway_class())
    cluster.add(_gateway())
    reconciler = _reconciler(cluster)
    reconciler.reconcile(NS, "gw")
    ready = [{"type": "Ready", "status": "True", "reason": "Ready", "message": ""}]
    dataplane = cluster.only("DataPlane", NS)
    cluster.patch_status("DataPlane", NS, dataplane["metadata"]["name"], {
        "conditions": ready,
        "addresses": [{"type": "IPAddress", "value": "10.96.0.20", "sourceType": "PrivateIP"}],
    })
    controlplane = cluster.only("ControlPlane", NS)
    cluster.patch_status("ControlPlane", NS, controlplane["metadata"]["name"], {"conditions": ready})
    reconciler.reconcile(NS, "gw")

    status = _status(cluster)
    assert set(status) <= {"addresses", "conditions", "listeners"}
    assert get_condition(status["conditions"], "Programmed")["observedGeneration"] == 1

    cluster.clear_writes()
    reconciler.reconcile(NS, "gw")
    assert cluster.writes == []
