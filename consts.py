# consts.py
from __future__ import annotations

from enum import Enum

# ─────────────────────────────────────────────
# API groups / kinds
# ─────────────────────────────────────────────
OPERATOR_GROUP = "gateway-operator.konghq.com"
OPERATOR_VERSION = "v1beta1"
OPERATOR_ALPHA_VERSION = "v1alpha1"
GATEWAY_API_GROUP = "gateway.networking.k8s.io"
GATEWAY_API_VERSION = "v1"
KONG_CONFIGURATION_GROUP = "configuration.konghq.com"

KIND_DATAPLANE = "DataPlane"
KIND_CONTROLPLANE = "ControlPlane"
KIND_GATEWAY = "Gateway"
KIND_GATEWAYCLASS = "GatewayClass"
KIND_GATEWAY_CONFIGURATION = "GatewayConfiguration"
KIND_WATCH_NAMESPACE_GRANT = "WatchNamespaceGrant"
KIND_METRICS_EXTENSION = "DataPlaneMetricsExtension"
KIND_PLUGIN_INSTALLATION = "KongPluginInstallation"
KIND_KONG_PLUGIN = "KongPlugin"
KIND_REFERENCE_GRANT = "ReferenceGrant"

# ─────────────────────────────────────────────
# Labels
# ─────────────────────────────────────────────
PREFIX = "gateway-operator.konghq.com/"

LABEL_MANAGED_BY = PREFIX + "managed-by"
LABEL_MANAGED_BY_NAME = PREFIX + "managed-by-name"
LABEL_MANAGED_BY_NAMESPACE = PREFIX + "managed-by-namespace"
LABEL_OWNER_UID = PREFIX + "owner-uid"
LABEL_SERVICE_TYPE = PREFIX + "dataplane-service-type"
LABEL_SERVICE_STATE = PREFIX + "dataplane-service-state"
LABEL_DEPLOYMENT_STATE = PREFIX + "dataplane-deployment-state"
LABEL_POD_STATE = PREFIX + "dataplane-pod-state"
LABEL_SERVICE_SECRET = PREFIX + "service-secret"
LABEL_KONG_PLUGIN_TYPE = PREFIX + "kong-plugin-type"
LABEL_CP_PLUGINS_NAME = PREFIX + "control-plane-managing-plugins-name"
LABEL_CP_PLUGINS_NAMESPACE = PREFIX + "control-plane-managing-plugins-namespace"
LABEL_APP = "app"

# Kubernetes caps label values; owner names can be longer
LABEL_VALUE_MAX = 63


class ManagedBy(str, Enum):
    DATAPLANE = "dataplane"
    CONTROLPLANE = "controlplane"
    GATEWAY = "gateway"


class ServiceType(str, Enum):
    INGRESS = "ingress"
    ADMIN = "admin"


class Role(str, Enum):
    """Deployment/Service state: the set currently serving vs the one being validated."""

    LIVE = "live"
    PREVIEW = "preview"


# ─────────────────────────────────────────────
# Annotations / finalizers
# ─────────────────────────────────────────────
ANNOTATION_PROMOTE_WHEN_READY = PREFIX + "promote-when-ready"
ANNOTATION_LAST_APPLIED = PREFIX + "last-applied"
ANNOTATION_POD_TEMPLATE_HASH = PREFIX + "pod-template-hash"
ANNOTATION_MANAGED_PLUGINS = PREFIX + "control-plane-managed-plugins"
ANNOTATION_KONG_PLUGINS = "konghq.com/plugins"
ANNOTATION_INGRESS_CLASS = "kubernetes.io/ingress.class"

FINALIZER_CLEANUP = PREFIX + "cleanup"
FINALIZER_WAIT_FOR_OWNER = PREFIX + "wait-for-owner"

# ─────────────────────────────────────────────
# Proxy defaults
# ─────────────────────────────────────────────
PROXY_CONTAINER = "proxy"
CONTROLLER_CONTAINER = "controller"

PROXY_PORT = 8000
PROXY_SSL_PORT = 8443
ADMIN_PORT = 8444
STATUS_PORT = 8100
HTTP_PORT = 80
HTTPS_PORT = 443
WEBHOOK_PORT = 8080

PROXY_PORT_NAME = "proxy"
PROXY_SSL_PORT_NAME = "proxy-ssl"
ADMIN_PORT_NAME = "admin"
METRICS_PORT_NAME = "metrics"
WEBHOOK_PORT_NAME = "webhook"

STATUS_READY_PATH = "/status/ready"

CLUSTER_CERT_VOLUME = "cluster-certificate"
CLUSTER_CERT_MOUNT_PATH = "/var/cluster-certificate"
PLUGINS_MOUNT_ROOT = "/opt/kong/plugins"

ENV_DATABASE = "KONG_DATABASE"
ENV_PROXY_LISTEN = "KONG_PROXY_LISTEN"
ENV_ADMIN_LISTEN = "KONG_ADMIN_LISTEN"
ENV_STATUS_LISTEN = "KONG_STATUS_LISTEN"
ENV_PORT_MAPS = "KONG_PORT_MAPS"
ENV_PLUGINS = "KONG_PLUGINS"
ENV_LUA_PACKAGE_PATH = "KONG_LUA_PACKAGE_PATH"

SECRET_CERT_KEY = "tls.crt"
SECRET_KEY_KEY = "tls.key"
SECRET_CA_KEY = "ca.crt"

# ─────────────────────────────────────────────
# Rollout options
# ─────────────────────────────────────────────
PROMOTION_BREAK_BEFORE = "BreakBeforePromotion"
PROMOTION_AUTOMATIC = "AutomaticPromotion"
PLAN_DELETE_ON_PROMOTION = "DeleteOnPromotionRecreateOnRollout"
PLAN_SCALE_DOWN_ON_PROMOTION = "ScaleDownOnPromotionScaleUpOnRollout"


# ─────────────────────────────────────────────
# Status vocabulary
# ─────────────────────────────────────────────
class ConditionType(str, Enum):
    READY = "Ready"
    PROVISIONED = "Provisioned"
    SCHEDULED = "Scheduled"
    ACCEPTED = "Accepted"
    PROGRAMMED = "Programmed"
    OPTIONS_VALID = "OptionsValid"
    WATCH_NAMESPACE_GRANT_VALID = "WatchNamespaceGrantValid"
    ROLLED_OUT = "RolledOut"
    CONFLICTED = "Conflicted"
    RESOLVED_REFS = "ResolvedRefs"


class ConditionReason(str, Enum):
    READY = "Ready"
    PENDING = "Pending"
    PROVISIONED = "Provisioned"
    PROVISIONING = "Provisioning"
    INVALID = "Invalid"
    NO_DATAPLANE = "NoDataPlane"
    WAITING_FOR_DATAPLANE = "WaitingToBecomeReady"
    DEPENDENCIES_NOT_READY = "DependenciesNotReady"
    OPTIONS_VALID = "OptionsValid"
    PORT_MAP_MISMATCH = "PortMapMismatch"
    UNKNOWN_CONTROLLER = "UnknownController"
    PLUGIN_INSTALLATION_NOT_READY = "PluginInstallationNotReady"
    WATCH_NAMESPACE_GRANT_VALID = "WatchNamespaceGrantValid"
    WATCH_NAMESPACE_GRANT_INVALID = "WatchNamespaceGrantInvalid"
    ROLLOUT_PROGRESSING = "RolloutProgressing"
    ROLLOUT_AWAITING_PROMOTION = "RolloutAwaitingPromotion"
    ROLLOUT_PROMOTION_IN_PROGRESS = "RolloutPromotionInProgress"
    ROLLOUT_PROMOTION_DONE = "RolloutPromotionDone"
    ROLLOUT_PROMOTION_FAILED = "RolloutPromotionFailed"
    ROLLOUT_FAILED = "RolloutFailed"
    ROLLOUT_WAITING_FOR_CHANGE = "RolloutWaitingForChange"
    ACCEPTED = "Accepted"
    PROGRAMMED = "Programmed"
    INVALID_PARAMETERS = "InvalidParameters"
    UNSUPPORTED_PROTOCOL = "UnsupportedProtocol"
    PROTOCOL_CONFLICT = "ProtocolConflict"
    HOSTNAME_CONFLICT = "HostnameConflict"
    NO_CONFLICTS = "NoConflicts"
    RESOLVED_REFS = "ResolvedRefs"
    REF_NOT_PERMITTED = "RefNotPermitted"
    INVALID_CERTIFICATE_REF = "InvalidCertificateRef"
    NO_RESOURCES = "NoResources"


# Fixed user-facing messages for spec errors.
MSG_IMAGE_REQUIRED = "DataPlane requires an image to be set on proxy container"
MSG_REPLICAS_AND_SCALING = "DataPlane cannot set both deployment replicas and horizontal scaling"
