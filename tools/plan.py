#!/usr/bin/env python3
"""Plan-only runner: prints what the DataPlane reconciler would do to the live set
without applying changes.

Usage:
  NAMESPACE=kong NAME=my-dataplane python3 tools/plan.py

Notes:
- Uses your local kubeconfig (same behavior as app.py).
- Does not create/update/delete any objects.
- The admin certificate Secret is compared by its current name; certificate
  renewal is not planned.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from kubernetes import config

# Ensure project root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from builders.dataplane import (  # noqa: E402
    build_admin_service,
    build_deployment,
    build_ingress_service,
    horizontal_scaling,
    render_pod_template,
)
from consts import Role, ServiceType  # noqa: E402
from k8s import KubeCluster  # noqa: E402
from ownership import for_dataplane  # noqa: E402
from reconcile import list_owned, plan_owned, print_plan  # noqa: E402


def main() -> int:
    namespace = os.environ.get("NAMESPACE", "default")
    name = os.environ.get("NAME")
    if not name:
        print("[plan] NAME is required", file=sys.stderr)
        return 2

    try:
        config.load_incluster_config()
        print("[plan] using in-cluster config")
    except config.ConfigException:
        config.load_kube_config()
        print("[plan] using kubeconfig (local)")

    cluster = KubeCluster()
    dataplane = cluster.get("DataPlane", namespace, name)
    if dataplane is None:
        print(f"[plan] DataPlane {namespace}/{name} not found", file=sys.stderr)
        return 1

    selector = for_dataplane(dataplane)
    secrets = list_owned(cluster, "Secret", namespace, selector.state(Role.LIVE))
    cert = secrets[0]["metadata"]["name"] if secrets else "<new>"
    template = render_pod_template(dataplane)

    items = [
        (build_admin_service(dataplane, selector, Role.LIVE), selector.service(ServiceType.ADMIN, Role.LIVE)),
        (build_ingress_service(dataplane, selector, Role.LIVE), selector.service(ServiceType.INGRESS, Role.LIVE)),
        (build_deployment(dataplane, selector, Role.LIVE, template, cert), selector.deployment(Role.LIVE)),
    ]
    ignore = (("spec", "replicas"),) if horizontal_scaling(dataplane) else ()
    plan = plan_owned(cluster, items, ignore)
    plan["owner"] = f"{namespace}/{name}"
    print_plan(plan)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
