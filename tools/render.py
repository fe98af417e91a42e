#!/usr/bin/env python3
"""tools/render.py

Render every object the operator would own for a DataPlane manifest, as
multi-document YAML.

Usage examples:
  python3 tools/render.py dataplane.yaml > /tmp/owned.yaml

  # preview set of a blue-green DataPlane:
  ROLE=preview python3 tools/render.py dataplane.yaml | head

Notes:
- This does NOT apply anything and never talks to a cluster.
- KongPluginInstallations cannot be resolved offline; pluginsToInstall is ignored.
- The admin certificate Secret is referenced by a placeholder name.
- For safe validation, pair it with: kubectl apply --dry-run=server -f -
"""

from __future__ import annotations

import os
import sys

import yaml

# Allow executing from tools/ without installing as a package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from builders.dataplane import (  # noqa: E402
    build_admin_service,
    build_deployment,
    build_ingress_service,
    render_pod_template,
)
from builders.network import build_network_policy  # noqa: E402
from builders.scaling import build_hpa, build_pdb  # noqa: E402
from consts import Role  # noqa: E402
from gate import validate_dataplane  # noqa: E402
from ownership import for_dataplane  # noqa: E402

CERT_PLACEHOLDER = "dataplane-admin-certificate"


def render(dataplane: dict, role: Role) -> list:
    meta = dataplane.setdefault("metadata", {})
    meta.setdefault("namespace", "default")
    meta.setdefault("uid", "00000000-0000-0000-0000-000000000000")
    dataplane.setdefault("apiVersion", "gateway-operator.konghq.com/v1beta1")
    dataplane.setdefault("kind", "DataPlane")

    selector = for_dataplane(dataplane)
    template = render_pod_template(dataplane)
    deployment = build_deployment(dataplane, selector, role, template, CERT_PLACEHOLDER)
    out = [
        deployment,
        build_admin_service(dataplane, selector, role),
        build_ingress_service(dataplane, selector, role),
    ]
    if role is Role.LIVE:
        hpa = build_hpa(dataplane, selector, deployment["metadata"]["generateName"] + "*")
        pdb = build_pdb(dataplane, selector)
        out.extend(o for o in (hpa, pdb) if o is not None)
        out.append(build_network_policy(dataplane, selector, template, []))
    return out


def main() -> int:
    if len(sys.argv) != 2:
        print("usage: render.py <dataplane.yaml>", file=sys.stderr)
        return 2
    with open(sys.argv[1]) as f:
        dataplane = yaml.safe_load(f) or {}
    role = Role(os.environ.get("ROLE", Role.LIVE.value))

    gate = validate_dataplane(dataplane)
    for w in gate.warnings:
        print(f"[render] warning: {w}", file=sys.stderr)
    if not gate.ok:
        for e in gate.errors:
            print(f"[render] error:   {e}", file=sys.stderr)
        return 1

    try:
        yaml.safe_dump_all(render(dataplane, role), sys.stdout, sort_keys=False)
    except BrokenPipeError:
        # Common when piping to `head`; exit cleanly
        return 0
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
