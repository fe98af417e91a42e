# rollout.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from consts import (
    ANNOTATION_POD_TEMPLATE_HASH,
    ANNOTATION_PROMOTE_WHEN_READY,
    PLAN_DELETE_ON_PROMOTION,
    PROMOTION_AUTOMATIC,
    PROMOTION_BREAK_BEFORE,
)


class RolloutState(Enum):
    SIMPLE = "Simple"
    PROGRESSING = "Progressing"
    AWAITING_PROMOTION = "AwaitingPromotion"
    PROMOTED = "Promoted"


@dataclass(frozen=True)
class RolloutObservation:
    """What the cluster says about the live/preview sets at the start of a pass."""

    live_hash: Optional[str] = None
    preview_hash: Optional[str] = None
    preview_available: int = 0
    preview_wired: bool = False


def blue_green(dataplane: dict) -> Optional[dict]:
    deployment = ((dataplane.get("spec", {}) or {}).get("deployment", {}) or {})
    strategy = ((deployment.get("rollout") or {}).get("strategy") or {})
    # an empty blueGreen block ({}) still selects the strategy
    return strategy.get("blueGreen")


def promotion_strategy(dataplane: dict) -> str:
    bg = blue_green(dataplane) or {}
    return ((bg.get("promotion") or {}).get("strategy")) or PROMOTION_BREAK_BEFORE


def deployment_plan(dataplane: dict) -> str:
    bg = blue_green(dataplane) or {}
    plan = ((bg.get("resources") or {}).get("plan") or {})
    return plan.get("deployment") or PLAN_DELETE_ON_PROMOTION


def promotion_requested(dataplane: dict) -> bool:
    annotations = ((dataplane.get("metadata", {}) or {}).get("annotations", {}) or {})
    return annotations.get(ANNOTATION_PROMOTE_WHEN_READY) == "true"


def promotion_triggered(dataplane: dict) -> bool:
    return promotion_strategy(dataplane) == PROMOTION_AUTOMATIC or promotion_requested(dataplane)


def deployment_hash(deployment: Optional[dict]) -> Optional[str]:
    if not deployment:
        return None
    annotations = ((deployment.get("metadata", {}) or {}).get("annotations", {}) or {})
    return annotations.get(ANNOTATION_POD_TEMPLATE_HASH)


def available_replicas(deployment: Optional[dict]) -> int:
    return int((((deployment or {}).get("status", {}) or {}).get("availableReplicas")) or 0)


def compute_state(dataplane: dict, desired_hash: str, obs: RolloutObservation) -> RolloutState:
    """Single decision point for the rollout branch taken in this pass.

    PROMOTED covers every case where live already runs the desired template,
    including the very first pass when no live Deployment exists yet (there is
    nothing to preview against, so live is provisioned directly).
    """
    if blue_green(dataplane) is None:
        return RolloutState.SIMPLE
    if obs.live_hash is None or obs.live_hash == desired_hash:
        return RolloutState.PROMOTED
    if obs.preview_hash != desired_hash or obs.preview_available < 1 or not obs.preview_wired:
        return RolloutState.PROGRESSING
    return RolloutState.AWAITING_PROMOTION
