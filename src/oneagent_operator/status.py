"""Status helpers for OneAgent resources: conditions, phase and timestamps."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from . import constants as C


def now() -> str:
    """Current time in RFC 3339 format, second precision."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def get_condition(status: Dict[str, Any], condition_type: str) -> Optional[Dict[str, Any]]:
    """Return the condition of the given type, if any."""
    for condition in status.get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def set_condition(
    status: Dict[str, Any],
    condition_type: str,
    ok: bool,
    reason: str,
    message: str,
) -> bool:
    """Upsert a condition by type. Returns True if anything changed.

    The transition time only moves when the condition's status flips.
    Conditions keep the position they were first inserted at.
    """
    conditions: List[Dict[str, Any]] = status.setdefault("conditions", [])
    value = "True" if ok else "False"
    current = get_condition(status, condition_type)

    if current is None:
        conditions.append({
            "type": condition_type,
            "status": value,
            "reason": reason,
            "message": message,
            "lastTransitionTime": now(),
        })
        return True

    if (current.get("status"), current.get("reason"), current.get("message")) == (value, reason, message):
        return False

    if current.get("status") != value:
        current["lastTransitionTime"] = now()
    current["status"] = value
    current["reason"] = reason
    current["message"] = message
    return True


def next_phase(current: str, failed: bool, bootstrapped: bool = False, converged: bool = False) -> str:
    """Compute the phase after a reconcile pass.

    - a failed pass always ends in Error
    - adopting the first version starts a rollout (Deploying)
    - the first successful pass after an error clears the phase
    - a rollout that converged on every node becomes Running, as does a
      cleared phase once every node runs the deployed version
    """
    if failed:
        return C.PHASE_ERROR
    if bootstrapped:
        return C.PHASE_DEPLOYING
    if current == C.PHASE_ERROR:
        return C.PHASE_NONE
    if current in (C.PHASE_DEPLOYING, C.PHASE_NONE) and converged:
        return C.PHASE_RUNNING
    return current or C.PHASE_NONE


def get_tokens_name(instance: Dict[str, Any]) -> str:
    """Name of the secret holding the tokens: spec.tokens, or the resource name."""
    return instance.get("spec", {}).get("tokens") or instance["metadata"]["name"]


def ensure_tokens_name(instance: Dict[str, Any]) -> bool:
    """Point status.tokens at the secret currently referenced. Returns True if it changed."""
    status = instance.setdefault("status", {})
    name = get_tokens_name(instance)
    if status.get("tokens") == name:
        return False
    status["tokens"] = name
    return True
