"""Agent version resolution and rollout decisions."""

import logging
from typing import Any, Dict

from . import constants as C
from .status import ensure_tokens_name, next_phase

logger = logging.getLogger(__name__)


def reconcile_rollout(instance: Dict[str, Any], dtc) -> bool:
    """Make sure the tokens name and an initial agent version are set.

    An empty status.version is bootstrapped from the latest fleet-wide
    version, which starts a rollout. Returns True if the status changed.
    """
    status = instance.setdefault("status", {})
    update = ensure_tokens_name(instance)

    if not status.get("version"):
        logger.info("Agent version not set, resolving latest version")
        version = dtc.get_latest_agent_version(C.OS_UNIX, C.INSTALLER_TYPE_DEFAULT)
        status["version"] = version
        status["phase"] = next_phase(status.get("phase", C.PHASE_NONE), failed=False, bootstrapped=True)
        logger.info(f"Starting rollout of agent version {version}")
        update = True

    return update


def reconcile_version(instance: Dict[str, Any], dtc) -> bool:
    """Adopt a newer fleet-wide agent version, unless agent updates are disabled.

    Does not change the phase. Returns True if the version changed.
    """
    status = instance.setdefault("status", {})
    current = status.get("version", "")
    if not current or instance.get("spec", {}).get("disableAgentUpdate", False):
        return False

    latest = dtc.get_latest_agent_version(C.OS_UNIX, C.INSTALLER_TYPE_DEFAULT)
    if latest == current:
        return False

    logger.info(f"New agent version available: {current} -> {latest}")
    status["version"] = latest
    return True


def resolve_host_version(dtc, address: str) -> str:
    """Agent version the management API reports for a host address."""
    return dtc.get_agent_version_for_ip(address)
