"""Per-node instance status for OneAgent resources."""

import logging
from typing import Any, Dict

from . import constants as C
from .errors import UpstreamError
from .resources import build_labels
from .status import now
from .version import resolve_host_version

logger = logging.getLogger(__name__)


def label_selector(name: str) -> str:
    return ",".join(f"{key}={value}" for key, value in build_labels(name).items())


def reconcile_instance_statuses(clients: dict, instance: Dict[str, Any], dtc) -> bool:
    """Rebuild status.instances from the agent pods currently running.

    One record per node with a scheduled pod. Nodes without a pod are dropped.
    A failed version lookup keeps the version recorded for that node before.
    Returns True if the instance map changed.
    """
    name = instance["metadata"]["name"]
    namespace = instance["metadata"]["namespace"]
    status = instance.setdefault("status", {})

    pods = clients["core"].list_namespaced_pod(
        namespace, label_selector=label_selector(name), _request_timeout=C.K8S_REQUEST_TIMEOUT
    )

    previous = status.get("instances") or {}
    instances = {}
    for pod in pods.items:
        node = pod.spec.node_name if pod.spec else None
        address = pod.status.host_ip if pod.status else None
        if not node or not address:
            logger.debug(f"Pod {namespace}/{pod.metadata.name} not scheduled yet, skipping")
            continue

        cached = previous.get(node, {})
        try:
            version = resolve_host_version(dtc, address)
        except UpstreamError as e:
            logger.warning(f"Could not resolve agent version for node {node} ({address}): {e}")
            version = cached.get("version", "")

        record = {
            "podName": pod.metadata.name,
            "ipAddress": address,
            "version": version,
        }
        unchanged = all(cached.get(key) == value for key, value in record.items())
        record["lastUpdated"] = cached["lastUpdated"] if unchanged and cached.get("lastUpdated") else now()
        instances[node] = record

    for node in sorted(set(previous) - set(instances)):
        logger.info(f"Node {node} no longer runs an agent pod, removing from {namespace}/{name} status")

    if instances == previous:
        return False
    status["instances"] = instances
    return True


def instances_converged(status: Dict[str, Any]) -> bool:
    """True if at least one node reports an agent and all nodes run status.version."""
    instances = status.get("instances") or {}
    version = status.get("version")
    return bool(instances) and bool(version) and all(
        record.get("version") == version for record in instances.values()
    )
