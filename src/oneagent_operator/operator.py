"""Main Kopf operator for OneAgent resources."""

import logging

import kopf
import kubernetes
from kubernetes import client
from kubernetes.client.rest import ApiException

from . import constants as C
from .errors import ConfigurationError, ConflictError, InsufficientScopeError, UpstreamError
from .reconciler import Reconciler
from .status import get_tokens_name, now

logger = logging.getLogger(__name__)

TOKENS_REVISION_ANNOTATION = "oneagent.dynatrace.com/tokens-revision"
RECONCILE_REQUESTED_ANNOTATION = "oneagent.dynatrace.com/reconcile-requested"


def get_k8s_clients():
    """Get Kubernetes API clients."""
    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()

    return {
        "core": client.CoreV1Api(),
        "apps": client.AppsV1Api(),
        "custom": client.CustomObjectsApi(),
    }


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **kwargs):
    """Configure kopf and build the reconciler shared by all handlers."""
    settings.execution.max_workers = C.MAX_WORKERS
    settings.networking.request_timeout = C.K8S_REQUEST_TIMEOUT
    # Keep kopf's bookkeeping out of the status, which the reconciler owns
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage()

    memo.clients = get_k8s_clients()
    memo.reconciler = Reconciler(memo.clients)
    logger.info(f"{C.OPERATOR_NAME} {C.OPERATOR_VERSION} started, requeue interval {C.REQUEUE_INTERVAL}s")


def run_reconcile(reconciler: Reconciler, name: str, namespace: str) -> None:
    """Run one pass and translate its errors into kopf retries."""
    try:
        requeue_after = reconciler.reconcile(namespace, name)
    except (ConfigurationError, InsufficientScopeError) as e:
        raise kopf.TemporaryError(str(e), delay=C.REQUEUE_INTERVAL) from e
    except UpstreamError as e:
        raise kopf.TemporaryError(str(e), delay=C.ERROR_RETRY_DELAY) from e
    except ConflictError as e:
        raise kopf.TemporaryError(str(e), delay=1) from e

    if requeue_after is not None:
        logger.debug(f"OneAgent {namespace}/{name} reconciled, next pass in {requeue_after}s")


def request_reconcile(custom, namespace: str, name: str, annotation: str, value: str) -> None:
    """Ask for a reconcile pass by annotating the OneAgent.

    The pass then runs in the update handler, which kopf never runs
    concurrently for one object.
    """
    try:
        custom.patch_namespaced_custom_object(
            C.API_GROUP, C.API_VERSION, namespace, C.PLURAL, name,
            {"metadata": {"annotations": {annotation: value}}},
            _request_timeout=C.K8S_REQUEST_TIMEOUT,
        )
    except ApiException as e:
        if e.status == 404:
            logger.debug(f"OneAgent {namespace}/{name} is gone, not requesting a reconcile")
            return
        raise


@kopf.on.resume(C.API_GROUP, C.API_VERSION, C.PLURAL)
@kopf.on.create(C.API_GROUP, C.API_VERSION, C.PLURAL)
@kopf.on.update(C.API_GROUP, C.API_VERSION, C.PLURAL)
def reconcile_oneagent(name, namespace, memo, **kwargs):
    """Reconcile a OneAgent resource on any change."""
    run_reconcile(memo.reconciler, name, namespace)


@kopf.timer(C.API_GROUP, C.API_VERSION, C.PLURAL, interval=C.REQUEUE_INTERVAL, initial_delay=C.REQUEUE_INTERVAL)
def reconcile_oneagent_periodically(name, namespace, memo, **kwargs):
    """Periodically request a reconcile to pick up new agent versions and instance changes.

    Timers run alongside the change handlers, so the pass itself is left to
    the update handler.
    """
    request_reconcile(memo.clients["custom"], namespace, name, RECONCILE_REQUESTED_ANNOTATION, now())


@kopf.on.delete(C.API_GROUP, C.API_VERSION, C.PLURAL, optional=True)
def delete_oneagent(name, namespace, **kwargs):
    """Handle OneAgent deletion.

    The DaemonSet is cleaned up automatically via ownerReferences.
    """
    logger.info(f"OneAgent {namespace}/{name} deleted - DaemonSet will be garbage collected")


@kopf.on.event("", "v1", "secrets")
def secret_changed(name, namespace, type, body, memo, **kwargs):
    """Trigger a reconcile of every OneAgent whose tokens live in the changed Secret.

    The OneAgent is annotated with the Secret revision instead of being
    reconciled here, so passes for one OneAgent stay serialized by kopf.
    """
    if type is None:
        return

    custom = memo.clients["custom"]
    try:
        oneagents = custom.list_namespaced_custom_object(C.API_GROUP, C.API_VERSION, namespace, C.PLURAL)
    except ApiException as e:
        logger.warning(f"Could not list OneAgents in {namespace}: {e}")
        return

    revision = "deleted" if type == "DELETED" else body.get("metadata", {}).get("resourceVersion", "")
    for oneagent in oneagents.get("items", []):
        tokens = (oneagent.get("status") or {}).get("tokens") or get_tokens_name(oneagent)
        if tokens != name:
            continue
        oneagent_name = oneagent["metadata"]["name"]
        logger.info(f"Secret {namespace}/{name} changed ({type}), triggering reconcile of OneAgent {oneagent_name}")
        request_reconcile(custom, namespace, oneagent_name, TOKENS_REVISION_ANNOTATION, revision)


def main():
    """Entry point for the operator."""
    logging.basicConfig(
        level=C.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    # Kopf takes over from here
    if C.WATCH_NAMESPACE:
        kopf.run(namespaces=[ns.strip() for ns in C.WATCH_NAMESPACE.split(",")])
    else:
        kopf.run(clusterwide=True)


if __name__ == "__main__":
    main()
