"""Reconciliation engine for OneAgent resources.

One pass runs these steps in order and stops at the first hard error:

1. load the OneAgent (gone: nothing to do)
2. resolve the tokens secret name
3. validate the tokens
4. decide the agent version (bootstrap or update)
5. apply the DaemonSet
6. aggregate per-node instance status

Whatever status was computed before an error is still written, in a single
status update at the end of the pass.
"""

import copy
import logging
from typing import Any, Dict, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from . import constants as C
from .dtclient import ClientFactory, build_dynatrace_client
from .errors import ConfigurationError, ConflictError, NotFoundError, OperatorError
from .instances import instances_converged, reconcile_instance_statuses
from .resources import build_daemonset
from .status import ensure_tokens_name, next_phase, now
from .tokens import TokenReconciler
from .version import reconcile_rollout, reconcile_version

logger = logging.getLogger(__name__)


class Reconciler:
    """Drives one OneAgent resource toward its declared state.

    Holds the cluster clients and the management API client factory. No state
    is kept between passes.
    """

    def __init__(
        self,
        clients: dict,
        client_factory: ClientFactory = build_dynatrace_client,
        requeue_interval: float = C.REQUEUE_INTERVAL,
        update_paas_token: bool = C.UPDATE_PAAS_TOKEN,
        update_api_token: bool = C.UPDATE_API_TOKEN,
    ):
        self.clients = clients
        self.requeue_interval = requeue_interval
        self.tokens = TokenReconciler(
            clients,
            client_factory,
            update_paas_token=update_paas_token,
            update_api_token=update_api_token,
        )

    def reconcile(self, namespace: str, name: str) -> Optional[float]:
        """Run a reconcile pass, re-running it when a write was rejected as stale.

        Returns the delay in seconds until the next pass, or None if the
        resource no longer exists.
        """
        attempts = max(1, C.MAX_CONFLICT_RETRIES)
        for attempt in range(1, attempts + 1):
            try:
                return self._reconcile_once(namespace, name)
            except ConflictError as e:
                logger.info(f"Conflict reconciling OneAgent {namespace}/{name} (attempt {attempt}): {e}")
                if attempt == attempts:
                    raise
        return None

    def _reconcile_once(self, namespace: str, name: str) -> Optional[float]:
        try:
            instance = self._load(namespace, name)
        except NotFoundError:
            logger.info(f"OneAgent {namespace}/{name} not found, assuming it was deleted")
            return None

        logger.info(f"Reconciling OneAgent {namespace}/{name}")
        if not isinstance(instance.get("status"), dict):
            instance["status"] = {}
        status = instance["status"]
        before = copy.deepcopy(status)
        phase = status.get("phase", C.PHASE_NONE)

        error: Optional[Exception] = None
        bootstrapped = False
        try:
            bootstrapped = self._reconcile_impl(instance)
        except ConflictError:
            raise
        except OperatorError as e:
            error = e
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(f"Conflict writing cluster objects: {e.reason}") from e
            error = e
        except Exception as e:
            logger.exception(f"Unexpected error reconciling OneAgent {namespace}/{name}")
            error = e

        status["phase"] = next_phase(
            phase,
            failed=error is not None,
            bootstrapped=bootstrapped,
            converged=error is None and instances_converged(status),
        )

        if error is not None:
            logger.error(f"Failed to reconcile OneAgent {namespace}/{name}: {error}")

        if status != before:
            self._update_status(instance)

        if error is not None:
            raise error
        return self.requeue_interval

    def _reconcile_impl(self, instance: Dict[str, Any]) -> bool:
        """Steps 2-6 of a pass. Returns True if the agent version was bootstrapped."""
        status = instance["status"]

        ensure_tokens_name(instance)

        if not instance.get("spec", {}).get("apiUrl"):
            raise ConfigurationError("spec.apiUrl is not set")

        dtc = self.tokens.reconcile(instance)

        bootstrapped = not status.get("version")
        reconcile_rollout(instance, dtc)
        if not bootstrapped:
            reconcile_version(instance, dtc)

        connection_info = dtc.get_connection_info()
        self._apply_daemonset(build_daemonset(instance, connection_info.get("tenantUUID", "")))

        reconcile_instance_statuses(self.clients, instance, dtc)
        return bootstrapped

    def _load(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            return self.clients["custom"].get_namespaced_custom_object(
                C.API_GROUP, C.API_VERSION, namespace, C.PLURAL, name,
                _request_timeout=C.K8S_REQUEST_TIMEOUT,
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"OneAgent {namespace}/{name} not found") from e
            raise

    def _apply_daemonset(self, desired: Dict[str, Any]) -> None:
        """Create, replace or recreate the DaemonSet depending on what changed."""
        apps = self.clients["apps"]
        name = desired["metadata"]["name"]
        namespace = desired["metadata"]["namespace"]
        annotations = desired["metadata"]["annotations"]

        try:
            live = apps.read_namespaced_daemon_set(name, namespace, _request_timeout=C.K8S_REQUEST_TIMEOUT)
        except ApiException as e:
            if e.status != 404:
                raise
            logger.info(f"Creating DaemonSet {namespace}/{name}")
            apps.create_namespaced_daemon_set(namespace, desired, _request_timeout=C.K8S_REQUEST_TIMEOUT)
            return

        live_annotations = live.metadata.annotations or {}
        if live_annotations.get(C.ANNOTATION_IMMUTABLE_HASH) != annotations[C.ANNOTATION_IMMUTABLE_HASH]:
            logger.info(f"Immutable fields of DaemonSet {namespace}/{name} changed, recreating")
            apps.delete_namespaced_daemon_set(
                name, namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
                _request_timeout=C.K8S_REQUEST_TIMEOUT,
            )
            apps.create_namespaced_daemon_set(namespace, desired, _request_timeout=C.K8S_REQUEST_TIMEOUT)
        elif live_annotations.get(C.ANNOTATION_TEMPLATE_HASH) != annotations[C.ANNOTATION_TEMPLATE_HASH]:
            logger.info(f"Updating DaemonSet {namespace}/{name}")
            desired["metadata"]["resourceVersion"] = live.metadata.resource_version
            apps.replace_namespaced_daemon_set(name, namespace, desired, _request_timeout=C.K8S_REQUEST_TIMEOUT)
        else:
            logger.debug(f"DaemonSet {namespace}/{name} is up to date")

    def _update_status(self, instance: Dict[str, Any]) -> None:
        metadata = instance["metadata"]
        instance["status"]["updatedTimestamp"] = now()
        logger.info(f"Updating status of OneAgent {metadata['namespace']}/{metadata['name']}")
        try:
            self.clients["custom"].replace_namespaced_custom_object_status(
                C.API_GROUP, C.API_VERSION, metadata["namespace"], C.PLURAL, metadata["name"], instance,
                _request_timeout=C.K8S_REQUEST_TIMEOUT,
            )
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(f"OneAgent {metadata['namespace']}/{metadata['name']} changed during reconcile") from e
            if e.status == 404:
                logger.info(f"OneAgent {metadata['namespace']}/{metadata['name']} deleted during reconcile")
                return
            raise
