"""Token validation and rotation for OneAgent resources.

Both tokens live in one Secret (``paasToken`` and ``apiToken``). Each token is
checked against the management API for the scope it is used for, and the
outcome is recorded as a condition on the OneAgent status.
"""

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional, Tuple

from kubernetes.client.rest import ApiException

from . import constants as C
from .dtclient import ClientFactory
from .errors import ConfigurationError, ConflictError, InsufficientScopeError, OperatorError, UpstreamError
from .status import set_condition

logger = logging.getLogger(__name__)

# (secret key, required scope, condition type)
TOKEN_CHECKS = (
    (C.PAAS_TOKEN_KEY, C.TOKEN_SCOPE_INSTALLER_DOWNLOAD, C.PAAS_TOKEN_CONDITION),
    (C.API_TOKEN_KEY, C.TOKEN_SCOPE_DATA_EXPORT, C.API_TOKEN_CONDITION),
)


def decode_secret_value(data: Optional[Dict[str, str]], key: str) -> Optional[str]:
    """Decode one base64 Secret entry into a trimmed string, None if absent."""
    value = (data or {}).get(key)
    if value is None:
        return None
    try:
        return base64.b64decode(value).decode("utf-8").strip()
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Secret key {key} is not valid text: {e}") from e


def decode_tokens(data: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Decode the live and staged token entries of Secret data.

    Other entries are not touched; they may hold binary data such as
    certificates.
    """
    tokens = {}
    for key, _, _ in TOKEN_CHECKS:
        for entry in (key, key + C.STAGED_TOKEN_SUFFIX):
            value = decode_secret_value(data, entry)
            if value is not None:
                tokens[entry] = value
    return tokens


class TokenReconciler:
    """Reads, rotates and validates the tokens of a OneAgent."""

    def __init__(
        self,
        clients: dict,
        client_factory: ClientFactory,
        update_paas_token: bool = C.UPDATE_PAAS_TOKEN,
        update_api_token: bool = C.UPDATE_API_TOKEN,
    ):
        self.clients = clients
        self.client_factory = client_factory
        self.update_paas_token = update_paas_token
        self.update_api_token = update_api_token

    def _enabled_checks(self) -> List[Tuple[str, str, str]]:
        enabled = {
            C.PAAS_TOKEN_KEY: self.update_paas_token,
            C.API_TOKEN_KEY: self.update_api_token,
        }
        return [check for check in TOKEN_CHECKS if enabled[check[0]]]

    def reconcile(self, instance: Dict[str, Any]):
        """Validate the tokens of ``instance`` and return a management API client.

        Conditions are written into ``instance["status"]`` even when an error
        is raised, so the caller can persist them.
        """
        namespace = instance["metadata"]["namespace"]
        status = instance.setdefault("status", {})
        secret_name = status["tokens"]

        try:
            secret = self.clients["core"].read_namespaced_secret(
                secret_name, namespace, _request_timeout=C.K8S_REQUEST_TIMEOUT
            )
        except ApiException as e:
            if e.status == 404:
                message = f"Secret {namespace}/{secret_name} not found"
                for _, _, condition_type in self._enabled_checks():
                    set_condition(status, condition_type, False, C.REASON_TOKEN_MISSING, message)
                raise ConfigurationError(message) from e
            raise

        try:
            tokens = decode_tokens(secret.data)
        except ConfigurationError as e:
            for _, _, condition_type in self._enabled_checks():
                set_condition(status, condition_type, False, C.REASON_TOKEN_ERROR, str(e))
            raise

        proxy = self._resolve_proxy(instance)
        dtc = self.client_factory(instance, tokens, proxy)

        annotations = (secret.metadata.annotations if secret.metadata else None) or {}
        if annotations.get(C.ACCEPT_ROTATED_TOKENS_ANNOTATION) == "true":
            if self._promote_staged_tokens(secret, tokens, dtc):
                dtc = self.client_factory(instance, tokens, proxy)

        first_error: Optional[OperatorError] = None
        for key, scope, condition_type in self._enabled_checks():
            error = self._check_token(status, dtc, tokens.get(key, ""), key, scope, condition_type)
            if first_error is None:
                first_error = error

        if first_error is not None:
            raise first_error
        return dtc

    def _resolve_proxy(self, instance: Dict[str, Any]) -> Optional[str]:
        """Proxy for management API calls, read from the proxy Secret when spec.proxy.valueFrom is set."""
        proxy = instance.get("spec", {}).get("proxy") or {}
        if not proxy.get("valueFrom"):
            return proxy.get("value") or None

        namespace = instance["metadata"]["namespace"]
        secret_name = proxy["valueFrom"]
        try:
            secret = self.clients["core"].read_namespaced_secret(
                secret_name, namespace, _request_timeout=C.K8S_REQUEST_TIMEOUT
            )
        except ApiException as e:
            if e.status == 404:
                raise ConfigurationError(f"Proxy secret {namespace}/{secret_name} not found") from e
            raise

        value = decode_secret_value(secret.data, C.PROXY_KEY)
        if not value:
            raise ConfigurationError(f"Proxy secret {namespace}/{secret_name} has no {C.PROXY_KEY} key")
        return value

    def _check_token(self, status, dtc, token, key, scope, condition_type) -> Optional[OperatorError]:
        if not token:
            message = f"Token {key} on secret {status['tokens']} missing"
            set_condition(status, condition_type, False, C.REASON_TOKEN_MISSING, message)
            return ConfigurationError(message)

        try:
            scopes = dtc.get_token_scopes(token)
        except UpstreamError as e:
            if e.status_code == 401:
                set_condition(status, condition_type, False, C.REASON_TOKEN_UNAUTHORIZED,
                              f"Token on secret {status['tokens']} unauthorized")
                return InsufficientScopeError(key, scope, f"token '{key}' is unauthorized")
            set_condition(status, condition_type, False, C.REASON_TOKEN_ERROR, f"Failed to check token: {e}")
            return e

        if scope not in scopes:
            set_condition(status, condition_type, False, C.REASON_TOKEN_SCOPE_MISSING,
                          f"Token on secret {status['tokens']} missing scope {scope}")
            return InsufficientScopeError(key, scope)

        set_condition(status, condition_type, True, C.REASON_TOKEN_READY, "Ready")
        return None

    def _promote_staged_tokens(self, secret, tokens: Dict[str, str], dtc) -> bool:
        """Move staged ``<key>.next`` tokens that carry the right scope into place.

        Returns True if the Secret was rewritten.
        """
        promoted = []
        for key, scope, _ in self._enabled_checks():
            staged_key = key + C.STAGED_TOKEN_SUFFIX
            staged = tokens.get(staged_key)
            if not staged or staged == tokens.get(key):
                continue
            try:
                scopes = dtc.get_token_scopes(staged)
            except UpstreamError as e:
                logger.warning(f"Could not check staged token {staged_key}: {e}")
                continue
            if scope not in scopes:
                logger.warning(f"Staged token {staged_key} is missing scope {scope}, not promoting")
                continue
            tokens[key] = staged
            del tokens[staged_key]
            promoted.append((key, staged_key))

        if not promoted:
            return False

        name = secret.metadata.name
        namespace = secret.metadata.namespace
        # Only the rotated entries change, everything else is written back as read
        data = dict(secret.data)
        for key, staged_key in promoted:
            data[key] = data.pop(staged_key)
        secret.data = data
        try:
            self.clients["core"].replace_namespaced_secret(
                name, namespace, secret, _request_timeout=C.K8S_REQUEST_TIMEOUT
            )
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(f"Secret {namespace}/{name} changed while rotating tokens") from e
            raise
        logger.info(f"Promoted staged tokens {', '.join(key for key, _ in promoted)} on secret {namespace}/{name}")
        return True
