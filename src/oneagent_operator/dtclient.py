"""Client for the Dynatrace management API.

Only the calls the operator needs are implemented:

- latest agent version for an OS/installer type
- agent version installed on a host, looked up by IP
- scopes granted to a token
- tenant connection info
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from . import constants as C
from .errors import UpstreamError

logger = logging.getLogger(__name__)


class DynatraceClient:
    """Blocking HTTP client bound to one environment and one pair of tokens."""

    def __init__(
        self,
        api_url: str,
        api_token: str,
        paas_token: str,
        skip_cert_check: bool = False,
        proxy: Optional[str] = None,
        timeout: float = C.DTCLIENT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.paas_token = paas_token
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = not skip_cert_check
        if proxy:
            self.session.proxies = {"http": proxy, "https": proxy}
        self._hosts: Optional[List[Dict[str, Any]]] = None

    def _request(self, method: str, path: str, token: str, **kwargs) -> Any:
        url = f"{self.api_url}{path}"
        headers = {
            "Authorization": f"Api-Token {token}",
            "Accept": "application/json",
        }
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise UpstreamError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400:
            raise UpstreamError(
                f"{method} {url} returned {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"{method} {url} returned invalid JSON: {e}") from e

    def get_latest_agent_version(self, os: str, installer_type: str) -> str:
        """Get the latest agent version available for the given OS and installer type."""
        data = self._request(
            "GET",
            f"/v1/deployment/installer/agent/{os}/{installer_type}/latest/metainfo",
            self.paas_token,
        )
        version = data.get("latestAgentVersion", "")
        if not version:
            raise UpstreamError("response did not contain latestAgentVersion")
        return version

    def get_agent_version_for_ip(self, ip: str) -> str:
        """Get the agent version installed on the host with the given IP address."""
        if not ip:
            raise UpstreamError("no IP address given")
        if self._hosts is None:
            self._hosts = self._request("GET", "/v1/entity/infrastructure/hosts", self.api_token,
                                        params={"includeDetails": "false"})
        for host in self._hosts or []:
            if ip in host.get("ipAddresses", []):
                return _format_agent_version(host.get("agentVersion"))
        raise UpstreamError(f"host with IP {ip} not found")

    def get_token_scopes(self, token: str) -> List[str]:
        """Get the scopes granted to a token."""
        data = self._request("POST", "/v1/tokens/lookup", token, json={"token": token})
        return list(data.get("scopes", []))

    def get_connection_info(self) -> Dict[str, Any]:
        """Get the tenant connection info."""
        data = self._request("GET", "/v1/deployment/installer/agent/connectioninfo", self.paas_token)
        return {
            "tenantUUID": data.get("tenantUUID", ""),
            "communicationEndpoints": data.get("communicationEndpoints", []),
        }


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("message", "")
    return str(body)[:200]


def _format_agent_version(agent_version: Optional[Dict[str, Any]]) -> str:
    if not agent_version:
        raise UpstreamError("host has no agent version")
    return "{}.{}.{}.{}".format(
        agent_version.get("major", 0),
        agent_version.get("minor", 0),
        agent_version.get("revision", 0),
        agent_version.get("timestamp", ""),
    )


# Builds a client for a OneAgent body, its token values and the resolved proxy
ClientFactory = Callable[[Dict[str, Any], Dict[str, str], Optional[str]], DynatraceClient]


def build_dynatrace_client(
    instance: Dict[str, Any],
    tokens: Dict[str, str],
    proxy: Optional[str] = None,
) -> DynatraceClient:
    """Build a client from the OneAgent spec and the tokens read from its secret.

    ``proxy`` is the already resolved proxy URL. Without it, spec.proxy.value is used.
    """
    spec = instance.get("spec", {})
    proxy = proxy or (spec.get("proxy") or {}).get("value") or None
    return DynatraceClient(
        api_url=spec["apiUrl"],
        api_token=tokens.get(C.API_TOKEN_KEY, ""),
        paas_token=tokens.get(C.PAAS_TOKEN_KEY, ""),
        skip_cert_check=spec.get("skipCertCheck", False),
        proxy=proxy,
    )


def static_client(dtc) -> ClientFactory:
    """Factory that always returns the same client."""
    def factory(instance: Dict[str, Any], tokens: Dict[str, str], proxy: Optional[str] = None):
        return dtc
    return factory
