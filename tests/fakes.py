"""In-memory stand-ins for the Kubernetes API and the Dynatrace client."""

import base64
import copy
import itertools

from kubernetes import client
from kubernetes.client.rest import ApiException

from oneagent_operator import constants as C
from oneagent_operator.errors import UpstreamError

NAMESPACE = "dynatrace"
NAME = "oneagent"
PAAS_TOKEN = "42"
API_TOKEN = "84"
API_URL = "https://ENVIRONMENTID.live.dynatrace.com/api"


def new_instance(spec=None, status=None, name=NAME, namespace=NAMESPACE):
    """A OneAgent body as returned by the API server."""
    return {
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}", "resourceVersion": "1"},
        "spec": {"apiUrl": API_URL, "tokens": name, **(spec or {})},
        "status": status or {},
    }


def not_found():
    return ApiException(status=404, reason="Not Found")


def conflict():
    return ApiException(status=409, reason="Conflict")


class FakeCluster:
    """Implements the subset of CoreV1Api, AppsV1Api and CustomObjectsApi the operator calls.

    The same object is used for all three clients. Every write is recorded
    in ``writes`` as ``(verb, kind, name)``.
    """

    def __init__(self):
        self.oneagents = {}
        self.secrets = {}
        self.daemonsets = {}
        self.pods = {}
        self.writes = []
        self.fail_next_status_write = None
        self._revision = itertools.count(1)

    @property
    def clients(self):
        return {"core": self, "apps": self, "custom": self}

    def _next_revision(self):
        return str(next(self._revision))

    # Helpers for tests

    def add_oneagent(self, name, namespace, spec, status=None):
        self.oneagents[(namespace, name)] = {
            "apiVersion": f"{C.API_GROUP}/{C.API_VERSION}",
            "kind": C.KIND,
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": f"uid-{name}",
                "resourceVersion": self._next_revision(),
            },
            "spec": spec,
            "status": status or {},
        }

    def add_secret(self, name, namespace, values, annotations=None):
        self.secrets[(namespace, name)] = {
            "data": {
                k: base64.b64encode(v if isinstance(v, bytes) else v.encode()).decode()
                for k, v in values.items()
            },
            "annotations": annotations or {},
            "resourceVersion": self._next_revision(),
        }

    def secret_values(self, name, namespace):
        data = self.secrets[(namespace, name)]["data"]
        return {k: base64.b64decode(v).decode() for k, v in data.items()}

    def add_pod(self, name, namespace, labels, node_name=None, host_ip=None):
        self.pods[(namespace, name)] = {
            "labels": labels,
            "node_name": node_name,
            "host_ip": host_ip,
        }

    def remove_pod(self, name, namespace):
        del self.pods[(namespace, name)]

    def status_of(self, name, namespace):
        return self.oneagents[(namespace, name)]["status"]

    # CustomObjectsApi

    def get_namespaced_custom_object(self, group, version, namespace, plural, name, **kwargs):
        if (namespace, name) not in self.oneagents:
            raise not_found()
        return copy.deepcopy(self.oneagents[(namespace, name)])

    def list_namespaced_custom_object(self, group, version, namespace, plural, **kwargs):
        return {"items": [copy.deepcopy(o) for (ns, _), o in self.oneagents.items() if ns == namespace]}

    def replace_namespaced_custom_object_status(self, group, version, namespace, plural, name, body, **kwargs):
        if self.fail_next_status_write is not None:
            error, self.fail_next_status_write = self.fail_next_status_write, None
            raise error
        stored = self.oneagents.get((namespace, name))
        if stored is None:
            raise not_found()
        if body["metadata"].get("resourceVersion") != stored["metadata"]["resourceVersion"]:
            raise conflict()
        stored["status"] = copy.deepcopy(body["status"])
        stored["metadata"]["resourceVersion"] = self._next_revision()
        self.writes.append(("replace_status", C.KIND, name))
        return copy.deepcopy(stored)

    def patch_namespaced_custom_object(self, group, version, namespace, plural, name, body, **kwargs):
        stored = self.oneagents.get((namespace, name))
        if stored is None:
            raise not_found()
        annotations = stored["metadata"].setdefault("annotations", {})
        annotations.update(body.get("metadata", {}).get("annotations", {}))
        stored["metadata"]["resourceVersion"] = self._next_revision()
        self.writes.append(("patch", C.KIND, name))
        return copy.deepcopy(stored)

    # CoreV1Api

    def read_namespaced_secret(self, name, namespace, **kwargs):
        stored = self.secrets.get((namespace, name))
        if stored is None:
            raise not_found()
        return client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                annotations=dict(stored["annotations"]),
                resource_version=stored["resourceVersion"],
            ),
            data=dict(stored["data"]),
        )

    def replace_namespaced_secret(self, name, namespace, body, **kwargs):
        stored = self.secrets.get((namespace, name))
        if stored is None:
            raise not_found()
        if body.metadata.resource_version != stored["resourceVersion"]:
            raise conflict()
        stored["data"] = dict(body.data)
        stored["resourceVersion"] = self._next_revision()
        self.writes.append(("replace", "Secret", name))
        return body

    def list_namespaced_pod(self, namespace, label_selector="", **kwargs):
        wanted = dict(part.split("=", 1) for part in label_selector.split(",") if part)
        items = []
        for (ns, name), pod in sorted(self.pods.items()):
            if ns != namespace:
                continue
            if any(pod["labels"].get(k) != v for k, v in wanted.items()):
                continue
            items.append(client.V1Pod(
                metadata=client.V1ObjectMeta(name=name, namespace=ns, labels=dict(pod["labels"])),
                spec=client.V1PodSpec(containers=[], node_name=pod["node_name"]),
                status=client.V1PodStatus(host_ip=pod["host_ip"]),
            ))
        return client.V1PodList(items=items)

    # AppsV1Api

    def read_namespaced_daemon_set(self, name, namespace, **kwargs):
        stored = self.daemonsets.get((namespace, name))
        if stored is None:
            raise not_found()
        return client.V1DaemonSet(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                annotations=dict(stored["metadata"].get("annotations", {})),
                resource_version=stored["metadata"]["resourceVersion"],
            ),
        )

    def create_namespaced_daemon_set(self, namespace, body, **kwargs):
        name = body["metadata"]["name"]
        if (namespace, name) in self.daemonsets:
            raise conflict()
        stored = copy.deepcopy(body)
        stored["metadata"]["resourceVersion"] = self._next_revision()
        self.daemonsets[(namespace, name)] = stored
        self.writes.append(("create", "DaemonSet", name))
        return copy.deepcopy(stored)

    def replace_namespaced_daemon_set(self, name, namespace, body, **kwargs):
        stored = self.daemonsets.get((namespace, name))
        if stored is None:
            raise not_found()
        if body["metadata"].get("resourceVersion") != stored["metadata"]["resourceVersion"]:
            raise conflict()
        stored = copy.deepcopy(body)
        stored["metadata"]["resourceVersion"] = self._next_revision()
        self.daemonsets[(namespace, name)] = stored
        self.writes.append(("replace", "DaemonSet", name))
        return copy.deepcopy(stored)

    def delete_namespaced_daemon_set(self, name, namespace, body=None, **kwargs):
        if (namespace, name) not in self.daemonsets:
            raise not_found()
        del self.daemonsets[(namespace, name)]
        self.writes.append(("delete", "DaemonSet", name))


class MockDynatraceClient:
    """Scripted management API client. Values that are exceptions are raised."""

    def __init__(self, latest_version="42", scopes=None, host_versions=None, tenant_uuid="abc123456"):
        self.latest_version = latest_version
        self.scopes = scopes if scopes is not None else {}
        self.host_versions = host_versions if host_versions is not None else {}
        self.tenant_uuid = tenant_uuid
        self.calls = []

    @staticmethod
    def _result(value):
        if isinstance(value, Exception):
            raise value
        return value

    def get_latest_agent_version(self, os, installer_type):
        self.calls.append(("get_latest_agent_version", os, installer_type))
        return self._result(self.latest_version)

    def get_agent_version_for_ip(self, ip):
        self.calls.append(("get_agent_version_for_ip", ip))
        if ip not in self.host_versions:
            raise UpstreamError(f"host with IP {ip} not found")
        return self._result(self.host_versions[ip])

    def get_token_scopes(self, token):
        self.calls.append(("get_token_scopes", token))
        return self._result(self.scopes.get(token, []))

    def get_connection_info(self):
        self.calls.append(("get_connection_info",))
        return {"tenantUUID": self.tenant_uuid, "communicationEndpoints": []}

    def called(self, method):
        return [call for call in self.calls if call[0] == method]
