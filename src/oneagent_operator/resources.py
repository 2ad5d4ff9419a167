"""DaemonSet builder for OneAgent resources.

Everything here is a pure function of the OneAgent body: the same input always
produces the same manifest, and the hash annotations let the reconciler detect
whether the live DaemonSet needs to change.
"""

import hashlib
import json
from typing import Any, Dict, List

from . import constants as C
from .errors import ConfigurationError


def build_labels(name: str) -> Dict[str, str]:
    """Labels selecting the agent pods of a OneAgent."""
    return {
        C.LABEL_DYNATRACE: "oneagent",
        C.LABEL_ONEAGENT: name,
    }


def build_owner_reference(owner: Dict[str, Any]) -> Dict[str, Any]:
    """Build owner reference for garbage collection."""
    return {
        "apiVersion": f"{C.API_GROUP}/{C.API_VERSION}",
        "kind": C.KIND,
        "name": owner["metadata"]["name"],
        "uid": owner["metadata"]["uid"],
        "controller": True,
    }


def hash_object(obj: Any) -> str:
    """Stable hash of a JSON-serializable object."""
    encoded = json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def build_env(name: str, spec: Dict[str, Any], tokens_name: str) -> List[Dict[str, Any]]:
    """Environment for the agent container.

    User-provided variables come last and replace operator-provided ones with
    the same name.
    """
    api_url = spec["apiUrl"].rstrip("/")
    installer_url = (
        f"{api_url}/v1/deployment/installer/agent/{C.OS_UNIX}/{C.INSTALLER_TYPE_DEFAULT}/latest"
        f"?arch=x86&flavor=default"
    )

    env = [
        {"name": "ONEAGENT_INSTALLER_SCRIPT_URL", "value": installer_url},
        {
            "name": "ONEAGENT_INSTALLER_TOKEN",
            "valueFrom": {"secretKeyRef": {"name": tokens_name, "key": C.PAAS_TOKEN_KEY}},
        },
        {
            "name": "ONEAGENT_INSTALLER_SKIP_CERT_CHECK",
            "value": "true" if spec.get("skipCertCheck", False) else "false",
        },
    ]

    if spec.get("installPath"):
        env.append({"name": "ONEAGENT_INSTALL_PATH", "value": spec["installPath"]})

    proxy = spec.get("proxy") or {}
    if proxy.get("valueFrom"):
        env.append({
            "name": "https_proxy",
            "valueFrom": {"secretKeyRef": {"name": proxy["valueFrom"], "key": C.PROXY_KEY}},
        })
    elif proxy.get("value"):
        env.append({"name": "https_proxy", "value": proxy["value"]})

    overrides = {}
    for item in spec.get("env") or []:
        if not isinstance(item, dict) or not item.get("name"):
            raise ConfigurationError(f"spec.env entry without a name: {item!r}")
        overrides[item["name"]] = item
    env = [overrides.pop(item["name"], item) for item in env]
    env.extend(overrides.values())
    return env


def build_pod_spec(name: str, spec: Dict[str, Any], tokens_name: str) -> Dict[str, Any]:
    """Pod spec for the agent pods."""
    host_network = spec.get("hostNetwork", True)

    container = {
        "name": "dynatrace-oneagent",
        "image": spec.get("image") or C.DEFAULT_ONEAGENT_IMAGE,
        "imagePullPolicy": "Always",
        "args": list(spec.get("args") or []) + [f"--set-host-property=OperatorVersion={C.OPERATOR_VERSION}"],
        "env": build_env(name, spec, tokens_name),
        "securityContext": {"privileged": True},
        "volumeMounts": [{"name": "host-root", "mountPath": C.HOST_ROOT_MOUNT_PATH}],
        "readinessProbe": {
            "exec": {"command": ["/bin/sh", "-c", "grep -q oneagentwatchdo /proc/[0-9]*/stat"]},
            "initialDelaySeconds": 30,
            "periodSeconds": 30,
            "timeoutSeconds": 1,
        },
    }
    if spec.get("resources"):
        container["resources"] = spec["resources"]

    pod_spec = {
        "containers": [container],
        "hostNetwork": host_network,
        "hostPID": spec.get("hostPID", True),
        "hostIPC": False,
        "dnsPolicy": spec.get("dnsPolicy") or C.DEFAULT_DNS_POLICY,
        "serviceAccountName": spec.get("serviceAccountName") or C.DEFAULT_SERVICE_ACCOUNT,
        "tolerations": spec.get("tolerations") or [{"operator": "Exists"}],
        "volumes": [{"name": "host-root", "hostPath": {"path": "/"}}],
    }
    if spec.get("nodeSelector"):
        pod_spec["nodeSelector"] = spec["nodeSelector"]
    if spec.get("priorityClassName"):
        pod_spec["priorityClassName"] = spec["priorityClassName"]
    return pod_spec


def build_daemonset(instance: Dict[str, Any], tenant_uuid: str = "") -> Dict[str, Any]:
    """Build the DaemonSet running the agent on every node."""
    name = instance["metadata"]["name"]
    namespace = instance["metadata"]["namespace"]
    spec = instance.get("spec", {})
    tokens_name = spec.get("tokens") or name

    selector_labels = build_labels(name)
    labels = {**selector_labels, **(spec.get("labels") or {})}

    pod_spec = build_pod_spec(name, spec, tokens_name)
    template = {
        "metadata": {
            "labels": labels,
            "annotations": {C.ANNOTATION_TENANT_UUID: tenant_uuid},
        },
        "spec": pod_spec,
    }
    immutable = {
        "selector": selector_labels,
        "dnsPolicy": pod_spec["dnsPolicy"],
        "hostNetwork": pod_spec["hostNetwork"],
    }

    return {
        "apiVersion": "apps/v1",
        "kind": "DaemonSet",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {**labels, C.LABEL_MANAGED_BY: C.OPERATOR_NAME},
            "annotations": {
                C.ANNOTATION_TEMPLATE_HASH: hash_object(template),
                C.ANNOTATION_IMMUTABLE_HASH: hash_object(immutable),
            },
            "ownerReferences": [build_owner_reference(instance)],
        },
        "spec": {
            "selector": {"matchLabels": selector_labels},
            "template": template,
        },
    }
