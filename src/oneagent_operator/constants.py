"""Default values and constants for oneagent-operator."""

import os

# API Group and Version
API_GROUP = "dynatrace.com"
API_VERSION = "v1alpha1"
PLURAL = "oneagents"
KIND = "OneAgent"

# Operator name
OPERATOR_NAME = "oneagent-operator"
OPERATOR_VERSION = os.getenv("OPERATOR_VERSION", "snapshot")

# Namespace to watch (empty means cluster-wide)
WATCH_NAMESPACE = os.getenv("WATCH_NAMESPACE", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Images
# =============================================================================

DEFAULT_ONEAGENT_IMAGE = os.getenv(
    "ONEAGENT_IMAGE",
    "docker.io/dynatrace/oneagent:latest"
)

# =============================================================================
# Reconciliation timing
# =============================================================================

# Steady-state requeue interval in seconds
REQUEUE_INTERVAL = float(os.getenv("REQUEUE_INTERVAL", "1800"))

# Retry delay after a transient (upstream) error
ERROR_RETRY_DELAY = float(os.getenv("ERROR_RETRY_DELAY", "60"))

# Re-runs of a pass after an optimistic-concurrency conflict
MAX_CONFLICT_RETRIES = int(os.getenv("MAX_CONFLICT_RETRIES", "3"))

# Concurrent reconcile passes across distinct resources
MAX_WORKERS = int(os.getenv("MAX_WORKERS", "4"))

# Timeouts in seconds
DTCLIENT_TIMEOUT = float(os.getenv("DTCLIENT_TIMEOUT", "30"))
K8S_REQUEST_TIMEOUT = float(os.getenv("K8S_REQUEST_TIMEOUT", "30"))

# =============================================================================
# Token handling
# =============================================================================

UPDATE_PAAS_TOKEN = os.getenv("UPDATE_PAAS_TOKEN", "true").lower() in ("true", "1", "yes")
UPDATE_API_TOKEN = os.getenv("UPDATE_API_TOKEN", "true").lower() in ("true", "1", "yes")

# Secret keys
PAAS_TOKEN_KEY = "paasToken"
API_TOKEN_KEY = "apiToken"
STAGED_TOKEN_SUFFIX = ".next"
PROXY_KEY = "proxy"

# Secret annotation enabling promotion of staged tokens
ACCEPT_ROTATED_TOKENS_ANNOTATION = "oneagent.dynatrace.com/accept-rotated-tokens"

# Token scopes
TOKEN_SCOPE_INSTALLER_DOWNLOAD = "InstallerDownload"
TOKEN_SCOPE_DATA_EXPORT = "DataExport"

# =============================================================================
# Status
# =============================================================================

PHASE_NONE = ""
PHASE_DEPLOYING = "Deploying"
PHASE_RUNNING = "Running"
PHASE_ERROR = "Error"

API_TOKEN_CONDITION = "APIToken"
PAAS_TOKEN_CONDITION = "PaaSToken"

REASON_TOKEN_READY = "TokenReady"
REASON_TOKEN_MISSING = "TokenMissing"
REASON_TOKEN_SCOPE_MISSING = "TokenScopeMissing"
REASON_TOKEN_UNAUTHORIZED = "TokenUnauthorized"
REASON_TOKEN_ERROR = "TokenError"

# =============================================================================
# Installer
# =============================================================================

OS_UNIX = "unix"
INSTALLER_TYPE_DEFAULT = "default"

# =============================================================================
# Workload
# =============================================================================

DEFAULT_DNS_POLICY = "ClusterFirstWithHostNet"
DEFAULT_SERVICE_ACCOUNT = "dynatrace-oneagent"
HOST_ROOT_MOUNT_PATH = "/mnt/root"

# =============================================================================
# Labels and annotations
# =============================================================================

LABEL_DYNATRACE = "dynatrace"
LABEL_ONEAGENT = "oneagent"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"

ANNOTATION_TEMPLATE_HASH = "oneagent.dynatrace.com/template-hash"
ANNOTATION_IMMUTABLE_HASH = "oneagent.dynatrace.com/immutable-hash"
ANNOTATION_TENANT_UUID = "oneagent.dynatrace.com/tenant-uuid"
