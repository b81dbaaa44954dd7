"""Internal constants shared across the bridge."""

USER_AGENT = "openclaw-bridge"
TELEMETRY_SCHEMA_VERSION = "telemetry.v1"
STATE_FILE_VERSION = 1

MACHINE_ID_HEADER = "X-Bridge-Machine-Id"
BRIDGE_VERSION_HEADER = "X-Bridge-Version"

# ------------------------------------------------------------------
# Defaults and floors (seconds)
# ------------------------------------------------------------------

DEFAULT_CONTROL_PLANE_BASE_URL = "http://127.0.0.1:19700"
DEFAULT_STATE_DIR = "~/.patze-control"
DEFAULT_OPENCLAW_HOME = "~/.openclaw"

DEFAULT_HEARTBEAT_INTERVAL = 5.0
MIN_HEARTBEAT_INTERVAL = 1.0
DEFAULT_POLL_INTERVAL = 5.0
MIN_POLL_INTERVAL = 1.0
DEFAULT_LEASE_TTL = 30.0
MIN_LEASE_TTL = 5.0
DEFAULT_LEASE_RENEW_MARGIN = 5.0
DEFAULT_CRON_SYNC_INTERVAL = 30.0
MIN_CRON_SYNC_INTERVAL = 5.0
DEFAULT_TELEMETRY_FLUSH_INTERVAL = 2.0
MIN_TELEMETRY_FLUSH_INTERVAL = 0.5
DEFAULT_REQUEST_TIMEOUT = 10.0
MIN_REQUEST_TIMEOUT = 1.0
DEFAULT_SHUTDOWN_GRACE = 10.0

DEFAULT_HEALTH_HOST = "127.0.0.1"
DEFAULT_HEALTH_PORT = 19701

DEFAULT_RECEIPT_RETENTION = 7 * 24 * 3600.0
DEFAULT_RECEIPT_MAX_ENTRIES = 500
DEFAULT_TELEMETRY_SPOOL_CAPACITY = 1000

# ------------------------------------------------------------------
# Endpoint paths
# ------------------------------------------------------------------

DEFAULT_CONTROL_POLL_PATH = "/openclaw/bridge/commands/poll"
DEFAULT_CONTROL_ACK_PATH_TEMPLATE = "/openclaw/bridge/commands/{commandId}/ack"
DEFAULT_CONTROL_HEARTBEAT_PATH_TEMPLATE = "/openclaw/bridge/commands/{commandId}/heartbeat"
DEFAULT_CONTROL_RESULT_PATH_TEMPLATE = "/openclaw/bridge/commands/{commandId}/result"
DEFAULT_CRON_SYNC_PATH = "/openclaw/bridge/cron-sync"
DEFAULT_TELEMETRY_PATH = "/ingest"

# ------------------------------------------------------------------
# Command execution
# ------------------------------------------------------------------

COMMAND_EXEC_TIMEOUT = 30.0
MAX_STDOUT_BYTES = 64 * 1024
MAX_STDERR_BYTES = 16 * 1024

# ------------------------------------------------------------------
# Run detection
# ------------------------------------------------------------------

DEFAULT_OPENCLAW_CLI_ARGS = ("runs", "--json")
RUN_CLI_TIMEOUT = 4.0
RUN_CLI_MAX_OUTPUT_BYTES = 1024 * 1024
RUN_SESSION_CAP = 5000
RUN_SESSION_EVICT_AFTER = 10 * 60.0
