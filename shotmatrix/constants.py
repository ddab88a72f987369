from __future__ import annotations

PACKAGE_VERSION = "0.1.0"

DEFAULT_BASE_PORT = 4723
DEFAULT_PORT_OFFSET = 10
MAX_PORT_OFFSET = 100
MIN_TCP_PORT = 1024
MAX_TCP_PORT = 65535
PORTS_PER_JOB = 3

DEFAULT_ELEMENT_TIMEOUT_SECONDS = 10.0
DEFAULT_DISMISSOR_TIMEOUT_SECONDS = 2.0
DEFAULT_DISMISSOR_DELAY_SECONDS = 0.5
DEFAULT_WAIT_SECONDS = 1.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_ORIENTATION_SETTLE_SECONDS = 1.0
DEFAULT_DEVICE_OPERATION_TIMEOUT_SECONDS = 300.0
DEFAULT_DEVICE_POLL_SECONDS = 2.0

MAX_DEVICE_LOG_BYTES = 50_000
LOG_TRUNCATION_MARKER = "... (truncated) ...\n"

REGISTRY_DRAIN_TIMEOUT_SECONDS = 30.0
ESTIMATED_MINUTES_PER_JOB = 2.0

DEFAULT_FAILURE_ARTIFACTS_DIR = "failure_artifacts"
JOB_LOG_FILENAME = "job.log"
MANIFEST_FILENAME = "run_manifest.json"
SUMMARY_FILENAME = "run_summary.txt"

PLATFORM_FOLDERS = {
    "ios": "iOS",
    "android": "Android",
}
