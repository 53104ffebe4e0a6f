"""
Constants
Centralised storage for record prefixes, container conventions and exit codes.
"""
# ---------------------------------------------------------------------------
# Result channel naming
# ---------------------------------------------------------------------------
RESULT_PREFIX = "testfleet_result"
OUTPUT_PREFIX = "testfleet_output"
TEMP_RECORD_PREFIX = ".testfleet-tmp-"
POOL_STATE_FILENAME = "testfleet_pool.json"
RUN_DIR_PREFIX = "testfleet-run"
LOG_DIR_NAME = "testfleet-logs"

# ---------------------------------------------------------------------------
# Container conventions
# ---------------------------------------------------------------------------
KEEPALIVE_COMMAND = ["sleep", "infinity"]
SOURCE_MOUNT_TARGET = "/workspace"
ARTIFACT_MOUNT_TARGET = "/tmp/build-artifacts"
DEFAULT_TEST_WORKDIR = "/app"
DEFAULT_BUILD_WORKDIR = "/workspace"
RUN_LABEL = "testfleet.run"
UNIT_LABEL = "testfleet.unit"
EXEC_PATH_PREFIX = "/usr/local/cargo/bin:/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# ---------------------------------------------------------------------------
# Memory floors (bytes)
# ---------------------------------------------------------------------------
GIB = 1024 ** 3
MIB = 1024 ** 2
MIN_MEMORY_PER_UNIT_BYTES = 100 * MIB
LOW_MEMORY_WARNING_BYTES = 200 * MIB
FALLBACK_TOTAL_MEMORY_BYTES = 4 * GIB

# ---------------------------------------------------------------------------
# Process exit codes
# ---------------------------------------------------------------------------
EXIT_SUCCESS = 0
EXIT_UNITS_FAILED = 1
EXIT_COULD_NOT_RUN = 2
EXIT_INTERRUPTED = 130
