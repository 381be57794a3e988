"""Define shared constants and defaults for the orchestration engine."""

STATE_DIR_NAME = ".phasegate"
PROJECT_FILE = "project.yaml"
RESULTS_DIR_NAME = "results"
CONFIG_FILE = "config.yaml"
LOCK_FILE = "project.lock"

DOCUMENT_VERSION = 1

DEFAULT_MAX_RETRIES = 2
DEFAULT_MAX_PARALLEL = 2
DEFAULT_STOP_ON_FAILURE = True
DEFAULT_PARALLEL = False
DEFAULT_TIMEOUT_SECONDS = 600
DEFAULT_TASK_COMMAND = "codex exec -"

DEFAULT_BRANCH_PREFIX = "impl"
COMMIT_SUBJECT_MAX_CHARS = 72

# Output excerpts carried into retry context and stored results.
RETRY_OUTPUT_EXCERPT_CHARS = 2000
RESULT_RAW_OUTPUT_MAX_CHARS = 10000
FAILURE_REASON_MAX_CHARS = 500

MIN_USE_CASES = 3

INTERRUPTED_REASON = "Interrupted before completion"

WINDOWS_LOCK_BYTES = 1
