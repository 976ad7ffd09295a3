STATE_DIR_NAME = ".task_orchestrator"
STATE_FILE = "state.yaml"
BACKUP_SUFFIX = ".bak"
LOCK_FILE = "state.lock"
CONFIG_FILE = "config.yaml"
CATALOGUE_FILE = "catalogue.yaml"
HISTORY_SINK_FILE = "history.jsonl"

DEFAULT_PROMPTS_DIR = "docs/prompts"

SCHEMA_VERSION = 1

DEFAULT_HISTORY_MAX_ENTRIES = 1000
DEFAULT_HISTORY_RETAIN_ENTRIES = 1000

DEFAULT_SAVE_RETRIES = 2
DEFAULT_RETRY_BACKOFF_SECONDS = 0.1

DEFAULT_NEXT_LIMIT = 8
DEFAULT_HISTORY_LIMIT = 20
DEFAULT_EXPORT_LIMIT = 20

ROOT_ENV_VAR = "TASK_ORCHESTRATOR_ROOT"
LOG_LEVEL_ENV_VAR = "TASK_ORCHESTRATOR_LOG_LEVEL"

WINDOWS_LOCK_BYTES = 4096
