STATE_DIR_NAME = ".task_chain"
CONFIG_FILE = "config.yaml"
TASKS_FILE = "tasks.yaml"
TASKS_LOCK_FILE = "tasks.lock"
TEMPLATES_DIR = "templates"

MEMORY_DIR = "memory"
CONTEXTS_DIR = "contexts"
KNOWLEDGE_DIR = "knowledge"
KNOWLEDGE_FILE = "knowledge-base.json"
CHAINS_DIR = "chains"
TEAM_DIR = "team"
DEFAULT_TEAM_ID = "default"

LOCK_TIMEOUT = 30  # seconds

# Fields that may still change once a task is completed
COMPLETED_MUTABLE_FIELDS = {"summary", "status"}

MIN_TITLE_LENGTH = 5
MIN_DESCRIPTION_LENGTH = 20

DEFAULT_PRIORITY = 5
URGENCY_WEIGHTS = {
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}

# Heuristic anchor confidence
HEURISTIC_MAX_CONFIDENCE = 0.8
HEURISTIC_MIN_CONFIDENCE = 0.4
HEURISTIC_TIE_PENALTY = 0.1
APPEND_CONFIDENCE = 0.4

DEFAULT_MAX_RETRIES = 3
DEFAULT_STEP_TIMEOUT_SECONDS = 300.0
DEFAULT_TOTAL_TIMEOUT_SECONDS = 1800.0
DEFAULT_ERROR_STRATEGY = "retry_on_error"
DEFAULT_ENABLE_PARALLEL = False

DEFAULT_MIN_CONFIDENCE = 0.5
AUTO_APPLY_CONFIDENCE = 0.8

DEFAULT_LOG_LEVEL = "INFO"
