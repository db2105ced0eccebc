STATE_DIR_NAME = ".autopilot"
MANIFEST_DIR_NAME = "PRD"
MANIFEST_FILE = "manifest.yaml"
LEGACY_MANIFEST_FILE = "manifest.json"
FEATURE_FILE = "feature.md"
PROGRESS_FILE = "progress.yaml"
CONFIG_FILE = "config.yaml"
EVENTS_FILE = "events.jsonl"
LOG_FILE = "autopilot.log"

DEFAULT_MAX_DEPTH = 3
DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_ADJUSTMENTS = 3
DEFAULT_ERROR_THRESHOLD = 2
POLL_INTERVAL_SECONDS = 0.1

ARCHIVE_SUFFIX = "_authored"
SPAWN_TOOL_NAME = "autopilot_spawn_feature"
CHILD_ID_SEPARATOR = "."

# No-work classifications returned by the single-shot loop
NO_WORK_ALL_COMPLETED = "all_completed"
NO_WORK_RUNNING_ELSEWHERE = "running_elsewhere"
NO_WORK_BLOCKED_BY_FAILURES = "blocked_by_failures"
NO_WORK_ALL_BLOCKED = "all_blocked"
NO_WORK_UNKNOWN = "unknown"

DEFAULT_ESCALATE_KEYWORDS = [
    "architect",
    "architecture",
    "architectural",
    "design pattern",
    "system design",
    "api design",
    "refactor",
    "refactoring",
    "trade-off",
    "tradeoff",
    "database schema",
    "schema migration",
    "data model",
    "complex",
    "complexity",
]

DEFAULT_DEESCALATE_KEYWORDS = [
    "test",
    "tests",
    "testing",
    "format",
    "formatting",
    "lint",
    "linting",
    "typo",
    "typos",
    "spelling",
    "comment",
    "comments",
    "documentation",
    "simple",
    "trivial",
    "minor",
]
