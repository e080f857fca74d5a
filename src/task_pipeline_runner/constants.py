STATE_DIR_NAME = ".task_pipeline"
PIPELINE_STATE_FILE = "pipeline-state.json"
CONFIG_FILE = "config.yaml"
ARTIFACTS_DIR = "artifacts"
LOCK_FILE = ".lock"
WORKTREES_DIR_NAME = ".task-pipeline-worktrees"
TASK_BRANCH_PREFIX = "task-"

WINDOWS_LOCK_BYTES = 4096

# Progress in summaries is measured against a fixed pipeline length.
TOTAL_STAGES = 10

DEFAULT_STALE_THRESHOLD_MS = 30 * 60 * 1000
DEFAULT_WATCHDOG_INTERVAL_MS = 60 * 1000
DEFAULT_HEARTBEAT_INTERVAL_MS = 30 * 1000
DEFAULT_MAX_FIX_ATTEMPTS = 3
DEFAULT_COMMAND_TIMEOUT_MS = 5 * 60 * 1000
DEFAULT_WORKER_TIMEOUT_MS = 20 * 60 * 1000
DEFAULT_GIT_TIMEOUT_SECONDS = 60

DEFAULT_WORKER_COMMAND = "claude --dangerously-skip-permissions -"
DEFAULT_BUILD_COMMANDS = ("npm run type-check", "npm run build")
OPTIONAL_BUILD_COMMANDS = ("npm run type-check",)
DEFAULT_TEST_COMMAND = "npm test -- --passWithNoTests"

# Exit code reported for commands killed by a timeout (matches coreutils `timeout`).
TIMEOUT_EXIT_CODE = 124

PROMPT_OUTPUT_MAX_CHARS = 2000
LOG_OUTPUT_MAX_CHARS = 1000

STALE_STAGE_ERROR = "Stage did not complete before crash/timeout"
WATCHDOG_REASON = "Terminated by watchdog"

ERROR_TYPE_DEPENDENCY = "dependency_not_satisfied"
ERROR_TYPE_EXECUTION = "execution_error"
ERROR_TYPE_BUILD_FAILED = "build_failed"
ERROR_TYPE_TESTS_FAILED = "tests_failed"
ERROR_TYPE_WORKER_FAILED = "worker_failed"

TEST_FILE_SUFFIXES = (
    ".test.ts",
    ".spec.ts",
    ".test.tsx",
    ".spec.tsx",
    ".test.js",
    ".spec.js",
    "_test.py",
    "_test.go",
)
TEST_FILE_PREFIXES = ("test_",)
SKIPPED_SEARCH_DIRS = {"node_modules", "dist", "build", "coverage", "__pycache__", ".venv", "venv"}
SOURCE_FILE_EXTENSIONS = {".ts", ".tsx", ".js", ".jsx", ".py", ".go", ".rs"}
