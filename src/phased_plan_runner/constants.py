STATE_DIR_NAME = ".planning"
PHASES_DIR_NAME = "phases"
SUBTASK_PLANS_DIR_NAME = "subtask_plans"
LOGS_DIR_NAME = "logs"
CONFIG_FILE = "config.yaml"
STATE_FILE = "STATE.md"
ISSUES_FILE = "ISSUES.md"

PLAN_MARKER = "PLAN"
SUMMARY_MARKER = "SUMMARY"
CONTEXT_MARKER = "CONTEXT"
DOCUMENT_EXTENSION = ".md"

DEFAULT_STRATEGY = "auto"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_MS = 1000
DEFAULT_VERIFY_TIMEOUT_SECONDS = 60
DEFAULT_MAX_SUBTASKS = 3
DEFAULT_CLEANUP_DAYS = 7

CHECKPOINT_TYPE_PREFIX = "checkpoint:"
DEFAULT_RESUME_SIGNAL = 'Type "approved" to continue'

CHECKPOINT_NOT_APPROVED = "Checkpoint not approved"
NO_RETRYABLE_SUBTASKS = "No retryable subtasks"
SKIPPED_IN_AUTONOMOUS = "Skipped in autonomous mode"
SKIPPED_NOT_DECISION = "Skipped: only decision checkpoints pause in decision mode"
SKIPPED_CANCELLED = "Plan cancelled"

NEXT_STEP_FAILED = "Review failed tasks and retry or defer"
NEXT_STEP_DONE = "Execute next plan or complete phase"
NEXT_STEP_DECISION = "Resolve the pending architectural decision, then re-run the plan"
PLAN_CANCELLED = "Plan was cancelled"

MIN_ACTION_LENGTH = 50
