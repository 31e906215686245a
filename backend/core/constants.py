"""Constants and enums for the workflow execution engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Lifecycle status of a single workflow execution."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.ERROR, ExecutionStatus.STOPPED)


class MemberStatus(str, Enum):
    """Persisted status of one execution tracked by the manager."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"
    CANCELLED = "cancelled"


class PauseReason(str, Enum):
    """Why an execution is paused."""

    BREAKPOINT = "breakpoint"
    WAIT_PAUSE = "wait-pause"


class BreakpointTiming(str, Enum):
    PRE = "pre"
    POST = "post"
    BOTH = "both"


class BreakpointScope(str, Enum):
    ALL = "all"
    MARKED = "marked"


class RetryStrategyType(str, Enum):
    """How a step is retried."""

    COUNT = "count"
    UNTIL_CONDITION = "untilCondition"


class DelayStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class ConditionType(str, Enum):
    """Condition kinds understood by the condition evaluator."""

    SELECTOR = "selector"
    URL = "url"
    JAVASCRIPT = "javascript"
    API_STATUS = "api-status"
    API_JSON_PATH = "api-json-path"
    API_SCRIPT = "api-javascript"


class MatchType(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    REGEX = "regex"


class WaitStrategy(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class WaitTiming(str, Enum):
    BEFORE = "before"
    AFTER = "after"


class OutcomeStatus(str, Enum):
    """Result of a retried or waited step."""

    SUCCESS = "success"
    FAILURE = "failure"
    SUPPRESSED = "suppressed"


class BatchStatus(str, Enum):
    """Batch lifecycle status."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"


class BatchSourceType(str, Enum):
    """Where the workflows of a batch came from."""

    FOLDER = "folder"
    FILES = "files"
    WORKFLOWS = "workflows"


class EventType(str, Enum):
    """Events pushed to the event sink."""

    RUN_START = "run_start"
    RUN_COMPLETE = "run_complete"
    RUN_ERROR = "run_error"
    RUN_STOPPED = "run_stopped"
    STEP_START = "step_start"
    STEP_COMPLETE = "step_complete"
    STEP_BYPASSED = "step_bypassed"
    STEP_ERROR = "step_error"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"
    BATCH_START = "batch_start"
    BATCH_COMPLETE = "batch_complete"
    LOG = "log"


START_NODE_TYPE = "start"
PROPERTY_INPUT_SUFFIX = "-input"
DEFAULT_API_CONTEXT_KEY = "apiResponse"
DEFAULT_OUTPUT_HANDLE = "output"

# Control-flow node types the executor handles after their step runs
SWITCH_NODE_TYPE = "switch.switch"
LOOP_NODE_TYPE = "loop"
SWITCH_OUTPUT_KEY = "switchOutput"
DEFAULT_LOOP_MAX_ITERATIONS = 1000


class LoopMode(str, Enum):
    FOR_EACH = "forEach"
    DO_WHILE = "doWhile"
