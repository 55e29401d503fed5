"""flowrunner: YAML test-flow execution engine."""

from .aggregator import ResultAggregator, summarize_batches
from .cli import main
from .composer import FlowComposer, FlowReferenceState, StepCounts
from .config import (
    EngineSettings,
    EnvVar,
    FlowConfig,
    FlowInfo,
    TestFlow,
    TestStep,
    discover_flows,
    find_flow_by_name,
    flatten_steps,
    load_env_vars,
    load_flow,
    load_flow_file,
    load_settings,
    parse_flow_document,
    validate_flow_file,
)
from .context import ExecutionContext
from .display import ICONS, console
from .errors import (
    BridgeError,
    CyclicFlowReferenceError,
    FlowError,
    FlowNotFoundError,
    LoadError,
    MaxDepthExceededError,
    PathResolutionAmbiguous,
    RunCancelledError,
    RunInProgressError,
    StepExecutionError,
    StepNetworkError,
    StepTimeoutError,
    VerificationFailure,
)
from .events import parse_event
from .executor import StepExecutor
from .files import FileNode, FileProvider, InMemoryFileProvider, LocalFileProvider
from .line_mapping import map_steps
from .reconciler import FlowPathEntry, FlowPathStack, ProgressReconciler
from .runner import DelegatedRunner, FlowRunner
from .selector import format_flow_list, select_flow_interactive
from .server import Bridge, EventServer, ProcessBridge, RunRequest
from .state import ExecutionStateStore, FileExecutionState
from .types import (
    BatchSummary,
    CancelSignal,
    RequestSnapshot,
    ResponseSnapshot,
    StepResult,
    StepStatus,
    TestResult,
)

__all__ = [
    # CLI
    "main",
    # Config
    "EngineSettings",
    "EnvVar",
    "FlowConfig",
    "FlowInfo",
    "TestFlow",
    "TestStep",
    "discover_flows",
    "find_flow_by_name",
    "flatten_steps",
    "load_env_vars",
    "load_flow",
    "load_flow_file",
    "load_settings",
    "parse_flow_document",
    "validate_flow_file",
    # Context
    "ExecutionContext",
    # Display
    "ICONS",
    "console",
    # Errors
    "BridgeError",
    "CyclicFlowReferenceError",
    "FlowError",
    "FlowNotFoundError",
    "LoadError",
    "MaxDepthExceededError",
    "PathResolutionAmbiguous",
    "RunCancelledError",
    "RunInProgressError",
    "StepExecutionError",
    "StepNetworkError",
    "StepTimeoutError",
    "VerificationFailure",
    # Execution
    "FlowComposer",
    "FlowReferenceState",
    "StepCounts",
    "StepExecutor",
    # Files
    "FileNode",
    "FileProvider",
    "InMemoryFileProvider",
    "LocalFileProvider",
    # Live state
    "ExecutionStateStore",
    "FileExecutionState",
    "FlowPathEntry",
    "FlowPathStack",
    "ProgressReconciler",
    "map_steps",
    "parse_event",
    # Results
    "BatchSummary",
    "CancelSignal",
    "RequestSnapshot",
    "ResponseSnapshot",
    "ResultAggregator",
    "StepResult",
    "StepStatus",
    "TestResult",
    "summarize_batches",
    # Runners
    "DelegatedRunner",
    "FlowRunner",
    # Selector
    "format_flow_list",
    "select_flow_interactive",
    # Server
    "Bridge",
    "EventServer",
    "ProcessBridge",
    "RunRequest",
]
