#!/usr/bin/env python3
"""
Task Runner for plan-shell
Resolves plans with choice points into a concrete task list and runs the
resulting shell commands one at a time, with live progress and cancellation.

This module holds no CLI of its own. scripts/plan-shell.py (and the tests)
load it through importlib because of the hyphen in the filename:

    spec = importlib.util.spec_from_file_location(
        "task_runner", "scripts/task-runner.py"
    )
"""

import os
import random
import re
import signal
import subprocess
import threading
import time
import types
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

# ─── Configuration ────────────────────────────────────────────────────

MAX_OUTPUT_LINES = 128  # retained per stream per command
POLL_INTERVAL_SECONDS = 0.1
SIGKILL_GRACE_SECONDS = 3
READER_JOIN_TIMEOUT_SECONDS = 5
ELAPSED_UPDATE_INTERVAL_SECONDS = 1.0

# Printed after every command so the resulting working directory can be read back
PWD_MARKER = "__PWD_MARKER_7x9k2m__"

DEFAULT_SUMMARY_TEXT = "Execution completed"
DEFAULT_FAILURE_TEXT = "Command failed"
ABORTED_ERROR_TEXT = "Aborted"

OPERATION_TASK_SELECTION = "task selection"
OPERATION_EXECUTION = "execution"

PLACEHOLDER_PATTERN = re.compile(r"\{([^}]+)\}")
SLUG_SEPARATOR_PATTERN = re.compile(r"[^\w./-]+")

# Environment variables to strip from spawned shells
STRIPPED_ENV_VARS = ["CLAUDECODE"]

# Global verbose flag (set by plan-shell.py)
VERBOSE = False

_RUNNER_PID = os.getpid()


# ─── Logging ──────────────────────────────────────────────────────────


def log(message: str) -> None:
    """Print a timestamped log message."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [TASK-RUNNER:{_RUNNER_PID}] {message}", flush=True)


def verbose_log(message: str, prefix: str = "VERBOSE") -> None:
    """Print a verbose log message if verbose mode is enabled."""
    if VERBOSE:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        print(f"[{timestamp}] [{prefix}] {message}", flush=True)


# ─── Errors ───────────────────────────────────────────────────────────


class TaskRunnerError(Exception):
    """Base class for errors raised while planning or running tasks."""


class PlanningValidationError(TaskRunnerError):
    """The planning oracle returned a response with a missing or invalid field."""


class PlaceholderResolutionError(TaskRunnerError):
    """A command still contains {placeholder} tokens after substitution."""

    def __init__(self, tokens: list[str], command: str):
        self.tokens = list(tokens)
        self.command = command
        super().__init__(
            f"Unresolved placeholder(s) {', '.join(self.tokens)} in command: {command}"
        )


class ExecutionError(TaskRunnerError):
    """An executor could not run a command at all."""


class AbortSignal(TaskRunnerError):
    """The user cancelled an operation. This is not a failure."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} aborted")


class CancellationToken:
    """Cooperative cancellation flag shared by the engines and their callers.

    Producers (a SIGINT handler, a stop-file watcher, a test) call cancel();
    the engines check is_cancelled before dispatching work and the real
    executor terminates its running process when it sees the flag.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            self.reason = reason
            verbose_log(f"Cancellation requested{': ' + reason if reason else ''}", "STOP")
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Block up to timeout seconds. Returns True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, operation: str) -> None:
        if self._event.is_set():
            raise AbortSignal(operation)


# ─── Task Model ───────────────────────────────────────────────────────


class TaskType(str, Enum):
    """Discriminant of a planned task."""
    EXECUTE = "execute"
    DEFINE = "define"
    SELECT = "select"
    GROUP = "group"
    IGNORE = "ignore"
    DISCARD = "discard"
    ANSWER = "answer"
    INTROSPECT = "introspect"
    REPORT = "report"
    SCHEDULE = "schedule"
    CONFIG = "config"
    PLAN = "plan"


# How each task variant is handled by the engines. Every TaskType must appear.
CATEGORY_EXECUTABLE = "executable"
CATEGORY_CHOICE = "choice"
CATEGORY_CONTAINER = "container"
CATEGORY_DROPPED = "dropped"
CATEGORY_INFORMATIONAL = "informational"

TASK_CATEGORIES: dict[TaskType, str] = {
    TaskType.EXECUTE: CATEGORY_EXECUTABLE,
    TaskType.SELECT: CATEGORY_EXECUTABLE,
    TaskType.DEFINE: CATEGORY_CHOICE,
    TaskType.GROUP: CATEGORY_CONTAINER,
    TaskType.IGNORE: CATEGORY_DROPPED,
    TaskType.DISCARD: CATEGORY_DROPPED,
    TaskType.ANSWER: CATEGORY_INFORMATIONAL,
    TaskType.INTROSPECT: CATEGORY_INFORMATIONAL,
    TaskType.REPORT: CATEGORY_INFORMATIONAL,
    TaskType.SCHEDULE: CATEGORY_INFORMATIONAL,
    TaskType.CONFIG: CATEGORY_INFORMATIONAL,
    TaskType.PLAN: CATEGORY_INFORMATIONAL,
}

_unhandled_task_types = set(TaskType) - set(TASK_CATEGORIES)
if _unhandled_task_types:
    raise RuntimeError(f"Task types without a handling category: {sorted(_unhandled_task_types)}")


def task_category(task_type: TaskType) -> str:
    """Return the handling category for a task type."""
    return TASK_CATEGORIES[task_type]


def slugify_action(text: str) -> str:
    """Turn a user-facing phrase into a lower-case, hyphenated action.

    Only used for bare option phrases that carry no separate command.
    """
    slug = SLUG_SEPARATOR_PATTERN.sub("-", text.strip().lower())
    return re.sub(r"-{2,}", "-", slug).strip("-")


@dataclass(frozen=True)
class RefinementOption:
    """One mutually exclusive alternative of a Define task.

    name is for display only; command is what ends up being executed.
    """
    name: str
    command: str

    @classmethod
    def from_raw(cls, raw: Any, task_index: int = 0, option_index: int = 0) -> "RefinementOption":
        if isinstance(raw, str) and raw.strip():
            return cls(name=raw, command=slugify_action(raw))
        if isinstance(raw, dict):
            name = raw.get("name")
            command = raw.get("command")
            if isinstance(name, str) and name.strip():
                if isinstance(command, str) and command.strip():
                    return cls(name=name, command=command)
                if command is None:
                    return cls(name=name, command=slugify_action(name))
        raise PlanningValidationError(
            f"Invalid option {option_index} of task at index {task_index}: "
            f"expected a string or an object with 'name' and 'command'"
        )

    def to_dict(self) -> dict:
        return {"name": self.name, "command": self.command}


@dataclass(frozen=True)
class Task:
    """A planned step. Immutable once parsed from an oracle response."""
    action: str
    type: TaskType
    config: tuple = ()
    params: dict = field(default_factory=dict, hash=False)
    subtasks: tuple = ()

    def __post_init__(self):
        # Read-only view so the task cannot change after parsing
        object.__setattr__(self, "params", types.MappingProxyType(dict(self.params)))

    @classmethod
    def from_dict(cls, data: Any, index: int = 0) -> "Task":
        """Parse and validate one task object from an oracle response."""
        if not isinstance(data, dict):
            raise PlanningValidationError(f"Invalid task at index {index}: expected an object")

        action = data.get("action")
        if not action or not isinstance(action, str):
            raise PlanningValidationError(
                f"Invalid task at index {index}: missing or invalid 'action' field"
            )

        try:
            task_type = TaskType(data.get("type"))
        except ValueError:
            raise PlanningValidationError(
                f"Invalid task at index {index}: missing or invalid 'type' field"
            ) from None

        config = data.get("config") or []
        if not isinstance(config, list) or not all(isinstance(c, str) for c in config):
            raise PlanningValidationError(
                f"Invalid task at index {index}: 'config' must be a list of strings"
            )

        params = data.get("params") or {}
        if not isinstance(params, dict):
            raise PlanningValidationError(
                f"Invalid task at index {index}: 'params' must be an object"
            )

        raw_subtasks = data.get("subtasks") or []
        if not isinstance(raw_subtasks, list):
            raise PlanningValidationError(
                f"Invalid task at index {index}: 'subtasks' must be a list"
            )
        subtasks = tuple(cls.from_dict(sub, i) for i, sub in enumerate(raw_subtasks))

        task = cls(
            action=action,
            type=task_type,
            config=tuple(config),
            params=dict(params),
            subtasks=subtasks,
        )
        if task_type == TaskType.DEFINE:
            raw_options = params.get("options")
            if not isinstance(raw_options, list) or not raw_options:
                raise PlanningValidationError(
                    f"Invalid task at index {index}: define task needs a non-empty 'options' list"
                )
            for option_index, raw in enumerate(raw_options):
                RefinementOption.from_raw(raw, index, option_index)
        return task

    def to_dict(self) -> dict:
        data: dict = {"action": self.action, "type": self.type.value, "config": list(self.config)}
        if self.params:
            data["params"] = dict(self.params)
        if self.subtasks:
            data["subtasks"] = [sub.to_dict() for sub in self.subtasks]
        return data

    @property
    def options(self) -> tuple:
        """The RefinementOptions of a Define task (empty for other variants)."""
        if self.type != TaskType.DEFINE:
            return ()
        raw_options = self.params.get("options") or []
        return tuple(RefinementOption.from_raw(raw, 0, i) for i, raw in enumerate(raw_options))

    @property
    def default_option(self) -> Optional[int]:
        """Index of the option to highlight first, if the plan suggests one."""
        default = self.params.get("default")
        if isinstance(default, bool) or not isinstance(default, int):
            return None
        if 0 <= default < len(self.options):
            return default
        return None


def flatten_tasks(tasks) -> list[Task]:
    """Replace Group tasks with their subtasks (recursively) and drop Ignore/Discard."""
    flat: list[Task] = []
    for task in tasks:
        category = task_category(task.type)
        if category == CATEGORY_DROPPED:
            continue
        if category == CATEGORY_CONTAINER:
            flat.extend(flatten_tasks(task.subtasks))
            continue
        flat.append(task)
    return flat


def has_define_tasks(tasks) -> bool:
    return any(task.type == TaskType.DEFINE for task in flatten_tasks(tasks))


def executable_tasks(tasks) -> list[Task]:
    """Flattened tasks that can be turned into shell commands."""
    return [t for t in flatten_tasks(tasks) if task_category(t.type) == CATEGORY_EXECUTABLE]


@dataclass(frozen=True)
class ExecutionCommand:
    """A concrete shell command ready for the Execution Engine."""
    description: str
    command: str
    workdir: Optional[str] = None
    timeout_ms: Optional[int] = None
    critical: bool = True

    @classmethod
    def from_dict(cls, data: Any, index: int = 0) -> "ExecutionCommand":
        if not isinstance(data, dict):
            raise PlanningValidationError(f"Invalid command at index {index}: expected an object")
        for key in ("description", "command"):
            value = data.get(key)
            if not value or not isinstance(value, str):
                raise PlanningValidationError(
                    f"Invalid command at index {index}: missing or invalid '{key}' field"
                )
        timeout = data.get("timeoutMs", data.get("timeout"))
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float))):
            raise PlanningValidationError(
                f"Invalid command at index {index}: 'timeout' must be a number of milliseconds"
            )
        workdir = data.get("workdir")
        if workdir is not None and not isinstance(workdir, str):
            raise PlanningValidationError(
                f"Invalid command at index {index}: 'workdir' must be a string"
            )
        return cls(
            description=data["description"],
            command=data["command"],
            workdir=workdir or None,
            timeout_ms=int(timeout) if timeout is not None else None,
            critical=data.get("critical") is not False,
        )

    def to_dict(self) -> dict:
        data: dict = {"description": self.description, "command": self.command}
        if self.workdir:
            data["workdir"] = self.workdir
        if self.timeout_ms is not None:
            data["timeoutMs"] = self.timeout_ms
        if not self.critical:
            data["critical"] = False
        return data


def tasks_to_commands(tasks) -> list[ExecutionCommand]:
    """Build execution commands from refined tasks.

    For executable tasks the action is the literal shell command.
    """
    commands = []
    for task in executable_tasks(tasks):
        commands.append(ExecutionCommand(
            description=task.action,
            command=task.action,
            critical=task.params.get("critical") is not False,
        ))
    return commands


# ─── Oracle Responses ─────────────────────────────────────────────────


class ToolKind(str, Enum):
    """What the planning oracle is asked to produce."""
    PLAN = "plan"
    EXECUTE = "execute"
    ANSWER = "answer"
    INTROSPECT = "introspect"


class CapabilityOrigin(str, Enum):
    SYSTEM = "system"
    BUILTIN = "builtin"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Capability:
    name: str
    description: str
    origin: CapabilityOrigin


@dataclass(frozen=True)
class OracleResponse:
    """Validated response of the planning oracle."""
    message: str
    summary: str = ""
    tasks: tuple = ()
    commands: tuple = ()
    question: Optional[str] = None
    answer: Optional[str] = None
    capabilities: tuple = ()
    debug: tuple = ()


def _require_string(payload: dict, key: str, allow_empty: bool = False) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or (not allow_empty and not value):
        raise PlanningValidationError(f"Invalid tool response: missing or invalid {key} field")
    return value


def validate_oracle_response(tool_kind: ToolKind, payload: Any) -> OracleResponse:
    """Check the shape of an oracle payload for the given tool kind.

    Raises PlanningValidationError naming the first missing or invalid field.
    """
    tool_kind = ToolKind(tool_kind)
    if not isinstance(payload, dict):
        raise PlanningValidationError("Invalid tool response: expected a JSON object")

    debug = payload.get("debug") or []
    debug = tuple(debug) if isinstance(debug, list) else ()
    summary = payload.get("summary") or ""
    if not isinstance(summary, str):
        raise PlanningValidationError("Invalid tool response: missing or invalid summary field")

    if tool_kind == ToolKind.ANSWER:
        return OracleResponse(
            message=payload.get("message") if isinstance(payload.get("message"), str) else "",
            question=_require_string(payload, "question"),
            answer=_require_string(payload, "answer"),
            debug=debug,
        )

    message = _require_string(payload, "message", allow_empty=True)

    if tool_kind == ToolKind.INTROSPECT:
        raw_capabilities = payload.get("capabilities")
        if not isinstance(raw_capabilities, list):
            raise PlanningValidationError(
                "Invalid tool response: missing or invalid capabilities array"
            )
        capabilities = []
        for i, entry in enumerate(raw_capabilities):
            if not isinstance(entry, dict):
                raise PlanningValidationError(f"Invalid capability at index {i}: expected an object")
            for key in ("name", "description"):
                if not isinstance(entry.get(key), str) or not entry.get(key):
                    raise PlanningValidationError(
                        f"Invalid capability at index {i}: missing or invalid '{key}' field"
                    )
            try:
                origin = CapabilityOrigin(entry.get("origin"))
            except ValueError:
                raise PlanningValidationError(
                    f"Invalid capability at index {i}: missing or invalid 'origin' field "
                    f"(expected one of {', '.join(o.value for o in CapabilityOrigin)})"
                ) from None
            capabilities.append(Capability(entry["name"], entry["description"], origin))
        return OracleResponse(
            message=message, summary=summary, capabilities=tuple(capabilities), debug=debug
        )

    if tool_kind == ToolKind.EXECUTE:
        raw_commands = payload.get("commands")
        if not isinstance(raw_commands, list):
            raise PlanningValidationError("Invalid tool response: missing or invalid commands array")
        commands = tuple(ExecutionCommand.from_dict(c, i) for i, c in enumerate(raw_commands))
        return OracleResponse(message=message, summary=summary, commands=commands, debug=debug)

    raw_tasks = payload.get("tasks")
    if not isinstance(raw_tasks, list):
        raise PlanningValidationError("Invalid tool response: missing or invalid tasks array")
    tasks = tuple(Task.from_dict(t, i) for i, t in enumerate(raw_tasks))
    commands: tuple = ()
    if payload.get("commands") is not None:
        if not isinstance(payload["commands"], list):
            raise PlanningValidationError("Invalid tool response: missing or invalid commands array")
        commands = tuple(ExecutionCommand.from_dict(c, i) for i, c in enumerate(payload["commands"]))
    return OracleResponse(message=message, summary=summary, tasks=tasks, commands=commands, debug=debug)


# ─── Placeholder Resolver ─────────────────────────────────────────────


@dataclass(frozen=True)
class PlaceholderInfo:
    """A {dotted.path} token found in a command or action."""
    original: str
    path: tuple
    variant_index: Optional[int] = None

    @property
    def has_variant(self) -> bool:
        return self.variant_index is not None


def _is_variant_component(part: str) -> bool:
    return part == part.upper() and part != part.lower()


def extract_placeholders(text: str) -> list[PlaceholderInfo]:
    """Return every {a.b.c} token in text, in order."""
    placeholders = []
    for match in PLACEHOLDER_PATTERN.finditer(text):
        path = tuple(match.group(1).split("."))
        variant_index = next((i for i, part in enumerate(path) if _is_variant_component(part)), None)
        placeholders.append(PlaceholderInfo(match.group(0), path, variant_index))
    return placeholders


def has_placeholders(text: str) -> bool:
    return PLACEHOLDER_PATTERN.search(text) is not None


def resolve_variant(path, variant: str) -> tuple:
    """Replace the upper-case (variant) components of a path with variant."""
    return tuple(variant if _is_variant_component(part) else part for part in path)


def lookup_config_value(context: dict, path) -> Optional[str]:
    """Walk a nested mapping by path and return the scalar there as a string."""
    current: Any = context
    for part in path:
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    if isinstance(current, bool):
        return "true" if current else "false"
    if isinstance(current, (str, int, float)):
        return str(current)
    return None


def resolve(command: str, context: Optional[dict], strict: bool = False) -> str:
    """Substitute {dotted.path} tokens in command with values from context.

    Tokens whose path is absent are left untouched. With strict=True the
    result is also passed through assert_fully_resolved().
    """
    context = context or {}

    def _replace(match: re.Match) -> str:
        value = lookup_config_value(context, match.group(1).split("."))
        return match.group(0) if value is None else value

    resolved = PLACEHOLDER_PATTERN.sub(_replace, command)
    if strict:
        assert_fully_resolved(resolved, command)
    return resolved


def assert_fully_resolved(resolved: str, original: str) -> None:
    """Raise PlaceholderResolutionError listing every {token} left in resolved."""
    tokens: list[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(resolved):
        if match.group(0) not in tokens:
            tokens.append(match.group(0))
    if tokens:
        raise PlaceholderResolutionError(tokens, original)


def get_required_config_paths(text: str) -> list[str]:
    """Unique dotted config paths referenced by non-variant placeholders."""
    paths: list[str] = []
    for placeholder in extract_placeholders(text):
        dotted = ".".join(placeholder.path)
        if not placeholder.has_variant and dotted not in paths:
            paths.append(dotted)
    return paths


def find_missing_config(tasks, context: Optional[dict]) -> list[str]:
    """Dotted config paths referenced by task actions but absent from context."""
    context = context or {}
    missing: list[str] = []
    for task in flatten_tasks(tasks):
        for dotted in get_required_config_paths(task.action):
            if dotted in missing:
                continue
            if lookup_config_value(context, dotted.split(".")) is None:
                missing.append(dotted)
    return missing


# ─── Command Executors ────────────────────────────────────────────────


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.SUCCESS,
    ExecutionStatus.FAILED,
    ExecutionStatus.ABORTED,
    ExecutionStatus.CANCELLED,
})


class ExecutionResult(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass(frozen=True)
class CommandOutput:
    """Outcome of running one command."""
    description: str
    command: str
    output: str
    errors: str
    result: ExecutionResult
    error: Optional[str] = None
    workdir: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result == ExecutionResult.SUCCESS


def format_duration(ms: float) -> str:
    """Format milliseconds as e.g. '1 hour 2 minutes 5 seconds'."""
    total_seconds = int(ms // 1000)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours} {'hour' if hours == 1 else 'hours'}")
    if minutes > 0:
        parts.append(f"{minutes} {'minute' if minutes == 1 else 'minutes'}")
    if seconds > 0 or not parts:
        parts.append(f"{seconds} {'second' if seconds == 1 else 'seconds'}")
    return " ".join(parts)


class LineBuffer:
    """Keeps only the last max_lines lines written to a stream.

    Chunks may split lines anywhere; an unterminated tail is held as a
    partial line and still shows up when reading.
    """

    def __init__(self, max_lines: int = MAX_OUTPUT_LINES):
        self.max_lines = max_lines
        self.lines: deque = deque(maxlen=max_lines)
        self.partial = ""
        self.bytes_received = 0
        self._lock = threading.Lock()

    def push(self, data: str) -> None:
        with self._lock:
            self.bytes_received += len(data.encode("utf-8"))
            parts = (self.partial + data).split("\n")
            self.partial = parts.pop()
            self.lines.extend(parts)

    def get_lines(self, n: Optional[int] = None) -> list[str]:
        with self._lock:
            lines = list(self.lines)
            if self.partial:
                lines.append(self.partial)
        lines = lines[-self.max_lines:]
        return lines if n is None else lines[-n:]

    def get_text(self) -> str:
        return "\n".join(self.get_lines())


OutputSink = Callable[[str, str], None]
ProgressCallback = Callable[[ExecutionStatus], None]


class Executor:
    """Runs one command to completion.

    Subclasses implement execute(). The engine installs an output sink and a
    cancellation token before each run.
    """

    def __init__(self, output_sink: Optional[OutputSink] = None,
                 cancel_token: Optional[CancellationToken] = None):
        self.output_sink = output_sink
        self.cancel_token = cancel_token

    def set_output_sink(self, sink: Optional[OutputSink]) -> None:
        self.output_sink = sink

    def set_cancel_token(self, token: Optional[CancellationToken]) -> None:
        self.cancel_token = token

    def _emit(self, data: str, stream: str) -> None:
        if self.output_sink is not None:
            self.output_sink(data, stream)

    def execute(self, cmd: ExecutionCommand, on_progress: Optional[ProgressCallback] = None,
                index: int = 0) -> CommandOutput:
        raise NotImplementedError


def default_delay_generator(index: int) -> float:
    """Synthetic delay in milliseconds, growing with the task index."""
    return (3 ** (index + 1) * max(random.random(), random.random()) + 1) * 1000


class DummyExecutor(Executor):
    """Executor double returning mocked results after a synthetic delay."""

    def __init__(self, delay_generator: Callable[[int], float] = default_delay_generator,
                 output_sink: Optional[OutputSink] = None,
                 cancel_token: Optional[CancellationToken] = None):
        super().__init__(output_sink, cancel_token)
        self.delay_generator = delay_generator
        self.mocked_responses: dict[str, dict] = {}
        self.mocked_failures: dict[str, str] = {}
        self.executed: list[str] = []

    def mock(self, command: str, **response) -> None:
        """Set the result fields (output, errors, result, error, workdir) for a command."""
        self.mocked_responses[command] = response

    def mock_failure(self, command: str, message: str) -> None:
        """Make execute() raise ExecutionError for a command."""
        self.mocked_failures[command] = message

    def clear_mocks(self) -> None:
        self.mocked_responses.clear()
        self.mocked_failures.clear()

    def execute(self, cmd, on_progress=None, index=0):
        self.executed.append(cmd.command)
        if on_progress:
            on_progress(ExecutionStatus.RUNNING)

        delay_seconds = self.delay_generator(index) / 1000
        aborted = False
        if delay_seconds > 0:
            if self.cancel_token is not None:
                aborted = self.cancel_token.wait(delay_seconds)
            else:
                time.sleep(delay_seconds)

        if cmd.command in self.mocked_failures:
            if on_progress:
                on_progress(ExecutionStatus.FAILED)
            raise ExecutionError(self.mocked_failures[cmd.command])

        mocked = self.mocked_responses.get(cmd.command, {})
        output = mocked.get("output", "")
        errors = mocked.get("errors", "")
        if output:
            self._emit(output, "stdout")
        if errors:
            self._emit(errors, "stderr")

        result = ExecutionResult(mocked.get("result", ExecutionResult.SUCCESS))
        error = mocked.get("error")
        if aborted:
            result, error = ExecutionResult.ABORTED, ABORTED_ERROR_TEXT

        command_output = CommandOutput(
            description=cmd.description,
            command=cmd.command,
            output=output,
            errors=errors,
            result=result,
            error=error,
            workdir=mocked.get("workdir"),
        )
        if on_progress:
            on_progress(ExecutionStatus.SUCCESS if command_output.succeeded else ExecutionStatus.FAILED)
        return command_output


def build_child_env() -> dict[str, str]:
    """Build a clean environment for spawned shells."""
    env = os.environ.copy()
    for var in STRIPPED_ENV_VARS:
        env.pop(var, None)
    return env


def wrap_command(command: str) -> str:
    """Append the marker and a pwd call, preserving the command's exit code."""
    return (
        f"{command}\n"
        f'__exit=$?; printf "\\n%s\\n" "{PWD_MARKER}"; pwd; exit $__exit'
    )


def stream_stdout(pipe, buffer: LineBuffer, emit: OutputSink, capture: dict) -> None:
    """Stream stdout line by line, splitting off the marker and the pwd after it.

    A blank line directly before the marker comes from the wrapper and is
    dropped. The directory printed after the marker is stored in capture.
    """
    held_blank = False
    try:
        for line in iter(pipe.readline, ""):
            if capture.get("marker_seen"):
                if line.strip() and "workdir" not in capture:
                    capture["workdir"] = line.strip()
                continue
            if line.rstrip("\n") == PWD_MARKER:
                capture["marker_seen"] = True
                continue
            if held_blank:
                buffer.push("\n")
                emit("\n", "stdout")
                held_blank = False
            if line == "\n":
                held_blank = True
                continue
            buffer.push(line)
            emit(line, "stdout")
    except Exception as e:
        verbose_log(f"Error streaming stdout: {e}", "ERROR")


def stream_stderr(pipe, buffer: LineBuffer, emit: OutputSink) -> None:
    """Stream stderr line by line into buffer and the sink."""
    try:
        for line in iter(pipe.readline, ""):
            buffer.push(line)
            emit(line, "stderr")
    except Exception as e:
        verbose_log(f"Error streaming stderr: {e}", "ERROR")


class RealExecutor(Executor):
    """Runs commands through /bin/sh and captures their output."""

    def _terminate(self, process: subprocess.Popen) -> None:
        """SIGTERM the command's process group, escalating to SIGKILL."""
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            return
        try:
            process.wait(timeout=SIGKILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            verbose_log(f"PID {process.pid} ignored SIGTERM, killing", "EXEC")
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            process.wait()

    def execute(self, cmd, on_progress=None, index=0):
        if on_progress:
            on_progress(ExecutionStatus.RUNNING)

        cwd = cmd.workdir or os.getcwd()
        verbose_log(f"[{index}] {cmd.command} (cwd={cwd})", "EXEC")

        stdout_buffer = LineBuffer()
        stderr_buffer = LineBuffer()
        capture: dict = {}

        try:
            process = subprocess.Popen(
                wrap_command(cmd.command),
                shell=True,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=build_child_env(),
                start_new_session=True,
            )
        except OSError as e:
            verbose_log(f"Failed to spawn: {e}", "EXEC")
            if on_progress:
                on_progress(ExecutionStatus.FAILED)
            return CommandOutput(
                description=cmd.description,
                command=cmd.command,
                output="",
                errors=str(e),
                result=ExecutionResult.ERROR,
                error=str(e),
            )

        stdout_thread = threading.Thread(
            target=stream_stdout,
            args=(process.stdout, stdout_buffer, self._emit, capture),
            daemon=True,
        )
        stderr_thread = threading.Thread(
            target=stream_stderr,
            args=(process.stderr, stderr_buffer, self._emit),
            daemon=True,
        )
        stdout_thread.start()
        stderr_thread.start()

        start_time = time.monotonic()
        timed_out = False
        aborted = False
        while True:
            try:
                process.wait(timeout=POLL_INTERVAL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                pass
            if self.cancel_token is not None and self.cancel_token.is_cancelled:
                verbose_log(f"Cancelling PID {process.pid}", "EXEC")
                aborted = True
                self._terminate(process)
                break
            elapsed_ms = (time.monotonic() - start_time) * 1000
            if cmd.timeout_ms and elapsed_ms > cmd.timeout_ms:
                verbose_log(f"TIMEOUT after {cmd.timeout_ms} ms: {cmd.command}", "EXEC")
                timed_out = True
                self._terminate(process)
                break

        returncode = process.wait()
        stdout_thread.join(timeout=READER_JOIN_TIMEOUT_SECONDS)
        stderr_thread.join(timeout=READER_JOIN_TIMEOUT_SECONDS)
        verbose_log(
            f"[{index}] exit={returncode} ({stdout_buffer.bytes_received:,} bytes out, "
            f"{stderr_buffer.bytes_received:,} bytes err)", "EXEC"
        )

        if aborted:
            result, error = ExecutionResult.ABORTED, ABORTED_ERROR_TEXT
        elif timed_out:
            result, error = ExecutionResult.ERROR, f"Timed out after {cmd.timeout_ms} ms"
        elif returncode != 0:
            result, error = ExecutionResult.ERROR, f"Exit code: {returncode}"
        else:
            result, error = ExecutionResult.SUCCESS, None

        command_output = CommandOutput(
            description=cmd.description,
            command=cmd.command,
            output=stdout_buffer.get_text(),
            errors=stderr_buffer.get_text(),
            result=result,
            error=error,
            workdir=capture.get("workdir"),
        )
        if on_progress:
            on_progress(ExecutionStatus.SUCCESS if command_output.succeeded else ExecutionStatus.FAILED)
        return command_output


# ─── Refinement Engine ────────────────────────────────────────────────


class RefinementPhase(str, Enum):
    IDLE = "idle"
    AWAITING_SELECTION = "awaiting_selection"
    CONFIRMED = "confirmed"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True)
class RefinementState:
    highlighted_index: Optional[int]
    current_group_index: int
    completed_selections: tuple
    phase: RefinementPhase


class RefinementEngine:
    """Walks the Define groups of a plan and resolves each to one Execute task.

    Transitions happen only through start(), move_down(), move_up(),
    confirm() and abort(); each returns a RefinementState snapshot. Once the
    engine reaches DONE or ABORTED every further input is ignored.
    """

    def __init__(self, on_completed: Optional[Callable[[list], None]] = None,
                 on_aborted: Optional[Callable[[str], None]] = None):
        self.on_completed = on_completed
        self.on_aborted = on_aborted
        self.tasks: list[Task] = []
        self.group_positions: list[int] = []
        self.selections: list[int] = []
        self.resolved_tasks: Optional[list[Task]] = None
        self._highlighted: Optional[int] = None
        self._group_index = 0
        self._completed: list[str] = []
        self._phase = RefinementPhase.IDLE
        self._started = False

    # --- Queries ---

    def snapshot(self) -> RefinementState:
        return RefinementState(
            highlighted_index=self._highlighted,
            current_group_index=self._group_index,
            completed_selections=tuple(self._completed),
            phase=self._phase,
        )

    @property
    def phase(self) -> RefinementPhase:
        return self._phase

    @property
    def is_finished(self) -> bool:
        return self._phase in (RefinementPhase.DONE, RefinementPhase.ABORTED)

    @property
    def current_task(self) -> Optional[Task]:
        if not self._started or self.is_finished or not self.group_positions:
            return None
        return self.tasks[self.group_positions[self._group_index]]

    @property
    def current_options(self) -> tuple:
        task = self.current_task
        return task.options if task else ()

    def _accepts_input(self) -> bool:
        return self._started and not self.is_finished and bool(self.group_positions)

    # --- Transitions ---

    def start(self, tasks) -> RefinementState:
        """Flatten the plan and present the first Define group, or finish at once."""
        self.tasks = flatten_tasks(tasks)
        self.group_positions = [i for i, t in enumerate(self.tasks) if t.type == TaskType.DEFINE]
        self.selections = []
        self.resolved_tasks = None
        self._completed = []
        self._group_index = 0
        self._started = True
        verbose_log(
            f"Starting refinement: {len(self.tasks)} tasks, {len(self.group_positions)} choice groups",
            "REFINE",
        )

        if not self.group_positions:
            self._highlighted = None
            self._finish(list(self.tasks))
            return self.snapshot()

        self._present_group(0)
        return self.snapshot()

    def move_down(self) -> RefinementState:
        return self._move(1)

    def move_up(self) -> RefinementState:
        return self._move(-1)

    def _move(self, step: int) -> RefinementState:
        if not self._accepts_input():
            return self.snapshot()
        count = len(self.current_options)
        if count == 0:
            return self.snapshot()
        if self._highlighted is None:
            self._highlighted = 0 if step > 0 else count - 1
        else:
            self._highlighted = (self._highlighted + step) % count
        self._phase = RefinementPhase.AWAITING_SELECTION
        verbose_log(f"Group {self._group_index}: highlighted option {self._highlighted}", "REFINE")
        return self.snapshot()

    def confirm(self) -> RefinementState:
        """Accept the highlighted option. Does nothing while nothing is highlighted."""
        if not self._accepts_input() or self._highlighted is None:
            return self.snapshot()

        option = self.current_options[self._highlighted]
        self.selections.append(self._highlighted)
        self._completed.append(option.command)
        self._phase = RefinementPhase.CONFIRMED
        verbose_log(f"Group {self._group_index}: confirmed '{option.name}' -> {option.command}", "REFINE")

        if self._group_index < len(self.group_positions) - 1:
            self._present_group(self._group_index + 1)
            return self.snapshot()

        self._highlighted = None
        self._finish(self._build_resolved_tasks())
        return self.snapshot()

    def abort(self) -> RefinementState:
        """Cancel task selection, keeping the highlighted choice best-effort."""
        if self.is_finished:
            return self.snapshot()
        if self._accepts_input() and self._highlighted is not None:
            self._completed.append(self.current_options[self._highlighted].command)
        self._phase = RefinementPhase.ABORTED
        verbose_log("Task selection aborted", "REFINE")
        if self.on_aborted:
            self.on_aborted(OPERATION_TASK_SELECTION)
        return self.snapshot()

    # --- Internals ---

    def _present_group(self, group_index: int) -> None:
        self._group_index = group_index
        task = self.tasks[self.group_positions[group_index]]
        self._highlighted = task.default_option
        self._phase = (
            RefinementPhase.IDLE if self._highlighted is None else RefinementPhase.AWAITING_SELECTION
        )
        verbose_log(
            f"Presenting group {group_index}: '{task.action}' ({len(task.options)} options)", "REFINE"
        )

    def _build_resolved_tasks(self) -> list[Task]:
        resolved = []
        for position, task in enumerate(self.tasks):
            if task.type != TaskType.DEFINE:
                resolved.append(task)
                continue
            group_index = self.group_positions.index(position)
            option = task.options[self.selections[group_index]]
            resolved.append(Task(action=option.command, type=TaskType.EXECUTE))
        return resolved

    def _finish(self, resolved: list[Task]) -> None:
        self.resolved_tasks = resolved
        self._phase = RefinementPhase.DONE
        verbose_log(f"Refinement done: {len(resolved)} concrete tasks", "REFINE")
        if self.on_completed:
            self.on_completed(list(resolved))


# ─── Execution Engine ─────────────────────────────────────────────────


@dataclass(frozen=True)
class TaskInfo:
    """Snapshot of one command's execution."""
    label: str
    command: ExecutionCommand
    status: ExecutionStatus
    elapsed_ms: int = 0
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class ExecutionState:
    """Snapshot of a whole run, handed to callers after every transition."""
    message: str = ""
    summary: str = ""
    tasks: tuple = ()
    completion_message: Optional[str] = None
    error: Optional[str] = None
    current_index: Optional[int] = None


@dataclass
class _TaskRecord:
    label: str
    command: ExecutionCommand
    status: ExecutionStatus = ExecutionStatus.PENDING
    elapsed_ms: int = 0
    started_at: Optional[float] = None
    stdout: LineBuffer = field(default_factory=LineBuffer)
    stderr: LineBuffer = field(default_factory=LineBuffer)
    final_stdout: Optional[str] = None
    final_stderr: Optional[str] = None
    error: Optional[str] = None

    def to_info(self) -> TaskInfo:
        return TaskInfo(
            label=self.label,
            command=self.command,
            status=self.status,
            elapsed_ms=self.elapsed_ms,
            stdout=self.final_stdout if self.final_stdout is not None else self.stdout.get_text(),
            stderr=self.final_stderr if self.final_stderr is not None else self.stderr.get_text(),
            error=self.error,
        )


class ElapsedTimer:
    """Calls on_tick every interval seconds on a background thread until stopped."""

    def __init__(self, on_tick: Callable[[], None],
                 interval: float = ELAPSED_UPDATE_INTERVAL_SECONDS):
        self.on_tick = on_tick
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.on_tick()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()


class ExecutionEngine:
    """Runs a flat command list strictly in order.

    A critical failure stops scheduling; a non-critical one is recorded and
    the run continues. Cancellation marks the running task aborted and every
    pending task cancelled. All placeholders are resolved before the first
    command starts, so an unresolvable reference means nothing runs.
    """

    def __init__(self, executor: Executor, context: Optional[dict] = None,
                 on_completed: Optional[Callable[[ExecutionState], None]] = None,
                 on_error: Optional[Callable[[str], None]] = None,
                 on_aborted: Optional[Callable[[str], None]] = None,
                 on_update: Optional[Callable[[ExecutionState], None]] = None,
                 add_to_timeline: Optional[Callable[..., None]] = None):
        self.executor = executor
        self.context = context or {}
        self.on_completed = on_completed
        self.on_error = on_error
        self.on_aborted = on_aborted
        self.on_update = on_update
        self.add_to_timeline = add_to_timeline
        self.outputs: list[CommandOutput] = []
        self._records: list[_TaskRecord] = []
        self._message = ""
        self._summary = ""
        self._completion_message: Optional[str] = None
        self._error: Optional[str] = None
        self._current_index: Optional[int] = None

    def snapshot(self) -> ExecutionState:
        return ExecutionState(
            message=self._message,
            summary=self._summary,
            tasks=tuple(record.to_info() for record in self._records),
            completion_message=self._completion_message,
            error=self._error,
            current_index=self._current_index,
        )

    def preflight(self, commands) -> list[ExecutionCommand]:
        """Resolve placeholders in every command; raise before anything runs."""
        resolved = []
        for cmd in commands:
            resolved.append(replace(cmd, command=resolve(cmd.command, self.context, strict=True)))
        return resolved

    def run(self, commands, message: str = "", summary: str = "",
            labels: Optional[list] = None,
            cancel_token: Optional[CancellationToken] = None,
            debug=None) -> ExecutionState:
        """Run commands one at a time and return the final snapshot."""
        self.outputs = []
        self._records = []
        self._message = message
        self._summary = summary or ""
        self._completion_message = None
        self._error = None
        self._current_index = None
        token = cancel_token or CancellationToken()

        if debug and self.add_to_timeline:
            self.add_to_timeline(*debug)

        try:
            resolved = self.preflight(commands)
        except PlaceholderResolutionError as e:
            log(f"ERROR: {e}")
            self._error = str(e)
            if self.on_error:
                self.on_error(str(e))
            return self._publish()

        if not resolved:
            verbose_log("No commands to run", "RUN")
            state = self._publish()
            if self.on_completed:
                self.on_completed(state)
            return state

        labels = labels or []
        self._records = [
            _TaskRecord(label=labels[i] if i < len(labels) and labels[i] else cmd.description, command=cmd)
            for i, cmd in enumerate(resolved)
        ]
        self._publish()

        self.executor.set_cancel_token(token)
        workdir: Optional[str] = None
        try:
            for index, record in enumerate(self._records):
                if token.is_cancelled:
                    return self._cancel(index, dispatched=False)

                self._current_index = index
                command = record.command
                if workdir and not command.workdir:
                    command = replace(command, workdir=workdir)

                output = self._run_task(index, record, command)
                if token.is_cancelled:
                    if output.result == ExecutionResult.ABORTED:
                        return self._cancel(index, dispatched=True)
                    # The command finished before the cancel landed; keep its outcome
                    return self._cancel(index + 1, dispatched=False)

                if output.workdir:
                    workdir = output.workdir

                if record.status == ExecutionStatus.FAILED and command.critical:
                    return self._fail(record)
                self._publish()
        finally:
            self.executor.set_cancel_token(None)

        total_ms = sum(record.elapsed_ms for record in self._records)
        self._current_index = None
        self._completion_message = (
            f"{self._summary.strip() or DEFAULT_SUMMARY_TEXT} in {format_duration(total_ms)}"
        )
        verbose_log(self._completion_message, "RUN")
        state = self._publish()
        if self.on_completed:
            self.on_completed(state)
        return state

    def _run_task(self, index: int, record: _TaskRecord, command: ExecutionCommand) -> CommandOutput:
        record.status = ExecutionStatus.RUNNING
        record.started_at = time.monotonic()
        self._publish()

        def sink(data: str, stream: str) -> None:
            (record.stdout if stream == "stdout" else record.stderr).push(data)

        def tick() -> None:
            if record.status == ExecutionStatus.RUNNING and record.started_at is not None:
                record.elapsed_ms = int((time.monotonic() - record.started_at) * 1000)

        def on_progress(status: ExecutionStatus) -> None:
            verbose_log(f"[{index}] {status.value}: {command.description}", "RUN")

        self.executor.set_output_sink(sink)
        timer = ElapsedTimer(tick)
        timer.start()
        try:
            output = self.executor.execute(command, on_progress, index)
        except ExecutionError as e:
            output = CommandOutput(
                description=command.description,
                command=command.command,
                output=record.stdout.get_text(),
                errors=str(e),
                result=ExecutionResult.ERROR,
                error=str(e),
            )
        finally:
            timer.stop()
            self.executor.set_output_sink(None)

        record.elapsed_ms = int((time.monotonic() - record.started_at) * 1000)
        record.final_stdout = output.output
        record.final_stderr = output.errors
        self.outputs.append(output)

        if output.succeeded:
            record.status = ExecutionStatus.SUCCESS
            return output

        # An aborted result counts as a failure unless the run itself was cancelled
        record.status = ExecutionStatus.FAILED
        record.error = output.errors.strip() or output.error or DEFAULT_FAILURE_TEXT
        if output.result != ExecutionResult.ABORTED:
            level = "critical" if command.critical else "non-critical"
            log(f"Task {index + 1} failed ({level}): {command.description}: {output.error or record.error}")
        return output

    def _fail(self, record: _TaskRecord) -> ExecutionState:
        self._error = record.error
        if self.add_to_timeline:
            self.add_to_timeline({"type": "feedback", "status": "failed",
                                  "message": f"Execution failed: {record.error}"})
        state = self._publish()
        if self.on_completed:
            self.on_completed(state)
        return state

    def _cancel(self, index: int, dispatched: bool) -> ExecutionState:
        for position in range(index, len(self._records)):
            record = self._records[position]
            if position == index and dispatched:
                record.status = ExecutionStatus.ABORTED
                record.error = None
            elif record.status == ExecutionStatus.PENDING:
                record.status = ExecutionStatus.CANCELLED
        self._completion_message = None
        self._current_index = None
        log("Execution cancelled")
        state = self._publish()
        if self.on_aborted:
            self.on_aborted(OPERATION_EXECUTION)
        return state

    def _publish(self) -> ExecutionState:
        state = self.snapshot()
        if self.on_update:
            self.on_update(state)
        return state
