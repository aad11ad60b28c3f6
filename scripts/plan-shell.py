#!/usr/bin/env python3
"""
plan-shell: turn a natural-language request into shell commands and run them.

Asks the planning oracle (the claude CLI, or a saved response file) for a
plan, lets the user resolve any choice groups, then runs the resulting
commands one at a time with live status.

Usage:
    python scripts/plan-shell.py "list the ten largest files in src"
    python scripts/plan-shell.py --plan-file plans/deploy.yaml --dry-run
    python scripts/plan-shell.py --yes --verbose "build the project"

Graceful stop while running: Ctrl+C, or touch .pls/.stop
"""

import argparse
import importlib.util
import json
import os
import re
import shutil
import signal
import subprocess
import sys
import textwrap
from pathlib import Path
from typing import Callable, Optional

import yaml

try:
    from watchdog.observers import Observer
    from watchdog.events import FileSystemEventHandler, FileCreatedEvent, FileModifiedEvent
except ImportError:
    print("[PLAN-SHELL] ERROR: watchdog not installed. Run: pip install watchdog")
    sys.exit(1)

# task-runner.py has a hyphen in the filename, so load it through importlib
_tr_spec = importlib.util.spec_from_file_location(
    "task_runner", str(Path(__file__).resolve().parent / "task-runner.py"))
task_runner = importlib.util.module_from_spec(_tr_spec)
_tr_spec.loader.exec_module(task_runner)

log = task_runner.log
verbose_log = task_runner.verbose_log
ToolKind = task_runner.ToolKind
AbortSignal = task_runner.AbortSignal
PlanningValidationError = task_runner.PlanningValidationError
ExecutionStatus = task_runner.ExecutionStatus

# ─── Configuration ────────────────────────────────────────────────────

USER_CONFIG_PATH = os.path.expanduser("~/.plsrc")
USER_CONFIG_ENV_VAR = "PLS_CONFIG"
STOP_SEMAPHORE_PATH = ".pls/.stop"

ORACLE_TIMEOUT_SECONDS = 300
ANSWER_WRAP_WIDTH = 80

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ABORTED = 130

CLAUDE_BINARY_SEARCH_PATHS = [
    "/opt/homebrew/lib/node_modules/@anthropic-ai/claude-code/cli.js",
    "/usr/local/lib/node_modules/@anthropic-ai/claude-code/cli.js",
]

UNKNOWN_REQUEST_MESSAGE = "I don't know how to do that. Try rephrasing the request."

STATUS_LABELS = {
    ExecutionStatus.PENDING: "PENDING",
    ExecutionStatus.RUNNING: "RUNNING",
    ExecutionStatus.SUCCESS: "DONE",
    ExecutionStatus.FAILED: "FAILED",
    ExecutionStatus.ABORTED: "ABORTED",
    ExecutionStatus.CANCELLED: "CANCELLED",
}


class ConfigError(task_runner.TaskRunnerError):
    """The user config file exists but cannot be used."""


def resolve_config_path(path: Optional[str] = None) -> str:
    """Explicit path, then $PLS_CONFIG, then ~/.plsrc."""
    return path or os.environ.get(USER_CONFIG_ENV_VAR) or USER_CONFIG_PATH


def load_user_config(path: Optional[str] = None) -> dict:
    """Load the user config (placeholder context plus a settings section).

    Returns an empty dict if the file doesn't exist.
    """
    config_path = resolve_config_path(path)
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        verbose_log(f"No config at {config_path}", "CONFIG")
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed YAML in {config_path}: {e}") from e
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    verbose_log(f"Loaded config from {config_path} ({len(config)} top-level keys)", "CONFIG")
    return config


def get_settings(config: dict) -> dict:
    settings = config.get("settings")
    return settings if isinstance(settings, dict) else {}


# ─── Stop Semaphore ──────────────────────────────────────────────────


def clear_stop_semaphore() -> None:
    """Remove the stop semaphore file if it exists."""
    if os.path.exists(STOP_SEMAPHORE_PATH):
        os.remove(STOP_SEMAPHORE_PATH)
        log(f"Cleared stale stop semaphore: {STOP_SEMAPHORE_PATH}")


class StopFileWatcher(FileSystemEventHandler):
    """Watchdog handler that cancels the run when the stop semaphore appears."""

    def __init__(self, token, stop_path: str = STOP_SEMAPHORE_PATH):
        super().__init__()
        self.token = token
        self.stop_path = os.path.abspath(stop_path)

    def _matches(self, event) -> bool:
        return os.path.abspath(event.src_path) == self.stop_path

    def on_created(self, event):
        if isinstance(event, FileCreatedEvent) and self._matches(event):
            log(f"Graceful stop requested (found {STOP_SEMAPHORE_PATH})")
            self.token.cancel("stop file")

    def on_modified(self, event):
        if isinstance(event, FileModifiedEvent) and self._matches(event):
            verbose_log(f"Stop file touched: {event.src_path}", "STOP")
            self.token.cancel("stop file")


def start_stop_watcher(token):
    """Watch the stop semaphore's directory. Returns the running Observer."""
    stop_dir = os.path.dirname(STOP_SEMAPHORE_PATH) or "."
    os.makedirs(stop_dir, exist_ok=True)
    observer = Observer()
    observer.schedule(StopFileWatcher(token), stop_dir, recursive=False)
    observer.start()
    verbose_log(f"Watching {stop_dir} for {os.path.basename(STOP_SEMAPHORE_PATH)}", "STOP")
    return observer


# ─── Planning Oracle ─────────────────────────────────────────────────


def resolve_claude_binary() -> list[str]:
    """Find the claude binary, checking PATH then known install locations."""
    claude_path = shutil.which("claude")
    if claude_path:
        return [claude_path]

    for search_path in CLAUDE_BINARY_SEARCH_PATHS:
        if os.path.isfile(search_path):
            node_path = shutil.which("node")
            if node_path:
                return [node_path, search_path]

    npx_path = shutil.which("npx")
    if npx_path:
        return [npx_path, "@anthropic-ai/claude-code"]

    log("WARNING: Could not find 'claude' binary. Planning will fail.")
    return ["claude"]


def extract_json_object(text: str) -> dict:
    """Return the first balanced {...} object in text that parses as JSON.

    Surrounding prose and markdown code fences are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for pos in range(start, len(text)):
            char = text[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    try:
                        candidate = json.loads(text[start:pos + 1])
                    except json.JSONDecodeError:
                        break
                    if isinstance(candidate, dict):
                        return candidate
                    break
        start = text.find("{", start + 1)
    raise PlanningValidationError("Planning oracle returned no JSON object")


def clean_answer_text(text: str, width: int = ANSWER_WRAP_WIDTH) -> str:
    """Strip citation and HTML tags, collapse whitespace and wrap at width."""
    text = re.sub(r"</?cite[^>]*>", "", text)
    text = re.sub(r"<[^>]+>", "", text)
    text = re.sub(r"\s+", " ", text).strip()
    return textwrap.fill(text, width=width)


PROMPT_HEADER = """You are the planner for a command-line assistant that runs shell commands.
Reply with a single JSON object and nothing else.
"""

TOOL_PROMPTS = {
    ToolKind.PLAN: """Break the request into tasks. Shape:
{"tool": "plan", "message": "<intro shown to the user>", "summary": "<past-tense summary>",
 "tasks": [{"action": "<shell command>", "type": "execute", "config": []},
           {"action": "<question>", "type": "define",
            "params": {"options": [{"name": "<label>", "command": "<shell command>"}]}}]}
Use "define" only when the request is ambiguous. Use "ignore" for parts you cannot do.
If the request is a question rather than an action, reply instead with
{"tool": "answer", "question": "<the question>", "answer": "<the answer>"}.
If the user asks what you can do, reply with
{"tool": "introspect", "message": "<intro>", "capabilities":
 [{"name": "<name>", "description": "<text>", "origin": "system|builtin|custom"}]}.
Config values may be referenced in commands as {dotted.path} placeholders.""",
    ToolKind.ANSWER: """Answer the question. Shape:
{"tool": "answer", "question": "<the question>", "answer": "<the answer>"}""",
    ToolKind.INTROSPECT: """List what you can do. Shape:
{"tool": "introspect", "message": "<intro>", "capabilities":
 [{"name": "<name>", "description": "<text>", "origin": "system|builtin|custom"}]}""",
}


def build_oracle_prompt(instructions: str, tool_kind) -> str:
    kind = ToolKind(tool_kind)
    if kind not in TOOL_PROMPTS:
        raise PlanningValidationError(f"No prompt for tool '{kind.value}'")
    return f"{PROMPT_HEADER}\n{TOOL_PROMPTS[kind]}\n\nRequest: {instructions}\n"


def response_tool_kind(payload: dict, requested) -> "ToolKind":
    """The tool kind the payload declares, falling back to the requested one."""
    try:
        return ToolKind(payload.get("tool", requested))
    except ValueError:
        raise PlanningValidationError(
            f"Invalid tool response: unknown tool '{payload.get('tool')}'"
        ) from None


class ClaudeOracle:
    """Planning oracle backed by the claude CLI."""

    def __init__(self, model: Optional[str] = None, claude_cmd: Optional[list] = None):
        self.model = model
        self.claude_cmd = claude_cmd or resolve_claude_binary()

    def plan(self, instructions: str, tool_kind=ToolKind.PLAN):
        prompt = build_oracle_prompt(instructions, tool_kind)
        cmd = [*self.claude_cmd, "--print", "--output-format", "json"]
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.append(prompt)
        verbose_log(f"Command: {' '.join(self.claude_cmd)} --print --output-format json <prompt>", "ORACLE")
        verbose_log(f"Prompt length: {len(prompt)} chars", "ORACLE")

        try:
            result = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=ORACLE_TIMEOUT_SECONDS,
                env=task_runner.build_child_env(),
            )
        except subprocess.TimeoutExpired:
            raise PlanningValidationError(
                f"Planning oracle timed out after {ORACLE_TIMEOUT_SECONDS} seconds"
            ) from None
        except OSError as e:
            raise PlanningValidationError(f"Could not start planning oracle: {e}") from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()[:500]
            raise PlanningValidationError(
                f"Planning oracle failed (exit code {result.returncode}): {detail}"
            )

        text = result.stdout
        try:
            envelope = json.loads(text)
            if isinstance(envelope, dict) and isinstance(envelope.get("result"), str):
                text = envelope["result"]
        except (json.JSONDecodeError, ValueError):
            pass  # Plain text output, search it directly

        payload = extract_json_object(text)
        kind = response_tool_kind(payload, tool_kind)
        verbose_log(f"Oracle answered with tool '{kind.value}'", "ORACLE")
        return task_runner.validate_oracle_response(kind, payload)


class FileOracle:
    """Replays a saved oracle response from a YAML or JSON file."""

    def __init__(self, path: str):
        self.path = path

    def plan(self, instructions: str, tool_kind=ToolKind.PLAN):
        try:
            with open(self.path, "r") as f:
                payload = yaml.safe_load(f)
        except (IOError, yaml.YAMLError) as e:
            raise PlanningValidationError(f"Could not read plan file {self.path}: {e}") from e
        if not isinstance(payload, dict):
            raise PlanningValidationError(f"Plan file {self.path} must contain a mapping")
        verbose_log(f"Replaying {self.path} for: {instructions or '<no request>'}", "ORACLE")
        return task_runner.validate_oracle_response(response_tool_kind(payload, tool_kind), payload)


# ─── Interactive Refinement ──────────────────────────────────────────


def render_choice(engine) -> None:
    """Print the current choice group with the highlighted option marked."""
    task = engine.current_task
    state = engine.snapshot()
    print(f"\n{task.action}")
    for i, option in enumerate(task.options):
        marker = ">" if state.highlighted_index == i else " "
        print(f"  {marker} {i + 1}. {option.name}")
    print("  [n]ext  [p]revious  [1-9] pick  [Enter] confirm  [q]uit", flush=True)


def refine_interactively(tasks, input_fn: Optional[Callable[[str], str]] = None) -> list:
    """Resolve every choice group with prompts. Raises AbortSignal on q or Ctrl+C."""
    input_fn = input_fn or input
    aborted: list[str] = []
    engine = task_runner.RefinementEngine(on_aborted=aborted.append)
    engine.start(tasks)

    while not engine.is_finished:
        render_choice(engine)
        try:
            reply = input_fn("> ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            reply = "q"

        if reply == "q":
            engine.abort()
        elif reply == "n":
            engine.move_down()
        elif reply == "p":
            engine.move_up()
        elif reply.isdigit():
            target = int(reply) - 1
            if not 0 <= target < len(engine.current_options):
                print(f"  Pick a number between 1 and {len(engine.current_options)}")
                continue
            while engine.snapshot().highlighted_index != target:
                engine.move_down()
        elif reply == "":
            if engine.snapshot().highlighted_index is None:
                print("  Highlight an option first")
                continue
            engine.confirm()
        else:
            print(f"  Unknown input: {reply}")

    if aborted:
        raise AbortSignal(aborted[0])
    return engine.resolved_tasks


def confirm_execution(commands, input_fn: Optional[Callable[[str], str]] = None) -> bool:
    input_fn = input_fn or input
    print("\nAbout to run:")
    for i, cmd in enumerate(commands, 1):
        print(f"  {i}. {cmd.description}")
        if cmd.command != cmd.description:
            print(f"       $ {cmd.command}")
    try:
        reply = input_fn(f"Run {len(commands)} command(s)? [y/N] ")
    except (EOFError, KeyboardInterrupt):
        raise AbortSignal(task_runner.OPERATION_EXECUTION) from None
    return reply.strip().lower() in ("y", "yes")


def cancellation_message(operation: str) -> str:
    return f"I've cancelled the {operation.lower()}."


# ─── Execution ───────────────────────────────────────────────────────


class EchoingExecutor(task_runner.RealExecutor):
    """RealExecutor that also echoes each output line to the terminal."""

    def set_output_sink(self, sink):
        if sink is None:
            super().set_output_sink(None)
            return

        def echo(data: str, stream: str) -> None:
            sink(data, stream)
            prefix = "OUT" if stream == "stdout" else "ERR"
            print(f"    [{prefix}] {data.rstrip()}", flush=True)

        super().set_output_sink(echo)


def build_executor(dry_run: bool, verbose: bool, settings: dict):
    if dry_run:
        delay_ms = settings.get("mock_delay_ms")
        if isinstance(delay_ms, (int, float)) and not isinstance(delay_ms, bool):
            return task_runner.DummyExecutor(lambda index: delay_ms)
        return task_runner.DummyExecutor()
    if verbose:
        return EchoingExecutor()
    return task_runner.RealExecutor()


class StatusPrinter:
    """on_update callback printing one line per task status change."""

    def __init__(self) -> None:
        self.seen: dict[int, object] = {}

    def __call__(self, state) -> None:
        for i, info in enumerate(state.tasks):
            if self.seen.get(i) == info.status:
                continue
            self.seen[i] = info.status
            if info.status == ExecutionStatus.PENDING:
                continue
            line = f"  [{STATUS_LABELS[info.status]}] {info.label}"
            if info.status in task_runner.TERMINAL_STATUSES and info.elapsed_ms:
                line += f" ({task_runner.format_duration(info.elapsed_ms)})"
            print(line, flush=True)
            if info.status == ExecutionStatus.FAILED and info.error:
                print(textwrap.indent(info.error, "      "), flush=True)


def log_timeline(*items) -> None:
    """add_to_timeline callback: diagnostics only show up in verbose mode."""
    for item in items:
        verbose_log(str(item), "RUN")


def run_commands(commands, config: dict, executor, message: str, summary: str,
                 labels: Optional[list] = None) -> int:
    """Run commands with SIGINT and the stop file wired to one cancellation token."""
    token = task_runner.CancellationToken()
    outcome: dict = {}
    engine = task_runner.ExecutionEngine(
        executor,
        context=config,
        on_completed=lambda state: outcome.setdefault("completed", state),
        on_error=lambda error: outcome.setdefault("error", error),
        on_aborted=lambda operation: outcome.setdefault("aborted", operation),
        on_update=StatusPrinter(),
        add_to_timeline=log_timeline,
    )

    def handle_signal(signum, frame):
        log("Received SIGINT. Stopping after the current command is terminated...")
        token.cancel("SIGINT")

    clear_stop_semaphore()
    observer = start_stop_watcher(token)
    previous_handler = signal.signal(signal.SIGINT, handle_signal)
    try:
        if message:
            print(message)
        state = engine.run(commands, message=message, summary=summary,
                           labels=labels, cancel_token=token)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        observer.stop()
        observer.join()

    if "aborted" in outcome:
        print(cancellation_message(outcome["aborted"]))
        return EXIT_ABORTED
    if state.error:
        print(f"Error: {state.error}")
        return EXIT_ERROR
    if state.completion_message:
        print(state.completion_message)
    return EXIT_OK


def print_capabilities(response) -> None:
    if response.message:
        print(response.message)
    for capability in response.capabilities:
        print(f"  - {capability.name} ({capability.origin.value}): {capability.description}")


def handle_request(args, config: dict, oracle,
                   input_fn: Optional[Callable[[str], str]] = None) -> int:
    """Plan, refine, confirm and run one request. Returns the exit code."""
    settings = get_settings(config)
    instructions = " ".join(args.request).strip()

    response = oracle.plan(instructions, ToolKind.PLAN)

    if response.answer is not None:
        print(clean_answer_text(response.answer))
        return EXIT_OK
    if response.capabilities:
        print_capabilities(response)
        return EXIT_OK

    tasks = list(response.tasks)
    if task_runner.has_define_tasks(tasks):
        tasks = refine_interactively(tasks, input_fn)

    # Labels line up with commands only when both come from the same task list
    labels = None
    if response.commands:
        commands = list(response.commands)
    else:
        commands = task_runner.tasks_to_commands(tasks)
        labels = [task.action for task in task_runner.executable_tasks(tasks)] or None
    if not commands:
        print(UNKNOWN_REQUEST_MESSAGE)
        return EXIT_OK

    missing = task_runner.find_missing_config(tasks, config)
    if missing:
        print(f"Missing configuration in {resolve_config_path(args.config)}:")
        for path in missing:
            print(f"  - {path}")
        return EXIT_ERROR

    if not args.yes and not confirm_execution(commands, input_fn):
        print(cancellation_message(task_runner.OPERATION_EXECUTION))
        return EXIT_ABORTED

    executor = build_executor(args.dry_run, args.verbose, settings)
    return run_commands(commands, config, executor, response.message, response.summary, labels)


# ─── Entry Point ──────────────────────────────────────────────────────


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="plan-shell: plan and run shell commands from a natural-language request"
    )
    parser.add_argument(
        "request", nargs="*",
        help="What you want done, in plain words",
    )
    parser.add_argument(
        "--plan-file", type=str, default=None, metavar="PATH",
        help="Replay a saved oracle response (YAML or JSON) instead of calling claude",
    )
    parser.add_argument(
        "--config", type=str, default=None, metavar="PATH",
        help=f"User config file (default: ${USER_CONFIG_ENV_VAR} or {USER_CONFIG_PATH})",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Simulate execution without running any command",
    )
    parser.add_argument(
        "--yes", "-y", action="store_true",
        help="Run without asking for confirmation",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Verbose tracing and live command output",
    )
    parser.add_argument(
        "--model", type=str, default=None, metavar="NAME",
        help="Model for the planning oracle (default: settings.model from the config)",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    task_runner.VERBOSE = args.verbose

    if not args.request and not args.plan_file:
        print("Nothing to do: pass a request or --plan-file")
        return EXIT_ERROR

    try:
        config = load_user_config(args.config)
        if args.plan_file:
            oracle = FileOracle(args.plan_file)
        else:
            oracle = ClaudeOracle(model=args.model or get_settings(config).get("model"))
        return handle_request(args, config, oracle)
    except AbortSignal as e:
        print(cancellation_message(e.operation))
        return EXIT_ABORTED
    except task_runner.TaskRunnerError as e:
        print(f"Error: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
