# tests/test_plan_shell.py
# Unit tests for the plan-shell.py CLI: config, oracle clients, refinement prompts and runs

import argparse
import importlib.util
import json
import subprocess
from unittest.mock import patch, MagicMock

import pytest
import yaml

# plan-shell.py has a hyphen in the filename, so we must use importlib
# to load it as a module under a valid Python identifier.
spec = importlib.util.spec_from_file_location(
    "plan_shell", "scripts/plan-shell.py"
)
mod = importlib.util.module_from_spec(spec)
spec.loader.exec_module(mod)

task_runner = mod.task_runner
ConfigError = mod.ConfigError
load_user_config = mod.load_user_config
extract_json_object = mod.extract_json_object
clean_answer_text = mod.clean_answer_text
FileOracle = mod.FileOracle
ClaudeOracle = mod.ClaudeOracle
StopFileWatcher = mod.StopFileWatcher
refine_interactively = mod.refine_interactively
handle_request = mod.handle_request
main = mod.main
PlanningValidationError = task_runner.PlanningValidationError
AbortSignal = task_runner.AbortSignal
Task = task_runner.Task
TaskType = task_runner.TaskType


def _scripted_input(*replies):
    """Return an input() replacement that yields the given replies in order."""
    remaining = list(replies)

    def fake_input(prompt=""):
        return remaining.pop(0)

    return fake_input


def _write_plan(tmp_path, payload, name="plan.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(payload))
    return str(path)


def _args(**overrides):
    defaults = dict(request=["do", "it"], plan_file=None, config=None,
                    dry_run=True, yes=True, verbose=False, model=None)
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


# --- load_user_config tests ---


def test_load_user_config_missing_file(tmp_path):
    assert load_user_config(str(tmp_path / "nope.yaml")) == {}


def test_load_user_config_reads_mapping(tmp_path):
    path = tmp_path / "plsrc"
    path.write_text("project:\n  root: /srv\nsettings:\n  model: sonnet\n")
    config = load_user_config(str(path))
    assert config["project"]["root"] == "/srv"
    assert mod.get_settings(config) == {"model": "sonnet"}


def test_load_user_config_empty_file(tmp_path):
    path = tmp_path / "plsrc"
    path.write_text("")
    assert load_user_config(str(path)) == {}


def test_load_user_config_malformed_yaml(tmp_path):
    path = tmp_path / "plsrc"
    path.write_text("project: [unclosed\n")
    with pytest.raises(ConfigError, match=str(path)):
        load_user_config(str(path))


def test_load_user_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "plsrc"
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_user_config(str(path))


def test_config_path_env_override(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("user:\n  name: dev\n")
    monkeypatch.setenv("PLS_CONFIG", str(path))
    assert load_user_config() == {"user": {"name": "dev"}}


# --- extract_json_object tests ---


def test_extract_json_object_ignores_prose_and_fences():
    text = 'Sure! Here it is:\n```json\n{"message": "hi", "tasks": []}\n```\nDone.'
    assert extract_json_object(text) == {"message": "hi", "tasks": []}


def test_extract_json_object_handles_braces_in_strings():
    text = 'x {"action": "echo \\"}\\" {a}", "type": "execute"} y'
    assert extract_json_object(text) == {"action": 'echo "}" {a}', "type": "execute"}


def test_extract_json_object_skips_invalid_candidates():
    text = "{not json} then {\"ok\": true}"
    assert extract_json_object(text) == {"ok": True}


def test_extract_json_object_without_object():
    with pytest.raises(PlanningValidationError, match="no JSON object"):
        extract_json_object("no braces here")


# --- clean_answer_text tests ---


def test_clean_answer_text_strips_tags_and_wraps():
    text = "The <cite index='1'>capital</cite> of   France is\n<b>Paris</b>. " + "word " * 30
    cleaned = clean_answer_text(text)
    assert "<" not in cleaned
    assert cleaned.startswith("The capital of France is Paris.")
    assert all(len(line) <= 80 for line in cleaned.split("\n"))


# --- FileOracle tests ---


def test_file_oracle_replays_plan(tmp_path):
    path = _write_plan(tmp_path, {
        "message": "Listing.",
        "tasks": [{"action": "ls", "type": "execute"}],
    })
    response = FileOracle(path).plan("list files")
    assert response.tasks == (Task(action="ls", type=TaskType.EXECUTE),)


def test_file_oracle_uses_declared_tool(tmp_path):
    path = _write_plan(tmp_path, {"tool": "answer", "question": "Q?", "answer": "A."})
    assert FileOracle(path).plan("Q?").answer == "A."


def test_file_oracle_reads_json(tmp_path):
    path = tmp_path / "plan.json"
    path.write_text(json.dumps({"message": "m", "tasks": []}))
    assert FileOracle(str(path)).plan("").message == "m"


def test_file_oracle_missing_file(tmp_path):
    with pytest.raises(PlanningValidationError, match="Could not read plan file"):
        FileOracle(str(tmp_path / "missing.yaml")).plan("x")


def test_file_oracle_unknown_tool(tmp_path):
    path = _write_plan(tmp_path, {"tool": "dance", "message": "m"})
    with pytest.raises(PlanningValidationError, match="unknown tool"):
        FileOracle(path).plan("x")


# --- ClaudeOracle tests ---


def test_claude_oracle_parses_cli_envelope():
    payload = {"tool": "plan", "message": "ok", "tasks": [{"action": "pwd", "type": "execute"}]}
    envelope = {"type": "result", "result": "Here:\n" + json.dumps(payload)}
    completed = subprocess.CompletedProcess([], 0, stdout=json.dumps(envelope), stderr="")
    with patch.object(mod.subprocess, "run", return_value=completed) as mock_run:
        response = ClaudeOracle(model="sonnet", claude_cmd=["claude"]).plan("where am I")
    assert response.tasks[0].action == "pwd"
    cmd = mock_run.call_args[0][0]
    assert cmd[:4] == ["claude", "--print", "--output-format", "json"]
    assert "--model" in cmd and "sonnet" in cmd
    assert "where am I" in cmd[-1]


def test_claude_oracle_nonzero_exit():
    completed = subprocess.CompletedProcess([], 2, stdout="", stderr="auth required")
    with patch.object(mod.subprocess, "run", return_value=completed):
        with pytest.raises(PlanningValidationError, match="exit code 2.*auth required"):
            ClaudeOracle(claude_cmd=["claude"]).plan("x")


def test_claude_oracle_timeout():
    with patch.object(mod.subprocess, "run", side_effect=subprocess.TimeoutExpired("claude", 1)):
        with pytest.raises(PlanningValidationError, match="timed out"):
            ClaudeOracle(claude_cmd=["claude"]).plan("x")


def test_claude_oracle_missing_binary():
    with patch.object(mod.subprocess, "run", side_effect=FileNotFoundError("claude")):
        with pytest.raises(PlanningValidationError, match="Could not start"):
            ClaudeOracle(claude_cmd=["claude"]).plan("x")


def test_build_oracle_prompt_mentions_request():
    prompt = mod.build_oracle_prompt("deploy the app", task_runner.ToolKind.PLAN)
    assert "deploy the app" in prompt
    assert '"tasks"' in prompt


def test_build_oracle_prompt_only_for_requested_tools():
    assert set(mod.TOOL_PROMPTS) == {
        task_runner.ToolKind.PLAN, task_runner.ToolKind.ANSWER, task_runner.ToolKind.INTROSPECT,
    }
    assert '"answer"' in mod.build_oracle_prompt("why?", "answer")
    with pytest.raises(PlanningValidationError, match="No prompt for tool 'execute'"):
        mod.build_oracle_prompt("x", task_runner.ToolKind.EXECUTE)


# --- refine_interactively tests ---


def _choice_plan():
    return [
        Task(action="echo start", type=TaskType.EXECUTE),
        Task(action="Which env?", type=TaskType.DEFINE, params={"options": [
            {"name": "Staging", "command": "deploy staging"},
            {"name": "Production", "command": "deploy production"},
        ]}),
    ]


def test_refine_with_number_and_enter(capsys):
    resolved = refine_interactively(_choice_plan(), _scripted_input("2", ""))
    assert [t.action for t in resolved] == ["echo start", "deploy production"]
    assert "Which env?" in capsys.readouterr().out


def test_refine_enter_without_highlight_reprompts(capsys):
    resolved = refine_interactively(_choice_plan(), _scripted_input("", "n", ""))
    assert resolved[1].action == "deploy staging"
    assert "Highlight an option first" in capsys.readouterr().out


def test_refine_previous_wraps_to_last():
    resolved = refine_interactively(_choice_plan(), _scripted_input("p", ""))
    assert resolved[1].action == "deploy production"


def test_refine_out_of_range_number(capsys):
    refine_interactively(_choice_plan(), _scripted_input("9", "1", ""))
    assert "between 1 and 2" in capsys.readouterr().out


def test_refine_quit_raises_abort():
    with pytest.raises(AbortSignal) as exc_info:
        refine_interactively(_choice_plan(), _scripted_input("q"))
    assert exc_info.value.operation == "task selection"


def test_refine_ctrl_c_raises_abort():
    def interrupted(prompt=""):
        raise KeyboardInterrupt

    with pytest.raises(AbortSignal):
        refine_interactively(_choice_plan(), interrupted)


# --- StopFileWatcher tests ---


def test_stop_file_watcher_cancels_token(tmp_path):
    from watchdog.events import FileCreatedEvent, FileModifiedEvent

    stop_path = tmp_path / ".stop"
    token = task_runner.CancellationToken()
    watcher = StopFileWatcher(token, str(stop_path))

    watcher.on_created(FileCreatedEvent(str(tmp_path / "other")))
    assert not token.is_cancelled

    watcher.on_modified(FileModifiedEvent(str(stop_path)))
    assert token.is_cancelled
    assert token.reason == "stop file"


def test_clear_stop_semaphore(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".pls").mkdir()
    (tmp_path / ".pls" / ".stop").write_text("")
    mod.clear_stop_semaphore()
    assert not (tmp_path / ".pls" / ".stop").exists()


# --- handle_request / main tests ---


def test_handle_request_dry_run_completes(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    oracle = MagicMock()
    oracle.plan.return_value = task_runner.validate_oracle_response("plan", {
        "message": "Building.",
        "summary": "Built the project",
        "tasks": [{"action": "make", "type": "execute"}, {"action": "make test", "type": "execute"}],
    })
    code = handle_request(_args(), {"settings": {"mock_delay_ms": 0}}, oracle)
    out = capsys.readouterr().out
    assert code == 0
    assert "Building." in out
    assert "[DONE] make" in out
    assert "Built the project in 0 seconds" in out


def test_handle_request_explicit_commands_keep_their_descriptions(tmp_path, monkeypatch, capsys):
    """Task actions are not used as labels for a separately supplied command list."""
    monkeypatch.chdir(tmp_path)
    oracle = MagicMock()
    oracle.plan.return_value = task_runner.validate_oracle_response("plan", {
        "message": "Shipping.",
        "tasks": [{"action": "compile things", "type": "execute"},
                  {"action": "ship it", "type": "execute"}],
        "commands": [{"description": "Lint", "command": "echo lint"},
                     {"description": "Compile", "command": "echo compile"},
                     {"description": "Ship", "command": "echo ship"}],
    })
    code = handle_request(_args(), {"settings": {"mock_delay_ms": 0}}, oracle)
    out = capsys.readouterr().out
    assert code == 0
    assert "[DONE] Lint" in out
    assert "[DONE] Compile" in out
    assert "[DONE] Ship" in out
    assert "compile things" not in out
    assert "ship it" not in out


def test_handle_request_prints_answer(capsys):
    oracle = MagicMock()
    oracle.plan.return_value = task_runner.validate_oracle_response(
        "answer", {"question": "Q?", "answer": "It is <b>42</b>."}
    )
    assert handle_request(_args(), {}, oracle) == 0
    assert "It is 42." in capsys.readouterr().out


def test_handle_request_prints_capabilities(capsys):
    oracle = MagicMock()
    oracle.plan.return_value = task_runner.validate_oracle_response("introspect", {
        "message": "I can:",
        "capabilities": [{"name": "Run", "description": "Run commands", "origin": "builtin"}],
    })
    assert handle_request(_args(), {}, oracle) == 0
    assert "Run (builtin): Run commands" in capsys.readouterr().out


def test_handle_request_unknown_request(capsys):
    oracle = MagicMock()
    oracle.plan.return_value = task_runner.validate_oracle_response("plan", {
        "message": "Hmm.",
        "tasks": [{"action": "cannot do this", "type": "ignore"}],
    })
    assert handle_request(_args(), {}, oracle) == 0
    assert mod.UNKNOWN_REQUEST_MESSAGE in capsys.readouterr().out


def test_handle_request_reports_missing_config(capsys):
    oracle = MagicMock()
    oracle.plan.return_value = task_runner.validate_oracle_response("plan", {
        "message": "Deploying.",
        "tasks": [{"action": "scp dist {deploy.host}:/srv", "type": "execute"}],
    })
    assert handle_request(_args(), {}, oracle) == 1
    out = capsys.readouterr().out
    assert "Missing configuration" in out
    assert "deploy.host" in out


def test_handle_request_declined_confirmation(capsys):
    oracle = MagicMock()
    oracle.plan.return_value = task_runner.validate_oracle_response("plan", {
        "message": "m", "tasks": [{"action": "rm -rf build", "type": "execute"}],
    })
    code = handle_request(_args(yes=False), {}, oracle, input_fn=_scripted_input("n"))
    assert code == 130
    assert "I've cancelled the execution." in capsys.readouterr().out


def test_main_runs_plan_file_dry_run(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    config = tmp_path / "plsrc"
    config.write_text("settings:\n  mock_delay_ms: 0\nproject:\n  name: demo\n")
    plan = _write_plan(tmp_path, {
        "message": "Greeting.",
        "summary": "Greeted",
        "commands": [{"description": "Say hi", "command": "echo {project.name}"}],
        "tasks": [],
    })
    code = main(["--plan-file", plan, "--config", str(config), "--dry-run", "--yes"])
    out = capsys.readouterr().out
    assert code == 0
    assert "[DONE] Say hi" in out
    assert "Greeted in" in out


def test_main_critical_failure_exits_with_error(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    plan = _write_plan(tmp_path, {
        "message": "Checking.",
        "commands": [
            {"description": "Fail", "command": "echo broken >&2; exit 4"},
            {"description": "Never", "command": "echo never"},
        ],
        "tasks": [],
    })
    code = main(["--plan-file", plan, "--config", str(tmp_path / "none"), "--yes"])
    out = capsys.readouterr().out
    assert code == 1
    assert "Error: broken" in out
    assert "never" not in out.split("Error:")[-1]


def test_main_refinement_abort_exits_130(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    plan = _write_plan(tmp_path, {
        "message": "m",
        "tasks": [{"action": "Pick", "type": "define", "params": {"options": ["a", "b"]}}],
    })
    monkeypatch.setattr("builtins.input", _scripted_input("q"))
    code = main(["--plan-file", plan, "--config", str(tmp_path / "none")])
    assert code == 130
    assert "I've cancelled the task selection." in capsys.readouterr().out


def test_main_malformed_config_exits_1(tmp_path, capsys):
    config = tmp_path / "plsrc"
    config.write_text("a: [b\n")
    plan = _write_plan(tmp_path, {"message": "m", "tasks": []})
    assert main(["--plan-file", plan, "--config", str(config)]) == 1
    assert "Malformed YAML" in capsys.readouterr().out


def test_main_without_request(capsys):
    assert main([]) == 1
    assert "Nothing to do" in capsys.readouterr().out
