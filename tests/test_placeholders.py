# tests/test_placeholders.py
# Unit tests for {dotted.path} placeholder resolution in task-runner.py

import importlib.util

import pytest

# task-runner.py has a hyphen in the filename, so we must use importlib
# to load it as a module under a valid Python identifier.
spec = importlib.util.spec_from_file_location(
    "task_runner", "scripts/task-runner.py"
)
mod = importlib.util.module_from_spec(spec)
spec.loader.exec_module(mod)

resolve = mod.resolve
assert_fully_resolved = mod.assert_fully_resolved
extract_placeholders = mod.extract_placeholders
has_placeholders = mod.has_placeholders
resolve_variant = mod.resolve_variant
get_required_config_paths = mod.get_required_config_paths
find_missing_config = mod.find_missing_config
PlaceholderResolutionError = mod.PlaceholderResolutionError
Task = mod.Task
TaskType = mod.TaskType

CONTEXT = {
    "project": {
        "root": "/srv/app",
        "port": 8080,
        "debug": True,
        "ratio": 0.5,
        "list": ["not", "scalar"],
    },
    "user": {"name": "dev"},
}


# --- resolve tests ---


def test_resolve_replaces_string_value():
    assert resolve("cd {project.root}", CONTEXT) == "cd /srv/app"


def test_resolve_formats_numbers_and_bools():
    result = resolve("serve --port {project.port} --debug={project.debug} --r {project.ratio}", CONTEXT)
    assert result == "serve --port 8080 --debug=true --r 0.5"


def test_resolve_false_bool():
    assert resolve("{flag}", {"flag": False}) == "false"


def test_resolve_leaves_absent_path_untouched():
    assert resolve("echo {project.missing} {user.name}", CONTEXT) == "echo {project.missing} dev"


def test_resolve_leaves_non_scalar_untouched():
    assert resolve("echo {project.list}", CONTEXT) == "echo {project.list}"


def test_resolve_without_context():
    assert resolve("echo {a.b}", None) == "echo {a.b}"


def test_resolve_strict_raises_on_leftovers():
    with pytest.raises(PlaceholderResolutionError) as exc_info:
        resolve("cp {project.root} {backup.dir}", CONTEXT, strict=True)
    assert exc_info.value.tokens == ["{backup.dir}"]


def test_resolve_strict_passes_when_complete():
    assert resolve("cd {project.root}", CONTEXT, strict=True) == "cd /srv/app"


# --- assert_fully_resolved tests ---


def test_assert_fully_resolved_lists_tokens_in_order_without_duplicates():
    with pytest.raises(PlaceholderResolutionError) as exc_info:
        assert_fully_resolved("{b.x} {a.y} {b.x}", "orig {b.x} {a.y} {b.x}")
    error = exc_info.value
    assert error.tokens == ["{b.x}", "{a.y}"]
    assert "{b.x}, {a.y}" in str(error)
    assert "orig {b.x} {a.y} {b.x}" in str(error)


def test_assert_fully_resolved_accepts_plain_text():
    assert_fully_resolved("echo done", "echo done")


# --- helper tests ---


def test_extract_placeholders_marks_variants():
    found = extract_placeholders("deploy {project.VARIANT.path} to {project.root}")
    assert [p.original for p in found] == ["{project.VARIANT.path}", "{project.root}"]
    assert found[0].path == ("project", "VARIANT", "path")
    assert found[0].variant_index == 1
    assert found[1].has_variant is False


def test_has_placeholders():
    assert has_placeholders("echo {a}")
    assert not has_placeholders("echo a")


def test_resolve_variant_replaces_upper_component():
    assert resolve_variant(("project", "VARIANT", "path"), "beta") == ("project", "beta", "path")


def test_get_required_config_paths_skips_variants_and_duplicates():
    text = "{project.root} {project.VARIANT.path} {project.root} {user.name}"
    assert get_required_config_paths(text) == ["project.root", "user.name"]


def test_find_missing_config():
    tasks = [
        Task(action="cd {project.root}", type=TaskType.EXECUTE),
        Task(action="ssh {deploy.host}", type=TaskType.EXECUTE),
        Task(action="g", type=TaskType.GROUP, subtasks=(
            Task(action="scp x {deploy.host}:{deploy.path}", type=TaskType.EXECUTE),
        )),
    ]
    assert find_missing_config(tasks, CONTEXT) == ["deploy.host", "deploy.path"]


def test_find_missing_config_with_empty_context():
    tasks = [Task(action="echo {user.name}", type=TaskType.EXECUTE)]
    assert find_missing_config(tasks, None) == ["user.name"]
