import pytest

from phaseforge.errors import PromptError
from phaseforge.prompts import PromptManager

BUILTINS = [
    "code/hook_fix", "code/pr", "code/resume", "code/system", "code/task",
    "review/fix", "review/system", "review/task",
    "verify/fix", "verify/system", "verify/task",
]


def test_builtin_templates_are_registered():
    prompts = PromptManager()
    for name in BUILTINS:
        assert prompts.has(name), name


def test_render_phase_task():
    prompts = PromptManager()
    text = prompts.render("code/task", {
        "phase_index": 2,
        "total_phases": 3,
        "phase": {"name": "Storage", "description": "Add the store", "tasks": ["write model", "write tests"]},
    })
    assert "Phase 2 of 3: Storage" in text
    assert "- write model" in text
    assert "- write tests" in text


def test_render_hook_fix():
    text = PromptManager().render("code/hook_fix", {
        "hook_name": "lint",
        "hook_command": "ruff check .",
        "hook_output": "E501 line too long",
    })
    assert "lint" in text
    assert "ruff check ." in text
    assert "E501 line too long" in text


def test_include_dir_overrides_builtin(tmp_path):
    custom = tmp_path / "prompts"
    (custom / "code").mkdir(parents=True)
    (custom / "code" / "task.md.j2").write_text("custom {{ phase.name }}", encoding="utf-8")
    (custom / "code" / "extra.md.j2").write_text("extra", encoding="utf-8")

    prompts = PromptManager(include=[custom])

    assert prompts.render("code/task", {"phase": {"name": "x"}}) == "custom x"
    assert prompts.has("code/extra")
    assert prompts.has("review/task")


def test_relative_include_resolves_against_base_dir(tmp_path):
    (tmp_path / "prompts" / "verify").mkdir(parents=True)
    (tmp_path / "prompts" / "verify" / "task.md.j2").write_text("mine", encoding="utf-8")

    prompts = PromptManager(include=[tmp_path.joinpath("prompts").relative_to(tmp_path)], base_dir=tmp_path)

    assert prompts.render("verify/task", {}) == "mine"


def test_unknown_template_raises():
    with pytest.raises(PromptError, match="unknown template"):
        PromptManager().render("code/missing", {})


def test_missing_include_dir_raises(tmp_path):
    with pytest.raises(PromptError):
        PromptManager(include=[tmp_path / "nope"])


def test_broken_template_raises(tmp_path):
    (tmp_path / "code").mkdir()
    (tmp_path / "code" / "task.md.j2").write_text("{% for x in %}", encoding="utf-8")
    prompts = PromptManager(include=[tmp_path])
    with pytest.raises(PromptError, match="failed to render"):
        prompts.render("code/task", {})
