from pathlib import Path

import pytest

from conftest import FakeCollaborator, FakeGit, make_plan
from phaseforge.config_loader import EngineConfig
from phaseforge.engine import Engine
from phaseforge.errors import AlreadyInitializedError, FeatureNotFoundError, NotInitializedError
from phaseforge.plan_store import StepStatus


class LocalGit(FakeGit):
    def __init__(self, root: Path):
        super().__init__()
        self.root = root

    async def ensure_worktree(self, slug: str) -> Path:
        path = self.root / ".trees" / slug
        path.mkdir(parents=True, exist_ok=True)
        return path


def _write_repo_config(repo: Path) -> None:
    (repo / ".phaseforge" / "config.yaml").write_text(
        "review:\n  enabled: false\nverification:\n  enabled: false\n", encoding="utf-8",
    )


def _engine(repo: Path, collaborator=None) -> Engine:
    return Engine(
        EngineConfig(repo_path=repo),
        collaborator=collaborator or FakeCollaborator(),
        git=LocalGit(repo),
    )


def test_init_scaffolds_state_dir(tmp_path):
    (tmp_path / ".gitignore").write_text("node_modules/", encoding="utf-8")

    _engine(tmp_path).init()

    assert (tmp_path / ".phaseforge" / "features").is_dir()
    assert (tmp_path / ".phaseforge" / "logs").is_dir()
    assert (tmp_path / ".phaseforge" / "config.yaml").exists()
    assert (tmp_path / ".trees").is_dir()
    assert (tmp_path / ".gitignore").read_text(encoding="utf-8") == "node_modules/\n.trees/\n"


def test_init_twice_fails(tmp_path):
    _engine(tmp_path).init()
    with pytest.raises(AlreadyInitializedError):
        _engine(tmp_path).init()


def test_gitignore_entry_not_duplicated(tmp_path):
    (tmp_path / ".gitignore").write_text(".trees/\n", encoding="utf-8")
    _engine(tmp_path).init()
    assert (tmp_path / ".gitignore").read_text(encoding="utf-8") == ".trees/\n"


@pytest.mark.asyncio
async def test_run_requires_init(tmp_path):
    with pytest.raises(NotInitializedError):
        await _engine(tmp_path).run("0001_auth")


@pytest.mark.asyncio
async def test_run_unknown_feature(tmp_path):
    engine = _engine(tmp_path)
    engine.init()
    with pytest.raises(FeatureNotFoundError):
        await engine.run("0009_missing")


@pytest.mark.asyncio
async def test_run_streams_to_finish(tmp_path):
    bootstrap = _engine(tmp_path)
    bootstrap.init()
    _write_repo_config(tmp_path)
    bootstrap.store.save("0001_auth", make_plan(2))
    specs = bootstrap.store.feature_dir("0001_auth") / "specs"
    specs.mkdir()
    (specs / "design.md").write_text("Use JWT.", encoding="utf-8")

    collaborator = FakeCollaborator()
    engine = _engine(tmp_path, collaborator)
    stream = await engine.run("0001_auth")
    events = await stream.collect()
    await stream.wait()

    assert events[0].kind == "started"
    assert events[-1].kind == "finished"
    assert collaborator.calls[0].context["design_spec"] == "Use JWT."
    assert collaborator.calls[0].working_dir == tmp_path / ".trees" / "0001_auth"

    plan = engine.store.load("0001_auth")
    assert all(p.result.status == StepStatus.COMPLETED for p in plan.phases)
    assert plan.execution is not None


@pytest.mark.asyncio
async def test_missing_design_doc_is_tolerated(tmp_path):
    bootstrap = _engine(tmp_path)
    bootstrap.init()
    _write_repo_config(tmp_path)
    bootstrap.store.save("0001_auth", make_plan(1))

    collaborator = FakeCollaborator()
    stream = await _engine(tmp_path, collaborator).run("0001_auth")
    events = await stream.collect()
    await stream.wait()

    assert events[-1].kind == "finished"
    assert collaborator.calls[0].context["design_spec"] == ""
