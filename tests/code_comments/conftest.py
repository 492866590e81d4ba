"""Shared fixtures: an in-memory SCM and real temporary git repositories."""

import asyncio
import subprocess
from pathlib import Path

import pytest

from code_comments.git_ops import RevisionNotFoundError


class FakeScm:
    """ScmProvider backed by dictionaries.

    diffs maps (path, from, to) to unified diff text, files maps
    (path, revision) to content and aliases maps symbolic specifiers to
    revisions. Setting gate makes get_diff wait until the event is set.
    """

    def __init__(self) -> None:
        self.diffs: dict[tuple[str, str, str], str] = {}
        self.files: dict[tuple[str, str], str] = {}
        self.aliases: dict[str, str] = {}
        self.failures: dict[tuple[str, str, str], Exception] = {}
        self.diff_calls: list[tuple[str, str, str]] = []
        self.resolve_calls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def get_diff(self, repo: str, path: str, from_revision: str, to_revision: str) -> str:
        key = (path, from_revision, to_revision)
        self.diff_calls.append(key)
        if self.gate is not None:
            await self.gate.wait()
        if key in self.failures:
            raise self.failures[key]
        return self.diffs.get(key, "")

    async def resolve_revision(self, repo: str, specifier: str) -> str:
        self.resolve_calls.append(specifier)
        await asyncio.sleep(0)
        if specifier in self.aliases:
            return self.aliases[specifier]
        raise RevisionNotFoundError(f"Unknown revision: {specifier}")

    async def show_file(self, repo: str, path: str, revision: str) -> str:
        if (path, revision) not in self.files:
            raise RevisionNotFoundError(f"{path} does not exist in {revision}")
        return self.files[(path, revision)]


@pytest.fixture
def fake_scm() -> FakeScm:
    """In-memory SCM collaborator."""
    return FakeScm()


def _run_git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        [
            "git",
            "-c",
            "user.name=Test User",
            "-c",
            "user.email=test@example.com",
            "-c",
            "commit.gpgsign=false",
            *args,
        ],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


@pytest.fixture
def git():
    """Run a git command in a repository and return its stdout."""
    return _run_git


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create an initialized, empty git repository."""
    repo = tmp_path / "repo"
    repo.mkdir()
    _run_git(repo, "init", "-q")
    return repo


@pytest.fixture
def commit_file():
    """Write a file, commit it, and return the new commit id."""

    def commit(repo: Path, path: str, content: str, message: str = "update") -> str:
        target = repo / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        _run_git(repo, "add", path)
        _run_git(repo, "commit", "-q", "-m", message)
        return _run_git(repo, "rev-parse", "HEAD").strip()

    return commit
