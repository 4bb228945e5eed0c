"""Shared fixtures: isolated git configuration and a throwaway shared repository."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Iterator
from pathlib import Path

import pytest

from pretested_integration.domain.models import TriggerContext
from pretested_integration.observability.logging import shutdown_logging


def run_git(cwd: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and completed.returncode != 0:
        msg = f"git command failed: git {' '.join(args)}\nstdout:\n{completed.stdout}\nstderr:\n{completed.stderr}"
        raise AssertionError(msg)
    return completed


class GitWorld:
    """A bare shared repository, a developer clone and a build workspace clone.

    ``master`` is seeded with one commit. The developer clone is used to
    create and push topic branches; the workspace is what the code under
    test operates on.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.remote = root / "shared.git"
        self.dev = root / "dev"
        self.workspace = root / "workspace"

        self.remote.mkdir()
        run_git(self.remote, "init", "--bare", "-q")
        run_git(self.remote, "symbolic-ref", "HEAD", "refs/heads/master")

        self.dev.mkdir()
        run_git(self.dev, "init", "-q")
        run_git(self.dev, "symbolic-ref", "HEAD", "refs/heads/master")
        run_git(self.dev, "config", "user.name", "Developer")
        run_git(self.dev, "config", "user.email", "dev@example.invalid")
        run_git(self.dev, "remote", "add", "origin", self.remote.as_posix())
        self.commit("README.md", "shared project\n", "initial commit")
        self.push("master")

        run_git(root, "clone", "-q", self.remote.as_posix(), self.workspace.as_posix())

    @property
    def remote_url(self) -> str:
        return self.remote.as_posix()

    def checkout(self, branch: str, *, start: str | None = None) -> None:
        if start is None:
            run_git(self.dev, "checkout", "-q", branch)
        else:
            run_git(self.dev, "checkout", "-q", "-B", branch, start)

    def commit(self, rel_path: str, content: str, message: str) -> str:
        path = self.dev / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        run_git(self.dev, "add", "--all")
        run_git(self.dev, "commit", "-q", "-m", message)
        return run_git(self.dev, "rev-parse", "HEAD").stdout.strip()

    def push(self, branch: str) -> None:
        run_git(self.dev, "push", "-q", "origin", f"refs/heads/{branch}:refs/heads/{branch}")

    def remote_head(self, branch: str) -> str:
        return run_git(self.remote, "rev-parse", f"refs/heads/{branch}").stdout.strip()

    def workspace_head(self) -> str:
        return run_git(self.workspace, "rev-parse", "HEAD").stdout.strip()

    def workspace_status(self) -> str:
        return run_git(self.workspace, "status", "--porcelain", "--ignored").stdout.strip()

    def topic(self, branch: str, files: dict[str, str], *, base: str = "master") -> str:
        """Create ``branch`` from ``base`` with one commit per file, push it, return its head."""
        self.checkout(branch, start=base)
        head = ""
        for rel_path, content in files.items():
            head = self.commit(rel_path, content, f"{branch}: update {rel_path}")
        self.push(branch)
        self.checkout("master")
        return head

    def advance_master(self, rel_path: str, content: str) -> str:
        self.checkout("master")
        run_git(self.dev, "pull", "-q", "--ff-only", "origin", "master")
        head = self.commit(rel_path, content, f"master: update {rel_path}")
        self.push("master")
        return head

    def context(self, branch: str, *, build_already_failed: bool = False) -> TriggerContext:
        return TriggerContext(
            remote_url=self.remote_url,
            topic_branch=branch,
            topic_head=self.remote_head(branch),
            build_already_failed=build_already_failed,
        )


@pytest.fixture
def isolated_git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    xdg = tmp_path / "xdg"
    home.mkdir()
    xdg.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    for name in ("GIT_URL", "GIT_BRANCH", "GIT_COMMIT", "GIT_DIR", "GIT_WORK_TREE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def git_world(tmp_path: Path, isolated_git_env: None) -> GitWorld:
    root = tmp_path / "world"
    root.mkdir()
    return GitWorld(root)


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()
