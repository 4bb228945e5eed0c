"""Git CLI backend implementing the repository capability set."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

from pretested_integration.constants import DEFAULT_GIT_EXECUTABLE, DEFAULT_REMOTE_NAME
from pretested_integration.domain.errors import (
    IntegrationAdvanceConflict,
    IntegrationError,
    InvalidRevision,
    MergeConflict,
    RepositoryUnavailable,
)
from pretested_integration.domain.models import normalize_revision, redact_remote_url

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)

_BRANCH_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9._/-]+$")

_UNAVAILABLE_MARKERS: Final[tuple[str, ...]] = (
    "could not read from remote repository",
    "unable to access",
    "does not appear to be a git repository",
    "could not resolve host",
    "connection refused",
    "connection timed out",
    "repository not found",
    "authentication failed",
    "permission denied",
    "not a git repository",
)
_INVALID_REVISION_MARKERS: Final[tuple[str, ...]] = (
    "unknown revision",
    "bad revision",
    "bad object",
    "not a valid object name",
    "invalid object name",
    "ambiguous argument",
    "not something we can merge",
)
_PUSH_REJECTED_MARKERS: Final[tuple[str, ...]] = (
    "[rejected]",
    "non-fast-forward",
    "fetch first",
    "stale info",
    "updates were rejected",
)


class GitCommandError(RuntimeError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)

    @property
    def output(self) -> str:
        return "\n".join(part.strip() for part in (self.stdout, self.stderr) if part.strip())


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for deterministic git wrapper behavior."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


class GitRepositoryClient:
    """Deterministic wrapper around the git CLI for one build workspace."""

    def __init__(
        self,
        workspace: Path | str,
        *,
        remote_name: str = DEFAULT_REMOTE_NAME,
        git_executable: str = DEFAULT_GIT_EXECUTABLE,
        timeout_seconds: float | None = None,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.workspace = Path(workspace).resolve()
        self.remote_name = remote_name
        self.git_executable = git_executable
        self.timeout_seconds = timeout_seconds
        self._env_overrides = dict(env_overrides or {})

    def resolve_head(self, remote_url: str, branch_name: str) -> str:
        """Return the remote head of ``branch_name`` via ``git ls-remote``."""
        branch = self._require_branch_name(branch_name)
        ref = f"refs/heads/{branch}"
        display_url = redact_remote_url(remote_url)
        try:
            output = self._run_git(["ls-remote", "--heads", remote_url, ref]).stdout
        except GitCommandError as exc:
            raise _classify_failure(
                exc,
                f"Unable to resolve {branch} on {display_url}",
                branch=branch,
                remote_url=display_url,
            ) from exc

        for line in output.splitlines():
            sha, _, name = line.partition("\t")
            if name.strip() == ref:
                return normalize_revision(sha, field_name=f"head of {branch} on {display_url}")

        raise RepositoryUnavailable(
            f"Branch {branch} does not exist on {display_url}",
            branch=branch,
            remote_url=display_url,
        )

    def checkout_branch(self, branch_name: str, revision: str) -> None:
        """Force-check out ``branch_name`` reset to exactly ``revision``."""
        branch = self._require_branch_name(branch_name)
        rev = normalize_revision(revision)
        self._ensure_commit(rev)
        try:
            self._run_git(["checkout", "--force", "-B", branch, rev])
        except GitCommandError as exc:
            raise _classify_failure(
                exc, f"Unable to check out {branch} at {rev}", branch=branch, revision=rev
            ) from exc

    def merge(self, revision: str) -> None:
        """Merge ``revision`` into HEAD, raising ``MergeConflict`` on any failure."""
        rev = normalize_revision(revision)
        self._ensure_commit(rev)
        self._ensure_local_identity()

        result = self._run_git(["merge", "--no-edit", rev], check=False)
        if result.returncode == 0:
            return

        conflicts = tuple(
            line.strip()
            for line in self._run_git(
                ["diff", "--name-only", "--diff-filter=U"], check=False
            ).stdout.splitlines()
            if line.strip()
        )
        tool_output = "\n".join(
            part.strip() for part in (result.stdout, result.stderr) if part.strip()
        )
        branch = self._current_branch()
        raise MergeConflict(
            f"Merge of {rev} into {branch or 'HEAD'} failed: {tool_output or 'unknown error'}",
            tool_output=tool_output,
            conflicts=conflicts,
            revision=rev,
            branch=branch,
        )

    def ancestry_diff(self, from_revision: str, to_revision: str) -> tuple[str, ...]:
        """Return revisions in ``to_revision`` missing from ``from_revision``, oldest first."""
        base = normalize_revision(from_revision, field_name="from_revision")
        tip = normalize_revision(to_revision, field_name="to_revision")
        self._ensure_commit(base)
        self._ensure_commit(tip)
        try:
            output = self._run_git(["rev-list", "--reverse", tip, f"^{base}"]).stdout
        except GitCommandError as exc:
            raise _classify_failure(
                exc,
                f"Unable to list revisions between {base} and {tip}",
                from_revision=base,
                to_revision=tip,
            ) from exc
        return tuple(
            normalize_revision(line, field_name="rev-list entry")
            for line in output.splitlines()
            if line.strip()
        )

    def clean_working_tree(self) -> None:
        """Abort any merge in progress and remove tracked and untracked changes."""
        if self._run_git(["rev-parse", "-q", "--verify", "MERGE_HEAD"], check=False).returncode == 0:
            self._run_git(["merge", "--abort"], check=False)
        try:
            self._run_git(["reset", "--hard", "--quiet", "HEAD"])
            self._run_git(["clean", "-f", "-d", "-x", "--quiet"])
        except GitCommandError as exc:
            raise _classify_failure(exc, f"Unable to clean workspace {self.workspace}") from exc

    def push(self, remote_name: str, branch_name: str) -> None:
        """Push the local branch to the same name on the remote; never forces."""
        branch = self._require_branch_name(branch_name)
        refspec = f"refs/heads/{branch}:refs/heads/{branch}"
        try:
            self._run_git(["push", "--porcelain", remote_name, refspec])
        except GitCommandError as exc:
            lowered = exc.output.lower()
            if any(marker in lowered for marker in _PUSH_REJECTED_MARKERS):
                raise IntegrationAdvanceConflict(
                    f"Push of {branch} to {remote_name} was rejected because the remote "
                    "branch advanced since checkout",
                    tool_output=exc.output,
                    branch=branch,
                    remote=remote_name,
                ) from exc
            raise _classify_failure(
                exc, f"Unable to push {branch} to {remote_name}", branch=branch, remote=remote_name
            ) from exc

    def workspace_head(self) -> str:
        """Return the revision currently checked out in the workspace."""
        try:
            return self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        except GitCommandError as exc:
            raise _classify_failure(exc, f"Unable to read HEAD of {self.workspace}") from exc

    def git_dir(self) -> Path:
        """Return the workspace's git directory.

        For linked worktrees and submodule checkouts ``.git`` is a file, and
        this is the per-checkout directory it points to.
        """
        try:
            output = self._run_git(["rev-parse", "--absolute-git-dir"]).stdout.strip()
        except GitCommandError as exc:
            raise _classify_failure(
                exc, f"Workspace {self.workspace} is not a git checkout"
            ) from exc
        return Path(output)

    def _ensure_commit(self, revision: str) -> None:
        if self._has_commit(revision):
            return

        logger.debug("Fetching %s to obtain missing revision %s", self.remote_name, revision)
        try:
            self._run_git(["fetch", "--quiet", "--no-tags", self.remote_name])
        except GitCommandError as exc:
            raise _classify_failure(
                exc,
                f"Unable to fetch {self.remote_name} for revision {revision}",
                revision=revision,
                remote=self.remote_name,
            ) from exc

        if not self._has_commit(revision):
            raise InvalidRevision(
                f"Revision {revision} does not exist in {self.remote_name}",
                revision=revision,
                remote=self.remote_name,
            )

    def _has_commit(self, revision: str) -> bool:
        return (
            self._run_git(["cat-file", "-e", f"{revision}^{{commit}}"], check=False).returncode
            == 0
        )

    def _ensure_local_identity(self) -> None:
        if self._run_git(["config", "--get", "user.name"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.name", "pretested-integration"])
        if self._run_git(["config", "--get", "user.email"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.email", "pretested@example.invalid"])

    def _current_branch(self) -> str | None:
        branch = self._run_git(["branch", "--show-current"], check=False).stdout.strip()
        return branch or None

    def _require_branch_name(self, branch_name: str) -> str:
        branch = branch_name.strip() if isinstance(branch_name, str) else ""
        if (
            not branch
            or not _BRANCH_NAME_RE.fullmatch(branch)
            or ".." in branch
            or branch.startswith(("-", "/"))
            or branch.endswith(("/", ".lock"))
        ):
            raise RepositoryUnavailable(f"Invalid branch name: {branch_name!r}", branch=branch_name)
        return branch

    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> CommandResult:
        command = (self.git_executable, *args)
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        logger.debug("Running %s", " ".join(command[:2]), extra={"cwd": str(self.workspace)})
        try:
            completed = subprocess.run(
                command,
                cwd=self.workspace,
                env=env,
                text=True,
                capture_output=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise RepositoryUnavailable(
                f"git executable {self.git_executable!r} or workspace {self.workspace} not found"
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise RepositoryUnavailable(
                f"git {args[0] if args else ''} timed out after {self.timeout_seconds}s"
            ) from exc

        result = CommandResult(
            command=command,
            cwd=self.workspace.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


def _classify_failure(error: GitCommandError, message: str, **details: str | None) -> IntegrationError:
    lowered = error.output.lower()
    full_message = f"{message}: {error.output}" if error.output else message
    if any(marker in lowered for marker in _INVALID_REVISION_MARKERS):
        return InvalidRevision(full_message, **details)
    if not any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        logger.debug("Unrecognized git failure treated as unavailable: %s", error.output)
    return RepositoryUnavailable(full_message, **details)


__all__ = [
    "CommandResult",
    "GitCommandError",
    "GitRepositoryClient",
]
