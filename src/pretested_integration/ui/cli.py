"""Command-line interface router for pretested-integration."""

from __future__ import annotations

import argparse
import json
import os
import sys
import traceback
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from pretested_integration.config import (
    ConfigLoadError,
    ConfigValidationError,
    bind_git_dir,
    dump_effective_config,
    env_bindings,
    load_config,
    redact_config,
)
from pretested_integration.domain import ids
from pretested_integration.domain.errors import ErrorKind, IntegrationError
from pretested_integration.domain.events import IntegrationEvent
from pretested_integration.domain.models import (
    ChangeIdentifier,
    IntegrationConfig,
    TriggerContext,
)
from pretested_integration.integration_plane import (
    ChangeLedger,
    ChangeLedgerStateError,
    GitRepositoryClient,
    PretestedIntegration,
)
from pretested_integration.main import ExitCode, exit_code_for
from pretested_integration.observability import (
    EventBus,
    correlation_scope,
    setup_logging,
    shutdown_logging,
)
from pretested_integration.ui.render import CLIRenderer, create_renderer


@dataclass(eq=False, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = ExitCode.CONFIG_ERROR

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class _Session:
    workspace: Path
    config: dict[str, Any]
    integration: IntegrationConfig
    client: GitRepositoryClient
    workflow: PretestedIntegration
    state_file: Path


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for each lifecycle point."""

    parser = argparse.ArgumentParser(
        prog="pretested",
        description=(
            "pretested-integration: merge a topic branch into the integration branch,\n"
            "build it, and push only when the build succeeds.\n\n"
            "Typical CI job:\n"
            "  pretested next              Print the change to integrate (or nothing)\n"
            "  pretested prepare           Merge it into a fresh integration checkout\n"
            "  <run the build>\n"
            "  pretested commit            Push on success\n"
            "  pretested rollback          Clean the workspace on failure\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--workspace",
        default=".",
        help="Build workspace (a git clone of the shared repository; default: current directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: <workspace>/pretested.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--branch",
        default=None,
        help="Integration branch name (overrides config; empty means master).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output, lifecycle events and tracebacks.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    trigger = argparse.ArgumentParser(add_help=False)
    trigger.add_argument(
        "--context-file",
        default=None,
        help="YAML/JSON trigger context written by the build host.",
    )
    trigger.add_argument("--remote-url", default=None, help="Shared repository URL (GIT_URL).")
    trigger.add_argument("--topic-branch", default=None, help="Topic branch name (GIT_BRANCH).")
    trigger.add_argument("--topic-head", default=None, help="Topic branch head (GIT_COMMIT).")

    subparsers = parser.add_subparsers(dest="command", required=True)

    next_parser = subparsers.add_parser(
        "next",
        parents=[common, trigger],
        help="Detect the next change to integrate",
        description=(
            "Print the topic head when it has revisions the integration branch lacks\n"
            "and it was not already attempted. Prints nothing when there is no work.\n\n"
            "Examples:\n"
            "  pretested next\n"
            "  pretested next --previous <SHA> --no-record\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    next_parser.add_argument(
        "--previous",
        default=None,
        help="Previously attempted change (default: read from the change ledger).",
    )
    next_parser.add_argument(
        "--build-failed",
        action="store_true",
        default=False,
        help="The build outcome is already recorded as failed; report no work.",
    )
    next_parser.add_argument(
        "--no-record",
        action="store_true",
        default=False,
        help="Do not record the detected change in the change ledger.",
    )
    next_parser.set_defaults(handler=_cmd_next)

    prepare_parser = subparsers.add_parser(
        "prepare",
        parents=[common, trigger],
        help="Check out the fresh integration tip and merge the change",
    )
    prepare_parser.add_argument(
        "--change",
        default=None,
        help="Revision to merge (default: the topic head from the trigger context).",
    )
    prepare_parser.set_defaults(handler=_cmd_prepare)

    commit_parser = subparsers.add_parser(
        "commit",
        parents=[common, trigger],
        help="Push the merged integration branch after a successful build",
    )
    commit_parser.set_defaults(handler=_cmd_commit)

    rollback_parser = subparsers.add_parser(
        "rollback",
        parents=[common, trigger],
        help="Discard local changes after a failed build or merge",
    )
    rollback_parser.set_defaults(handler=_cmd_rollback)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective (redacted) configuration",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        _get_renderer(namespace).error(str(exc))
        return exc.exit_code
    except IntegrationError as exc:
        return _report_integration_error(namespace, exc)
    except (ConfigLoadError, ConfigValidationError, ChangeLedgerStateError) as exc:
        _get_renderer(namespace).error(str(exc))
        return int(ExitCode.CONFIG_ERROR)
    except Exception as exc:
        if _flag(namespace, "verbose"):
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            print(f"internal error: {exc.__class__.__name__}: {exc}", file=sys.stderr)
        return int(ExitCode.INTERNAL_ERROR)
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_next(args: argparse.Namespace) -> int:
    context = _trigger_context(args, build_already_failed=_flag(args, "build_failed"))
    with _session(args, context) as session:
        ledger = ChangeLedger(session.state_file)
        branch = session.integration.branch

        previous_arg = _optional_str(getattr(args, "previous", None))
        if previous_arg is not None:
            previous = ChangeIdentifier(previous_arg)
        else:
            previous = ledger.previous(branch, context.topic_branch)

        change = session.workflow.next_change(previous, context)
        recorded = False
        if change is not None and not _flag(args, "no_record"):
            ledger.record(branch, context.topic_branch, change)
            recorded = True

    payload: dict[str, object] = {
        "command": "next",
        "integration_branch": branch,
        "topic_branch": context.topic_branch,
        "previous": previous.revision if previous is not None else None,
        "change": change.revision if change is not None else None,
        "recorded": recorded,
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    if change is not None:
        renderer.text(change.revision)
    else:
        renderer.note(f"nothing to integrate from {context.topic_branch}")
    return int(ExitCode.SUCCESS)


def _cmd_prepare(args: argparse.Namespace) -> int:
    context = _trigger_context(args)
    change_arg = _optional_str(getattr(args, "change", None)) or context.topic_head
    if not change_arg:
        raise CLIError("no change given: pass --change or provide the topic head")
    change = ChangeIdentifier(change_arg)

    with _session(args, context) as session, correlation_scope(change_id=change.revision):
        with _released_on_retry(session, context, change):
            base = session.workflow.prepare(change, context)

    payload: dict[str, object] = {
        "command": "prepare",
        "change": change.revision,
        "integration_branch": base.name,
        "integration_base": base.head,
        "topic_branch": context.topic_branch,
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Integration branch", base.name)
    renderer.kv("Base", base.head)
    renderer.kv("Merged", f"{change.revision} ({context.topic_branch})")
    return int(ExitCode.SUCCESS)


def _cmd_commit(args: argparse.Namespace) -> int:
    context = _trigger_context(args, require_head=False)
    with _session(args, context) as session:
        with _released_on_retry(session, context):
            session.workflow.commit(context)
        integration = session.integration
        head = session.client.workspace_head()

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "commit",
                "head": head,
                "integration_branch": integration.branch,
                "remote": integration.remote_name,
                "topic_branch": context.topic_branch,
            }
        )
        return int(ExitCode.SUCCESS)

    _get_renderer(args).ok(
        f"pushed {integration.branch} to {integration.remote_name} at {head[:12]}"
    )
    return int(ExitCode.SUCCESS)


def _cmd_rollback(args: argparse.Namespace) -> int:
    context = _trigger_context(args, require_head=False)
    with _session(args, context) as session:
        session.workflow.rollback(context)
        workspace = session.workspace

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "rollback",
                "workspace": workspace.as_posix(),
                "topic_branch": context.topic_branch,
            }
        )
        return int(ExitCode.SUCCESS)

    _get_renderer(args).ok(f"cleaned {workspace.as_posix()}")
    return int(ExitCode.SUCCESS)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, _workspace(args))
    profile = _optional_str(getattr(args, "profile", None))
    env_overrides = sorted(name for name in env_bindings() if name in os.environ)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "config",
                "active_profile": profile,
                "env_overrides": env_overrides,
                "config": redact_config(config),
            }
        )
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.kv("Environment overrides", ", ".join(env_overrides) or "(none)")
    renderer.text(dump_effective_config(config, indent=2))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session(args: argparse.Namespace, context: TriggerContext) -> Iterator[_Session]:
    """Load config, start logging, and bind one workflow to the workspace."""

    workspace = _workspace(args)
    config = _load_effective_config(args, workspace)
    integration = IntegrationConfig.from_config(config)

    git_section = _mapping(config.get("git"))
    timeout = git_section.get("timeout_seconds")
    client = GitRepositoryClient(
        workspace,
        remote_name=integration.remote_name,
        git_executable=str(git_section.get("executable", "git")),
        timeout_seconds=float(timeout) if isinstance(timeout, (int, float)) and timeout > 0 else None,
    )
    config = bind_git_dir(config, client.git_dir())

    event_bus = EventBus()
    if _flag(args, "verbose"):
        event_bus.subscribe(None, _print_event)

    invocation_id = ids.generate_invocation_id()
    setup_logging(_mapping(config.get("observability")), invocation_id=invocation_id)
    try:
        with correlation_scope(
            invocation_id=invocation_id,
            integration_branch=integration.branch,
            topic_branch=context.topic_branch,
        ):
            yield _Session(
                workspace=workspace,
                config=config,
                integration=integration,
                client=client,
                workflow=PretestedIntegration(client, integration, event_bus=event_bus),
                state_file=Path(str(_mapping(config.get("paths")).get("state_file"))),
            )
    finally:
        shutdown_logging()


@contextmanager
def _released_on_retry(
    session: _Session, context: TriggerContext, change: ChangeIdentifier | None = None
) -> Iterator[None]:
    """Forget the change recorded by ``next`` when this step fails but may be retried.

    Otherwise the retried job's ``next`` would treat the same head as a repeated
    trigger and the change would never be integrated. A rejected push counts too:
    the job re-triggers against the advanced integration branch.
    """
    ledger = ChangeLedger(session.state_file)
    try:
        yield
    except IntegrationError as exc:
        if exc.retryable or exc.kind is ErrorKind.INTEGRATION_ADVANCE_CONFLICT:
            branch = session.integration.branch
            recorded = ledger.previous(branch, context.topic_branch)
            if recorded is not None and (change is None or recorded == change):
                ledger.forget(branch, context.topic_branch)
        raise


def _trigger_context(
    args: argparse.Namespace,
    *,
    build_already_failed: bool = False,
    require_head: bool = True,
) -> TriggerContext:
    """Build the trigger context: explicit flags over a context file over GIT_* variables."""

    overrides = {
        key: value
        for key in ("remote_url", "topic_branch", "topic_head")
        if (value := _optional_str(getattr(args, key, None))) is not None
    }

    base: TriggerContext | None = None
    context_file = _optional_str(getattr(args, "context_file", None))
    if context_file is not None:
        try:
            base = TriggerContext.from_file(context_file)
        except ValueError as exc:
            raise CLIError(str(exc)) from exc
    else:
        try:
            base = TriggerContext.from_environ(
                os.environ, require_head=require_head and "topic_head" not in overrides
            )
        except ValueError:
            base = None

    if base is not None:
        return replace(
            base,
            **overrides,
            build_already_failed=base.build_already_failed or build_already_failed,
        )

    required = ("remote_url", "topic_branch", "topic_head") if require_head else (
        "remote_url",
        "topic_branch",
    )
    missing = [key for key in required if key not in overrides]
    if missing:
        flags = ", ".join(f"--{key.replace('_', '-')}" for key in missing)
        raise CLIError(
            f"missing trigger context: {flags} (or --context-file, or GIT_URL/GIT_BRANCH/GIT_COMMIT)"
        )
    try:
        return TriggerContext(
            remote_url=overrides["remote_url"],
            topic_branch=overrides["topic_branch"],
            topic_head=overrides.get("topic_head", ""),
            build_already_failed=build_already_failed,
        )
    except ValueError as exc:
        raise CLIError(str(exc)) from exc


def _report_integration_error(args: argparse.Namespace, exc: IntegrationError) -> int:
    exit_code = exit_code_for(exc)
    if _flag(args, "json"):
        _emit_json({"command": getattr(args, "command", None), "error": exc.to_dict()})
    _get_renderer(args).integration_error(exc)
    return int(exit_code)


def _print_event(event: IntegrationEvent) -> None:
    print(event.to_json(), file=sys.stderr)


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _workspace(args: argparse.Namespace) -> Path:
    raw = getattr(args, "workspace", ".")
    workspace = Path(raw if isinstance(raw, str) else ".").expanduser().resolve()
    if not workspace.is_dir():
        raise CLIError(f"workspace is not a directory: {workspace}")
    return workspace


def _load_effective_config(args: argparse.Namespace, workspace: Path) -> dict[str, Any]:
    overrides: dict[str, object] = {}
    branch = getattr(args, "branch", None)
    if isinstance(branch, str):
        overrides["integration.branch"] = branch
    return load_config(
        _optional_str(getattr(args, "config_path", None)),
        profile=_optional_str(getattr(args, "profile", None)),
        cli_overrides=overrides,
        base_dir=workspace,
    )


def _mapping(value: object) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
