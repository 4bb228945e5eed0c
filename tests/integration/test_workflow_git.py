"""End-to-end runs of the integration workflow over real git repositories."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from pretested_integration.domain.errors import IntegrationAdvanceConflict
from pretested_integration.domain.events import EventType
from pretested_integration.domain.models import (
    ChangeIdentifier,
    IntegrationConfig,
    InvocationState,
    WorkflowOutcome,
)
from pretested_integration.integration_plane import (
    ChangeLedger,
    GitRepositoryClient,
    PretestedIntegration,
)
from pretested_integration.observability.events import EventBus

if TYPE_CHECKING:
    from tests.conftest import GitWorld

pytestmark = pytest.mark.integration


def _workflow(world: GitWorld, branch: str = "master") -> tuple[PretestedIntegration, EventBus]:
    bus = EventBus()
    client = GitRepositoryClient(world.workspace)
    return PretestedIntegration(client, IntegrationConfig(branch=branch), event_bus=bus), bus


def test_passing_build_integrates_topic(git_world: GitWorld) -> None:
    topic_head = git_world.topic("feature/login", {"login.py": "def login():\n    return True\n"})
    master_before = git_world.remote_head("master")
    workflow, bus = _workflow(git_world)

    def build() -> bool:
        # The build sees the merge result, not the bare topic branch.
        return (git_world.workspace / "login.py").is_file()

    result = workflow.run(git_world.context("feature/login"), build)

    assert result.outcome == WorkflowOutcome.SUCCESS
    assert result.integration_base == master_before
    assert result.change == ChangeIdentifier(topic_head)
    assert git_world.remote_head("master") == git_world.workspace_head()
    will_merge = bus.replay(event_type=EventType.REVISION_WILL_MERGE)
    assert [event.payload["revision"] for event in will_merge] == [topic_head]

    # Once integrated, the same topic has nothing left to merge.
    again = workflow.run(git_world.context("feature/login"), build)
    assert again.outcome is None
    assert again.state == InvocationState.IDLE


def test_failing_build_leaves_remote_untouched(git_world: GitWorld) -> None:
    git_world.topic("broken", {"broken.py": "syntax error here\n"})
    master_before = git_world.remote_head("master")
    workflow, _ = _workflow(git_world)

    def build() -> bool:
        (git_world.workspace / "build.log").write_text("compilation failed\n", encoding="utf-8")
        return False

    result = workflow.run(git_world.context("broken"), build)

    assert result.outcome == WorkflowOutcome.FAILURE
    assert result.state == InvocationState.ROLLED_BACK
    assert git_world.remote_head("master") == master_before
    assert git_world.workspace_status() == ""


def test_merge_conflict_is_rolled_back(git_world: GitWorld) -> None:
    git_world.topic("rewrite-readme", {"README.md": "topic version\n"})
    master_head = git_world.advance_master("README.md", "master version\n")
    workflow, bus = _workflow(git_world)
    builds: list[int] = []

    result = workflow.run(git_world.context("rewrite-readme"), lambda: builds.append(1) or True)

    assert result.outcome == WorkflowOutcome.MERGE_CONFLICT
    assert result.conflicts == ("README.md",)
    assert builds == []
    assert git_world.remote_head("master") == master_head
    assert git_world.workspace_status() == ""
    assert len(bus.replay(event_type=EventType.MERGE_CONFLICT)) == 1


def test_remote_advance_during_build_faults(git_world: GitWorld) -> None:
    git_world.topic("feature", {"feature.txt": "on\n"})
    workflow, _ = _workflow(git_world)
    raced: list[str] = []

    def build() -> bool:
        raced.append(git_world.advance_master("other.txt", "someone else\n"))
        return True

    with pytest.raises(IntegrationAdvanceConflict):
        workflow.run(git_world.context("feature"), build)

    assert git_world.remote_head("master") == raced[0]


def test_ledger_feeds_previous_change_between_invocations(git_world: GitWorld) -> None:
    topic_head = git_world.topic("feature", {"feature.txt": "on\n"})
    ledger = ChangeLedger(git_world.workspace / ".git" / "pretested" / "state.json")
    workflow, _ = _workflow(git_world)
    context = git_world.context("feature")

    change = workflow.next_change(ledger.previous("master", "feature"), context)
    assert change == ChangeIdentifier(topic_head)
    ledger.record("master", "feature", change)

    # A second trigger for the same head, e.g. a rebuilt job, finds nothing.
    reloaded = ChangeLedger(ledger.state_file)
    assert workflow.next_change(reloaded.previous("master", "feature"), context) is None

    # A new push to the topic branch is picked up again.
    git_world.checkout("feature")
    new_head = git_world.commit("feature.txt", "on and improved\n", "improve feature")
    git_world.push("feature")
    git_world.checkout("master")
    assert workflow.next_change(
        reloaded.previous("master", "feature"), git_world.context("feature")
    ) == ChangeIdentifier(new_head)


def test_non_default_integration_branch(git_world: GitWorld) -> None:
    git_world.checkout("develop", start="master")
    git_world.push("develop")
    git_world.checkout("master")
    git_world.topic("feature", {"feature.txt": "on\n"}, base="develop")
    master_before = git_world.remote_head("master")
    workflow, _ = _workflow(git_world, branch="develop")

    result = workflow.run(git_world.context("feature"), lambda: True)

    assert result.outcome == WorkflowOutcome.SUCCESS
    assert git_world.remote_head("develop") == git_world.workspace_head()
    assert git_world.remote_head("master") == master_before


def test_build_output_from_earlier_run_is_cleaned_before_prepare(git_world: GitWorld) -> None:
    git_world.topic("generator", {"generator.py": "print('generated')\n"})
    workflow, _ = _workflow(git_world)

    def generating_build() -> bool:
        (git_world.workspace / "gen.txt").write_text("generated\n", encoding="utf-8")
        return True

    first = workflow.run(git_world.context("generator"), generating_build)
    assert first.outcome == WorkflowOutcome.SUCCESS
    assert (git_world.workspace / "gen.txt").is_file()

    # The next topic checks the generated file in; the leftover copy must not block the merge.
    git_world.topic("check-in-gen", {"gen.txt": "tracked now\n"})
    second = workflow.run(git_world.context("check-in-gen"), lambda: True)

    assert second.outcome == WorkflowOutcome.SUCCESS
    assert (git_world.workspace / "gen.txt").read_text(encoding="utf-8") == "tracked now\n"
    assert git_world.remote_head("master") == git_world.workspace_head()
