"""
pretested-integration: restart-safe record of the last change per branch pair.

File: src/pretested_integration/integration_plane/change_ledger.py
Last updated: 2026-10-18

Purpose
- Carry the "previous change" between separate CLI invocations, so a rebuilt
  job for the same topic head reports no work.

What should be included in this file
- ChangeLedger with previous/record/forget keyed by (integration, topic) branch.
- Strict reload validation with a dedicated state error.

Functional requirements
- Writes are atomic (temp file, then replace) and byte-deterministic.
- Corrupt or unknown-version state is rejected, never silently reset.

Non-functional requirements
- The default location is inside the git directory so ``git clean`` keeps it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from pretested_integration.constants import CHANGE_LEDGER_SCHEMA_VERSION
from pretested_integration.domain.errors import InvalidRevision
from pretested_integration.domain.models import ChangeIdentifier

_REQUIRED_STATE_KEYS: Final[tuple[str, ...]] = ("schema_version", "entries")
_REQUIRED_ENTRY_KEYS: Final[tuple[str, ...]] = (
    "integration_branch",
    "topic_branch",
    "change",
    "recorded_at",
)


class ChangeLedgerStateError(ValueError):
    """Raised when the persisted ledger is corrupted or incomplete."""


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """Last change seen for one (integration branch, topic branch) pair."""

    integration_branch: str
    topic_branch: str
    change: ChangeIdentifier
    recorded_at: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.integration_branch, self.topic_branch)

    def to_dict(self) -> dict[str, str]:
        return {
            "integration_branch": self.integration_branch,
            "topic_branch": self.topic_branch,
            "change": self.change.revision,
            "recorded_at": self.recorded_at,
        }


class ChangeLedger:
    """File-backed ledger feeding ``previous_change`` across separate processes."""

    def __init__(self, state_file: str | Path) -> None:
        self._state_file = Path(state_file).expanduser().resolve()
        self._entries: dict[tuple[str, str], LedgerEntry] = {}
        self._load_state()

    @property
    def state_file(self) -> Path:
        return self._state_file

    @property
    def entries(self) -> tuple[LedgerEntry, ...]:
        return tuple(self._entries[key] for key in sorted(self._entries))

    def previous(self, integration_branch: str, topic_branch: str) -> ChangeIdentifier | None:
        entry = self._entries.get(_key(integration_branch, topic_branch))
        return entry.change if entry is not None else None

    def record(
        self,
        integration_branch: str,
        topic_branch: str,
        change: ChangeIdentifier,
    ) -> LedgerEntry:
        """Remember ``change`` as the latest processed for the branch pair and persist."""
        integration, topic = _key(integration_branch, topic_branch)
        entry = LedgerEntry(
            integration_branch=integration,
            topic_branch=topic,
            change=change,
            recorded_at=datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
        )
        self._entries[entry.key] = entry
        self._persist_state()
        return entry

    def forget(self, integration_branch: str, topic_branch: str) -> bool:
        """Drop the entry for the branch pair. Returns ``True`` when one existed."""
        removed = self._entries.pop(_key(integration_branch, topic_branch), None)
        if removed is None:
            return False
        self._persist_state()
        return True

    def _load_state(self) -> None:
        if not self._state_file.exists():
            return

        try:
            payload_raw = self._state_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise ChangeLedgerStateError(
                f"failed to read change ledger {self._state_file}: {exc}"
            ) from exc

        try:
            parsed = json.loads(payload_raw)
        except json.JSONDecodeError as exc:
            raise ChangeLedgerStateError(
                f"invalid JSON in change ledger {self._state_file}: {exc.msg}"
            ) from exc

        try:
            self._apply_state_payload(parsed)
        except ChangeLedgerStateError:
            raise
        except (TypeError, ValueError, KeyError, InvalidRevision) as exc:
            raise ChangeLedgerStateError(f"invalid change ledger {self._state_file}: {exc}") from exc

    def _apply_state_payload(self, parsed: object) -> None:
        if not isinstance(parsed, dict):
            raise ChangeLedgerStateError("change ledger root must be an object")

        missing_keys = [key for key in _REQUIRED_STATE_KEYS if key not in parsed]
        if missing_keys:
            raise ChangeLedgerStateError(
                f"change ledger missing required keys: {', '.join(missing_keys)}"
            )

        schema_version = parsed["schema_version"]
        if schema_version != CHANGE_LEDGER_SCHEMA_VERSION:
            raise ChangeLedgerStateError(
                "unsupported change ledger schema version "
                f"{schema_version!r}; expected {CHANGE_LEDGER_SCHEMA_VERSION}"
            )

        entries_raw = parsed["entries"]
        if not isinstance(entries_raw, list):
            raise ChangeLedgerStateError("change ledger entries must be a list")

        loaded: dict[tuple[str, str], LedgerEntry] = {}
        for item in entries_raw:
            if not isinstance(item, dict):
                raise ChangeLedgerStateError("change ledger entries must be objects")
            missing = [key for key in _REQUIRED_ENTRY_KEYS if key not in item]
            if missing:
                raise ChangeLedgerStateError(
                    f"change ledger entry missing required keys: {', '.join(missing)}"
                )
            integration, topic = _key(item["integration_branch"], item["topic_branch"])
            recorded_at = item["recorded_at"]
            if not isinstance(recorded_at, str):
                raise ChangeLedgerStateError("change ledger recorded_at must be a string")
            entry = LedgerEntry(
                integration_branch=integration,
                topic_branch=topic,
                change=ChangeIdentifier(item["change"]),
                recorded_at=recorded_at,
            )
            if entry.key in loaded:
                raise ChangeLedgerStateError(
                    f"change ledger contains duplicate entry for {integration} <- {topic}"
                )
            loaded[entry.key] = entry

        self._entries = loaded

    def _persist_state(self) -> None:
        payload = {
            "schema_version": CHANGE_LEDGER_SCHEMA_VERSION,
            "entries": [entry.to_dict() for entry in self.entries],
        }

        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_state_file = self._state_file.with_suffix(f"{self._state_file.suffix}.tmp")
        tmp_state_file.write_text(
            json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        tmp_state_file.replace(self._state_file)


def _key(integration_branch: object, topic_branch: object) -> tuple[str, str]:
    return (
        _normalize_identifier(integration_branch, field_name="integration_branch"),
        _normalize_identifier(topic_branch, field_name="topic_branch"),
    )


def _normalize_identifier(value: object, *, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} must not be empty")
    return normalized


__all__ = ["ChangeLedger", "ChangeLedgerStateError", "LedgerEntry"]
