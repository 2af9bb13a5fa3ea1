"""Records kept by the vulnerability worker's store."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class ValidationError(ValueError):
    """Raised when a record is missing required data or holds a bad value."""


class TriageState(str, enum.Enum):
    """The state of triage work on a CVE or GHSA.

    Values are strings so that stored values are immune to renumbering.
    """

    # No action is needed (perhaps because it is rejected, reserved or invalid).
    NO_ACTION_NEEDED = "NoActionNeeded"
    # An issue needs to be created.
    NEEDS_ISSUE = "NeedsIssue"
    # An issue has been created in the issue tracker.
    ISSUE_CREATED = "IssueCreated"
    # Already handled under an alias (a CVE or GHSA for the same vulnerability).
    ALIAS = "Alias"
    # The entry changed after the issue was created.
    UPDATED_SINCE_ISSUE_CREATION = "UpdatedSinceIssueCreation"
    # The triager might think this is relevant to Go, but it is not.
    FALSE_POSITIVE = "FalsePositive"
    # The Go vuln DB already has an entry that covers this one.
    HAS_VULN = "HasVuln"

    @classmethod
    def _missing_(cls, value: object) -> TriageState:
        raise ValidationError(f"bad TriageState {value!r}")

    def validate(self) -> None:
        """Raise ValidationError unless this is one of the known states."""
        if self.value not in _STATE_VALUES:
            raise ValidationError(f"bad TriageState {self.value!r}")

    def __str__(self) -> str:
        return self.value


_STATE_VALUES = frozenset(state.value for state in TriageState)


def _utc(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc)


@dataclass
class CVERecordSnapshot:
    """A previous state of a CVERecord."""

    commit_hash: str = ""
    cve_state: str = ""
    triage_state: TriageState | str = ""
    triage_state_reason: str = ""


@dataclass
class CVERecord:
    """Information about a CVE.

    ``commit_time`` and ``issue_created_at`` are None when not populated.
    ``history`` holds previous states, from most to least recent.
    """

    id: str = ""
    path: str = ""
    blob_hash: str = ""
    commit_hash: str = ""
    commit_time: datetime | None = None
    cve_state: str = ""
    triage_state: TriageState | str = ""
    triage_state_reason: str = ""
    module: str = ""
    package: str = ""
    cve: Any = None
    reference_urls: list[str] = field(default_factory=list)
    issue_reference: str = ""
    issue_created_at: datetime | None = None
    history: list[CVERecordSnapshot] = field(default_factory=list)

    @classmethod
    def new(cls, cve: Any, path: str, blob_hash: str, commit: Any) -> CVERecord:
        """Create a record from a CVE, its path, its blob hash and a commit.

        The CVE needs ``id`` and ``state`` attributes; the commit needs
        ``hash`` and ``time`` attributes.
        """
        return cls(
            id=cve.id,
            cve_state=cve.state,
            path=path,
            blob_hash=blob_hash,
            commit_hash=str(commit.hash),
            commit_time=_utc(commit.time),
        )

    def validate(self) -> None:
        """Raise ValidationError if the record is not valid."""
        if not self.id:
            raise ValidationError("need ID")
        if not self.path:
            raise ValidationError("need Path")
        if not self.blob_hash:
            raise ValidationError("need BlobHash")
        if not self.commit_hash:
            raise ValidationError("need CommitHash")
        if self.commit_time is None:
            raise ValidationError("need CommitTime")
        TriageState(self.triage_state).validate()

    def snapshot(self) -> CVERecordSnapshot:
        """Return the parts of the record that are kept in its history."""
        return CVERecordSnapshot(
            commit_hash=self.commit_hash,
            cve_state=self.cve_state,
            triage_state=self.triage_state,
            triage_state_reason=self.triage_state_reason,
        )

    def id_(self) -> str:
        """The CVE ID."""
        return self.id

    def unit(self) -> str:
        """The module that might be affected."""
        return self.module


@dataclass
class CommitUpdateRecord:
    """One update run that reconciles a CVE list commit with the store.

    If ``ended_at`` is None the update is in progress, or it crashed.
    """

    id: str = ""
    started_at: datetime | None = None
    ended_at: datetime | None = None
    commit_hash: str = ""
    commit_time: datetime | None = None
    num_total: int = 0
    num_processed: int = 0
    num_added: int = 0
    num_modified: int = 0
    error: str = ""
    updated_at: datetime | None = None


@dataclass
class GHSARecord:
    """Information about a GitHub security advisory."""

    ghsa: Any = None
    triage_state: TriageState | str = ""
    triage_state_reason: str = ""
    issue_reference: str = ""
    issue_created_at: datetime | None = None

    def id_(self) -> str:
        """The advisory ID."""
        return self.ghsa.id

    def unit(self) -> str:
        """The package of the advisory's first vulnerability."""
        return self.ghsa.vulns[0].package


@dataclass
class ModuleScanRecord:
    """The result of a vulnerability scan of a module."""

    path: str = ""
    version: str = ""
    db_time: datetime | None = None
    error: str = ""
    vuln_ids: list[str] = field(default_factory=list)
    finished_at: datetime | None = None

    def validate(self) -> None:
        """Raise ValidationError if the record is not valid."""
        if not self.path:
            raise ValidationError("need Path")
        if not self.version:
            raise ValidationError("need Version")
        if self.db_time is None:
            raise ValidationError("need DBTime")
        if self.finished_at is None:
            raise ValidationError("need FinishedAt")