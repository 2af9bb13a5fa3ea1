"""Bringing the store's CVE records up to date with a CVE list commit."""

from __future__ import annotations

import copy
import dataclasses
import itertools
import logging
import posixpath
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .ghsa_update import MAX_TRANSACTION_WRITES, triage_state_from_alias
from .memstore import StoreError
from .records import CommitUpdateRecord, CVERecord, TriageState
from .triage import TriageResult, get_alias_ghsas

logger = logging.getLogger(__name__)

# The CVE state for published CVEs.
STATE_PUBLIC = "PUBLIC"

# Log a message every this many skipped directories.
_LOG_SKIPPED_EVERY = 40

# A directory hash that cannot match a real one.
_IN_PROGRESS = "in progress"

TriageFunc = Callable[[Any], "TriageResult | None"]


@dataclass(frozen=True)
class RepoFile:
    """A CVE file in the CVE list repository."""

    dir_path: str
    filename: str
    tree_hash: str = ""
    blob_hash: str = ""


@dataclass
class UpdateStats:
    """Counts from updating one directory."""

    skipped: bool = False
    num_processed: int = 0
    num_added: int = 0
    num_modified: int = 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


def id_from_filename(name: str) -> str:
    """Return the CVE ID of a file: its base name without the extension."""
    base = posixpath.basename(name)
    dot = base.rfind(".")
    ext = base[dot:] if dot >= 0 else ""
    return base[: len(base) - len(ext)] if ext else base


def group_files_by_directory(files: Iterable[RepoFile]) -> list[list[RepoFile]]:
    """Group consecutive files by directory.

    Raises ValueError if a directory's files are not contiguous.
    """
    groups = [list(g) for _, g in itertools.groupby(files, key=lambda f: f.dir_path)]
    seen: set[str] = set()
    for group in groups:
        directory = group[0].dir_path
        if directory in seen:
            raise ValueError(
                f"directory {directory} is not contiguous in the sorted list of files"
            )
        seen.add(directory)
    return groups


def copy_removing(cve: Any, reference_urls: Iterable[str]) -> Any:
    """Return a copy of cve without the references whose URL is given."""
    remove = set(reference_urls)
    kept = [r for r in cve.references if r.url not in remove]
    if dataclasses.is_dataclass(cve):
        return dataclasses.replace(cve, references=kept)
    result = copy.copy(cve)
    result.references = kept
    return result


def check_for_aliases(cve: Any, tx: Any) -> TriageState:
    """Return the triage state for a new CVE, given any GHSA aliases in the store."""
    for ghsa_id in get_alias_ghsas(cve):
        record = tx.get_ghsa_record(ghsa_id)
        if record is not None:
            return triage_state_from_alias(record.triage_state)
    return TriageState.NEEDS_ISSUE


def _batches(items: Sequence[RepoFile], size: int) -> Iterator[list[RepoFile]]:
    it = iter(items)
    while batch := list(itertools.islice(it, size)):
        yield batch


class CVEUpdater:
    """Updates a store to match the CVE files of one repository commit.

    ``commit`` needs ``hash`` and ``time`` attributes. ``parse_cve`` turns a
    RepoFile into a CVE object with ``id``, ``state`` and ``references``.
    ``triage`` returns a TriageResult for a CVE that may affect a Go module,
    or None.
    """

    def __init__(
        self,
        store: Any,
        commit: Any,
        parse_cve: Callable[[RepoFile], Any],
        triage: TriageFunc,
        known_ids: Iterable[str] = (),
    ) -> None:
        self.store = store
        self.commit = commit
        self._parse_cve = parse_cve
        self._triage = triage
        self.known_ids = set(known_ids)

    def update(self, files: Iterable[RepoFile]) -> CommitUpdateRecord:
        """Update the store from the commit's files and return the update record."""
        files = list(files)
        logger.info("CVE update starting on CVE list repo hash=%s", self.commit.hash)
        by_dir = group_files_by_directory(files)

        record = CommitUpdateRecord(
            started_at=_now(),
            commit_hash=str(self.commit.hash),
            commit_time=self.commit.time,
            num_total=len(files),
        )
        self.store.create_commit_update_record(record)

        skipped: list[str] = []
        for dir_files in by_dir:
            try:
                stats = self.update_directory(dir_files)
            except Exception as err:
                record.error = str(err)
                try:
                    self.store.set_commit_update_record(record)
                except Exception as err2:
                    raise StoreError(
                        f"update failed with {err}, could not set update record: {err2}"
                    ) from err
                raise
            if stats.skipped:
                skipped.append(dir_files[0].dir_path)
                if len(skipped) >= _LOG_SKIPPED_EVERY:
                    logger.debug(
                        "skipped %d directories because they have not changed "
                        "since last update:\n%s",
                        len(skipped), ", ".join(skipped),
                    )
                    skipped = []
            record.num_processed += stats.num_processed
            record.num_added += stats.num_added
            record.num_modified += stats.num_modified
            self.store.set_commit_update_record(record)

        record.ended_at = _now()
        self.store.set_commit_update_record(record)
        logger.info(
            "CVE update succeeded on CVE list repo hash=%s: added %d, modified %d",
            self.commit.hash, record.num_added, record.num_modified,
        )
        return record

    def update_directory(self, dir_files: Sequence[RepoFile]) -> UpdateStats:
        """Update the files of one directory, skipping it if unchanged."""
        dir_path = dir_files[0].dir_path
        dir_hash = dir_files[0].tree_hash

        if dir_hash and dir_hash == self.store.get_directory_hash(dir_path):
            return UpdateStats(skipped=True)
        # Until the directory is fully processed, store a hash that can't match.
        self.store.set_directory_hash(dir_path, _IN_PROGRESS)

        stats = UpdateStats()
        for batch in _batches(dir_files, MAX_TRANSACTION_WRITES):
            num_adds, num_mods = self.update_batch(batch)
            stats.num_processed += len(batch)
            stats.num_added += num_adds
            stats.num_modified += num_mods

        self.store.set_directory_hash(dir_path, dir_hash)
        return stats

    def update_batch(self, batch: Sequence[RepoFile]) -> tuple[int, int]:
        """Update one batch of files in a transaction; return (added, modified)."""
        start_id = id_from_filename(batch[0].filename)
        end_id = id_from_filename(batch[-1].filename)
        with self.store.transaction() as tx:
            by_id = {r.id: r for r in tx.get_cve_records(start_id, end_id)}
            to_add: list[CVERecord] = []
            to_modify: list[CVERecord] = []
            for file in batch:
                old = by_id.get(id_from_filename(file.filename))
                if old is not None and old.blob_hash == file.blob_hash:
                    continue
                record, add = self.handle_cve(file, old, tx)
                (to_add if add else to_modify).append(record)
            for record in to_add:
                tx.create_cve_record(record)
            for record in to_modify:
                tx.set_cve_record(record)
        logger.debug(
            "batch updated records for %r-%r: added %d, modified %d",
            start_id, end_id, len(to_add), len(to_modify),
        )
        return len(to_add), len(to_modify)

    def handle_cve(
        self, file: RepoFile, old: CVERecord | None, tx: Any
    ) -> tuple[CVERecord, bool]:
        """Work out the record for one CVE file.

        Returns the record and whether it is to be added (rather than modified).
        """
        cve = self._parse_cve(file)
        result: TriageResult | None = None
        if cve.state == STATE_PUBLIC and cve.id not in self.known_ids:
            target = cve
            # For a changed false positive, only new reference URLs matter.
            if old is not None and old.triage_state == TriageState.FALSE_POSITIVE:
                target = copy_removing(cve, old.reference_urls)
            result = self._triage(target)

        pathname = posixpath.join(file.dir_path, file.filename)
        if old is None:
            record = CVERecord.new(cve, pathname, file.blob_hash, self.commit)
            if result is not None:
                record.triage_state = check_for_aliases(cve, tx)
                record.module = result.module_path
                record.package = result.package_path
                record.triage_state_reason = result.reason
                record.cve = cve
            elif cve.id in self.known_ids:
                record.triage_state = TriageState.HAS_VULN
            else:
                record.triage_state = TriageState.NO_ACTION_NEEDED
            return record, True

        modified = dataclasses.replace(
            old,
            path=pathname,
            blob_hash=file.blob_hash,
            cve_state=cve.state,
            commit_hash=str(self.commit.hash),
            commit_time=self.commit.time.astimezone(timezone.utc),
            reference_urls=list(old.reference_urls),
            history=list(old.history),
        )
        state = old.triage_state
        if state in (TriageState.NO_ACTION_NEEDED, TriageState.FALSE_POSITIVE):
            if result is not None:
                modified.triage_state = TriageState.NEEDS_ISSUE
                modified.module = result.module_path
                modified.package = result.package_path
                modified.triage_state_reason = result.reason
                modified.cve = cve
        elif state == TriageState.NEEDS_ISSUE:
            if result is None:
                modified.triage_state = TriageState.NO_ACTION_NEEDED
                modified.module = ""
                modified.cve = None
        elif state in (
            TriageState.ISSUE_CREATED,
            TriageState.UPDATED_SINCE_ISSUE_CREATION,
        ):
            # An issue was filed, so a person should revisit this CVE.
            modified.triage_state = TriageState.UPDATED_SINCE_ISSUE_CREATION
            module = result.module_path if result is not None else ""
            modified.triage_state_reason = f'CVE changed; affected module = "{module}"'
        elif state in (TriageState.ALIAS, TriageState.HAS_VULN):
            pass
        else:
            raise ValueError(f"unknown TriageState: {str(state)!r}")

        if old.triage_state != modified.triage_state:
            modified.history = [old.snapshot(), *old.history]
        if modified.triage_state == TriageState.NEEDS_ISSUE and modified.cve is None:
            raise ValueError("needs issue but CVE is nil")
        return modified, False