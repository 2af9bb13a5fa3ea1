"""An in-memory store for the vulnerability worker."""

from __future__ import annotations

import copy
import dataclasses
import random
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from .records import (
    CommitUpdateRecord,
    CVERecord,
    GHSARecord,
    ModuleScanRecord,
    TriageState,
)


class StoreError(Exception):
    """Raised when a store operation cannot be carried out."""


def _newest_first(moment: datetime | None) -> tuple[bool, datetime | None]:
    return (moment is not None, moment)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemStore:
    """An in-memory store, mainly for testing.

    Transactions run under a single lock on the whole store.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.clear()

    def clear(self) -> None:
        """Remove all data."""
        self._cve_records: dict[str, CVERecord] = {}
        self._update_records: dict[str, CommitUpdateRecord] = {}
        self._dir_hashes: dict[str, str] = {}
        self._ghsa_records: dict[str, GHSARecord] = {}
        self._mod_scan_records: list[ModuleScanRecord] = []

    def cve_records(self) -> dict[str, CVERecord]:
        """Return the CVE records, keyed by ID."""
        return self._cve_records

    def create_commit_update_record(self, record: CommitUpdateRecord) -> None:
        """Store a new update record, giving it a fresh unique ID."""
        record.id = str(random.getrandbits(32))
        while record.id in self._update_records:
            record.id = str(random.getrandbits(32))
        record.updated_at = _now()
        self.set_commit_update_record(record)

    def set_commit_update_record(self, record: CommitUpdateRecord) -> None:
        """Store a copy of an update record that already has an ID."""
        if not record.id:
            raise StoreError("SetCommitUpdateRecord: need ID")
        self._update_records[record.id] = dataclasses.replace(
            record, updated_at=_now()
        )

    def list_commit_update_records(self, limit: int = 0) -> list[CommitUpdateRecord]:
        """Return update records from most to least recent; all if limit is 0."""
        records = sorted(
            self._update_records.values(),
            key=lambda r: _newest_first(r.started_at),
            reverse=True,
        )
        if limit > 0:
            return records[:limit]
        return records

    def get_cve_record(self, cve_id: str) -> CVERecord | None:
        """Return the CVE record with the given ID, or None."""
        return self._cve_records.get(cve_id)

    def list_cve_records_with_triage_state(
        self, state: TriageState | str
    ) -> list[CVERecord]:
        """Return all CVE records in the given triage state, ordered by ID."""
        return sorted(
            (r for r in self._cve_records.values() if r.triage_state == state),
            key=lambda r: r.id,
        )

    def create_module_scan_record(self, record: ModuleScanRecord) -> None:
        """Add a module scan record."""
        record.validate()
        self._mod_scan_records.append(record)

    def get_module_scan_record(
        self, path: str, version: str, db_time: datetime
    ) -> ModuleScanRecord | None:
        """Return the most recent scan matching path, version and DB time."""
        latest = None
        for record in self._mod_scan_records:
            if (
                record.path == path
                and record.version == version
                and record.db_time == db_time
            ):
                if latest is None or latest.finished_at < record.finished_at:
                    latest = record
        return latest

    def list_module_scan_records(self, limit: int = 0) -> list[ModuleScanRecord]:
        """Return scan records from most to least recent; all if limit is 0."""
        records = sorted(
            self._mod_scan_records,
            key=lambda r: _newest_first(r.finished_at),
            reverse=True,
        )
        if 0 < limit < len(records):
            return records[:limit]
        return records

    def get_directory_hash(self, directory: str) -> str:
        """Return the stored hash of a directory, or "" if there is none."""
        return self._dir_hashes.get(directory, "")

    def set_directory_hash(self, directory: str, hash_: str) -> None:
        """Store the hash of a directory."""
        self._dir_hashes[directory] = hash_

    @contextmanager
    def transaction(self) -> Iterator[MemTransaction]:
        """Hold the store lock and yield a transaction."""
        with self._lock:
            yield MemTransaction(self)


class MemTransaction:
    """Operations on a MemStore that run inside a transaction."""

    def __init__(self, store: MemStore) -> None:
        self._store = store

    def create_cve_record(self, record: CVERecord) -> None:
        """Add a CVE record."""
        record.validate()
        self._store._cve_records[record.id] = record

    def set_cve_record(self, record: CVERecord) -> None:
        """Replace an existing CVE record."""
        record.validate()
        if record.id not in self._store._cve_records:
            raise StoreError(f"CVERecord with ID {record.id!r} not found")
        self._store._cve_records[record.id] = record

    def get_cve_records(self, start_id: str, end_id: str) -> list[CVERecord]:
        """Return copies of the records with IDs in [start_id, end_id], sorted."""
        return sorted(
            (
                copy.copy(r)
                for cve_id, r in self._store._cve_records.items()
                if start_id <= cve_id <= end_id
            ),
            key=lambda r: r.id,
        )

    def create_ghsa_record(self, record: GHSARecord) -> None:
        """Add a GHSA record; it must not exist yet."""
        ghsa_id = record.ghsa.id
        if ghsa_id in self._store._ghsa_records:
            raise StoreError(f"GHSARecord {ghsa_id} already exists")
        self._store._ghsa_records[ghsa_id] = record

    def set_ghsa_record(self, record: GHSARecord) -> None:
        """Replace an existing GHSA record."""
        ghsa_id = record.ghsa.id
        if ghsa_id not in self._store._ghsa_records:
            raise StoreError(f"GHSARecord {ghsa_id} does not exist")
        self._store._ghsa_records[ghsa_id] = record

    def get_ghsa_record(self, ghsa_id: str) -> GHSARecord | None:
        """Return the GHSA record with the given ID, or None."""
        return self._store._ghsa_records.get(ghsa_id)

    def get_ghsa_records(self) -> list[GHSARecord]:
        """Return all GHSA records."""
        return list(self._store._ghsa_records.values())