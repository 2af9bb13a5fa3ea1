"""Bringing the store's GHSA records up to date with GitHub advisories."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from .records import GHSARecord, TriageState

logger = logging.getLogger(__name__)

# The most writes a single store transaction may do.
MAX_TRANSACTION_WRITES = 500

ListAdvisories = Callable[[datetime], list[Any]]


@dataclass
class UpdateGHSAStats:
    """Counts from one GHSA update."""

    num_processed: int = 0
    num_added: int = 0
    num_modified: int = 0


_COVERED_BY_ALIAS = (
    TriageState.ISSUE_CREATED,
    TriageState.HAS_VULN,
    TriageState.NEEDS_ISSUE,
    TriageState.UPDATED_SINCE_ISSUE_CREATION,
)


def triage_state_from_alias(alias_state: TriageState | str) -> TriageState:
    """Return the triage state for an entry whose alias is in alias_state."""
    if alias_state in _COVERED_BY_ALIAS:
        return TriageState.ALIAS
    return TriageState.NEEDS_ISSUE


def triage_new_ghsa(advisory: Any, tx: Any) -> TriageState:
    """Return the initial triage state for a new advisory.

    If a CVE alias of the advisory is already in the store, the state
    follows from that CVE's state.
    """
    for alias in advisory.identifiers:
        if alias.type != "CVE":
            continue
        cves = tx.get_cve_records(alias.value, alias.value)
        if not cves:
            continue
        return triage_state_from_alias(cves[0].triage_state)
    return TriageState.NEEDS_ISSUE


def get_ghsa_records(store: Any) -> list[GHSARecord]:
    """Return all GHSA records in the store."""
    with store.transaction() as tx:
        return tx.get_ghsa_records()


def update_ghsas_since(
    list_advisories: ListAdvisories, since: datetime, store: Any
) -> UpdateGHSAStats:
    """Add or modify GHSA records for advisories updated at or after since."""
    logger.info(
        "Starting GHSA update, looking at new/modified GHSAs since=%s", since
    )
    advisories = list_advisories(since)
    stats = UpdateGHSAStats(num_processed=len(advisories))
    if len(advisories) > MAX_TRANSACTION_WRITES:
        raise ValueError("number of advisories exceeds maxTransactionWrites")

    with store.transaction() as tx:
        by_id = {record.ghsa.id: record for record in tx.get_ghsa_records()}
        to_add: list[GHSARecord] = []
        to_update: list[GHSARecord] = []
        for advisory in advisories:
            old = by_id.get(advisory.id)
            if old is None:
                state = triage_new_ghsa(advisory, tx)
                logger.debug("Triage state for new %s: %s", advisory.id, state)
                to_add.append(GHSARecord(ghsa=advisory, triage_state=state))
            elif old.ghsa.updated_at != advisory.updated_at:
                modified = dataclasses.replace(old, ghsa=advisory)
                if old.triage_state == TriageState.NO_ACTION_NEEDED:
                    modified.triage_state = TriageState.NEEDS_ISSUE
                    modified.triage_state_reason = "advisory was updated"
                elif old.triage_state == TriageState.ISSUE_CREATED:
                    modified.triage_state = TriageState.UPDATED_SINCE_ISSUE_CREATION
                logger.debug(
                    "Triage state for modified %s: %s",
                    advisory.id, modified.triage_state,
                )
                to_update.append(modified)

        for record in to_add:
            tx.create_ghsa_record(record)
        for record in to_update:
            tx.set_ghsa_record(record)

    stats.num_added = len(to_add)
    stats.num_modified = len(to_update)
    logger.info("GHSA update succeeded with since=%s: %s", since, stats)
    return stats


def update_ghsas(list_advisories: ListAdvisories, store: Any) -> UpdateGHSAStats:
    """Update the store with advisories changed since its newest record.

    Advisory ``updated_at`` times must be timezone-aware.
    """
    since = datetime.min.replace(tzinfo=timezone.utc)
    for record in get_ghsa_records(store):
        if record.ghsa.updated_at > since:
            since = record.ghsa.updated_at
    # Start just after the most recent update we already have.
    since += timedelta(microseconds=1)
    return update_ghsas_since(list_advisories, since, store)