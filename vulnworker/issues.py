"""Filing tracker issues for CVEs and GHSAs that need them."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

from .ghsa_update import get_ghsa_records
from .ratelimit import RateLimiter
from .records import TriageState

logger = logging.getLogger(__name__)

# Limit issue creation requests to this many per second.
ISSUE_QPS = 1

_ISSUE_LIMITER = RateLimiter(ISSUE_QPS, 1)

# An unfinished update younger than this blocks a new one.
_UPDATE_GRACE = timedelta(hours=2)

NewBody = Callable[[Any], str]


class CheckUpdateError(Exception):
    """An update was refused by the sanity checks; forcing it avoids them."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def check_cve_update(commit: Any, store: Any) -> None:
    """Raise CheckUpdateError if an update to commit should not run now.

    An update is refused while a recent one has not finished, or if the
    commit is older than the one of the latest update.
    """
    records = store.list_commit_update_records(1)
    if not records:
        return
    latest = records[0]
    if latest.ended_at is None and latest.started_at is not None:
        elapsed = _now() - latest.started_at
        if elapsed < _UPDATE_GRACE:
            raise CheckUpdateError(
                f"latest update started {elapsed} ago and has not finished"
            )
    if latest.commit_time is not None and commit.time < latest.commit_time:
        raise CheckUpdateError(
            f"commit {commit.hash} time {commit.time.isoformat()} is before "
            f"latest update commit {latest.commit_hash} time "
            f"{latest.commit_time.isoformat()}"
        )


def year_label(cve_id: str) -> str:
    """Return the issue label for a CVE's year, or "" if it is not a CVE ID."""
    if not cve_id.startswith("CVE-"):
        return ""
    parts = cve_id.split("-")
    if len(parts) != 3 or not re.fullmatch(r"[+-]?[0-9]+", parts[1]):
        return ""
    if int(parts[1]) > 2019:
        return f"cve-year-{parts[1]}"
    return "cve-year-2019-and-earlier"


def vuln_table(vulns: Iterable[Any]) -> str:
    """Return a markdown table of an advisory's vulnerable packages."""
    header = "| Unit | Fixed | Vulnerable Ranges |\n| - | - | - |\n"
    rows = "".join(
        f"| [{v.package}](https://pkg.go.dev/{v.package}) | "
        f"{v.earliest_fixed_version} | {v.vulnerable_version_range} |"
        for v in vulns
    )
    return header + rows


def create_issue(
    record: Any,
    client: Any,
    new_body: NewBody,
    limiter: RateLimiter | None = None,
) -> str:
    """File an issue for record and return its reference.

    Returns "" without filing if the record already has issue data or its
    body cannot be made. ``client`` needs ``create_issue(title=, body=,
    labels=)`` returning an issue number, and ``reference(number)``.
    """
    record_id = record.id_()
    if record.issue_reference or record.issue_created_at is not None:
        logger.error(
            "%s: triage state is NeedsIssue but issue field(s) non-zero; skipping "
            "(IssueReference=%r, IssueCreatedAt=%s)",
            record_id, record.issue_reference, record.issue_created_at,
        )
        return ""
    try:
        body = new_body(record)
    except Exception as err:
        logger.error(
            "%s: triage state is NeedsIssue but could not generate body; skipping: %s",
            record_id, err,
        )
        return ""
    labels = ["NeedsTriage"]
    label = year_label(record_id)
    if label:
        labels.append(label)
    title = f"x/vulndb: potential Go vuln in {record.unit()}: {record_id}"

    (limiter if limiter is not None else _ISSUE_LIMITER).wait()
    try:
        number = client.create_issue(title=title, body=body, labels=labels)
    except Exception as err:
        raise RuntimeError(f"creating issue for {record_id}: {err}") from err
    reference = client.reference(number)
    logger.info("created issue %s for %s", reference, record_id)
    return reference


def _under_limit(created: int, limit: int) -> bool:
    return limit <= 0 or created < limit


def create_cve_issues(
    store: Any,
    client: Any,
    new_body: NewBody,
    limit: int = 0,
    limiter: RateLimiter | None = None,
) -> int:
    """File issues for CVE records that need one; return how many were handled.

    A limit of 0 means no limit.
    """
    needs_issue = store.list_cve_records_with_triage_state(TriageState.NEEDS_ISSUE)
    logger.info("create_cve_issues starting; total needing issue: %d", len(needs_issue))
    created = 0
    for record in needs_issue:
        if not _under_limit(created, limit):
            break
        reference = create_issue(record, client, new_body, limiter)
        with store.transaction() as tx:
            current = tx.get_cve_records(record.id, record.id)[0]
            current.triage_state = TriageState.ISSUE_CREATED
            current.issue_reference = reference
            current.issue_created_at = _now()
            tx.set_cve_record(current)
        created += 1
    logger.info("create_cve_issues done (limit %d): %d created", limit, created)
    return created


def create_ghsa_issues(
    store: Any,
    client: Any,
    new_body: NewBody,
    limit: int = 0,
    limiter: RateLimiter | None = None,
) -> int:
    """File issues for GHSA records that need one; return how many were handled.

    A limit of 0 means no limit.
    """
    needs_issue = [
        r for r in get_ghsa_records(store) if r.triage_state == TriageState.NEEDS_ISSUE
    ]
    logger.info("create_ghsa_issues starting; total needing issue: %d", len(needs_issue))
    created = 0
    for record in needs_issue:
        if not _under_limit(created, limit):
            break
        reference = create_issue(record, client, new_body, limiter)
        with store.transaction() as tx:
            current = tx.get_ghsa_record(record.id_())
            current.triage_state = TriageState.ISSUE_CREATED
            current.issue_reference = reference
            current.issue_created_at = _now()
            tx.set_ghsa_record(current)
        created += 1
    logger.info("create_ghsa_issues done (limit %d): %d created", limit, created)
    return created