import copy
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest

from vulnworker.issues import (
    CheckUpdateError,
    check_cve_update,
    create_cve_issues,
    create_ghsa_issues,
    create_issue,
    vuln_table,
    year_label,
)
from vulnworker.memstore import MemStore
from vulnworker.ratelimit import RateLimiter
from vulnworker.records import CommitUpdateRecord, CVERecord, GHSARecord, TriageState


@dataclass
class FakeCommit:
    hash: str
    time: datetime


@dataclass
class FakeVuln:
    package: str
    earliest_fixed_version: str = ""
    vulnerable_version_range: str = ""


@dataclass
class FakeAdvisory:
    id: str
    vulns: list = field(default_factory=list)


class FakeIssueClient:
    def __init__(self):
        self.issues = []

    def create_issue(self, *, title, body, labels):
        self.issues.append({"title": title, "body": body, "labels": labels})
        return len(self.issues)

    def reference(self, number):
        return f"inMemory#{number}"


def fake_limiter(sleeps):
    return RateLimiter(1, 1, clock=lambda: 0.0, sleep=sleeps.append)


def body_for(record):
    return f"body for {record.id_()}"


TM = datetime(2021, 1, 26, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "latest, want",
    [
        (None, ""),
        (
            CommitUpdateRecord(
                ended_at=datetime.now(timezone.utc),
                commit_hash="abc",
                commit_time=TM - timedelta(hours=1),
            ),
            "",
        ),
        (
            CommitUpdateRecord(
                started_at=datetime.now(timezone.utc) - timedelta(minutes=90),
                commit_hash="abc",
                commit_time=TM - timedelta(hours=1),
            ),
            "not finish",
        ),
        (
            CommitUpdateRecord(
                ended_at=datetime.now(timezone.utc),
                commit_hash="abc",
                commit_time=TM + timedelta(hours=1),
            ),
            "before",
        ),
    ],
)
def test_check_cve_update(latest, want):
    store = MemStore()
    if latest is not None:
        store.create_commit_update_record(copy.copy(latest))
    commit = FakeCommit(hash="head", time=TM)
    if want:
        with pytest.raises(CheckUpdateError, match=want):
            check_cve_update(commit, store)
    else:
        assert check_cve_update(commit, store) is None


@pytest.mark.parametrize(
    "cve_id, want",
    [
        ("CVE-2022-24726", "cve-year-2022"),
        ("CVE-2021-24726", "cve-year-2021"),
        ("CVE-2020-24726", "cve-year-2020"),
        ("CVE-2019-9741", "cve-year-2019-and-earlier"),
        ("GHSA-p93v-m2r2-4387", ""),
        ("CVE-20x1-1", ""),
    ],
)
def test_year_label(cve_id, want):
    assert year_label(cve_id) == want


def test_vuln_table():
    got = vuln_table([FakeVuln("aPackage", "1.2.3", "< 1.2.3")])
    assert got == (
        "| Unit | Fixed | Vulnerable Ranges |\n"
        "| - | - | - |\n"
        "| [aPackage](https://pkg.go.dev/aPackage) | 1.2.3 | < 1.2.3 |"
    )


CTIME = datetime(2020, 1, 2, tzinfo=timezone.utc)


def cve_records():
    return [
        CVERecord(
            id="ID1", blob_hash="bh1", commit_hash="ch", commit_time=CTIME,
            path="path1", cve=object(), triage_state=TriageState.NEEDS_ISSUE,
        ),
        CVERecord(
            id="ID2", blob_hash="bh2", commit_hash="ch", commit_time=CTIME,
            path="path2", triage_state=TriageState.NO_ACTION_NEEDED,
        ),
        CVERecord(
            id="ID3", blob_hash="bh3", commit_hash="ch", commit_time=CTIME,
            path="path3", triage_state=TriageState.ISSUE_CREATED,
        ),
    ]


def ghsa_records():
    states = [
        TriageState.NEEDS_ISSUE,
        TriageState.NO_ACTION_NEEDED,
        TriageState.ISSUE_CREATED,
        TriageState.ALIAS,
    ]
    return [
        GHSARecord(ghsa=FakeAdvisory(f"g{n}", [FakeVuln(f"p{n}")]), triage_state=state)
        for n, state in enumerate(states, start=1)
    ]


def make_store(crs, grs):
    store = MemStore()
    with store.transaction() as tx:
        for cr in crs:
            tx.create_cve_record(copy.copy(cr))
        for gr in grs:
            tx.create_ghsa_record(copy.copy(gr))
    return store


def test_create_issues():
    crs, grs = cve_records(), ghsa_records()
    store = make_store(crs, grs)
    client = FakeIssueClient()
    sleeps = []
    limiter = fake_limiter(sleeps)

    assert create_cve_issues(store, client, body_for, 0, limiter) == 1
    assert create_ghsa_issues(store, client, body_for, 0, limiter) == 1

    got_cves = store.cve_records()
    assert len(got_cves) == 3
    first = got_cves["ID1"]
    assert first.issue_created_at is not None
    want_first = dataclasses.replace(
        crs[0], triage_state=TriageState.ISSUE_CREATED, issue_reference="inMemory#1"
    )
    assert dataclasses.replace(first, issue_created_at=None) == want_first
    assert got_cves["ID2"] == crs[1]
    assert got_cves["ID3"] == crs[2]

    with store.transaction() as tx:
        got_ghsas = sorted(tx.get_ghsa_records(), key=lambda r: r.ghsa.id)
    assert got_ghsas[0].triage_state == TriageState.ISSUE_CREATED
    assert got_ghsas[0].issue_reference == "inMemory#2"
    assert got_ghsas[0].issue_created_at is not None
    assert [r.triage_state for r in got_ghsas[1:]] == [r.triage_state for r in grs[1:]]

    assert client.issues[0]["title"] == "x/vulndb: potential Go vuln in : ID1"
    assert client.issues[0]["labels"] == ["NeedsTriage"]
    assert client.issues[1]["title"] == "x/vulndb: potential Go vuln in p1: g1"
    assert client.issues[1]["body"] == "body for g1"
    assert sleeps == [1.0]


def test_create_cve_issues_respects_limit():
    crs = cve_records()
    second = dataclasses.replace(crs[1], triage_state=TriageState.NEEDS_ISSUE)
    store = make_store([crs[0], second], [])
    client = FakeIssueClient()
    assert create_cve_issues(store, client, body_for, 1, fake_limiter([])) == 1
    assert len(client.issues) == 1
    assert store.cve_records()["ID2"].triage_state == TriageState.NEEDS_ISSUE


def test_create_issue_year_label():
    record = CVERecord(id="CVE-2022-24726", module="example.com/mod")
    client = FakeIssueClient()
    ref = create_issue(record, client, body_for, fake_limiter([]))
    assert ref == "inMemory#1"
    assert client.issues[0]["labels"] == ["NeedsTriage", "cve-year-2022"]
    assert client.issues[0]["title"] == (
        "x/vulndb: potential Go vuln in example.com/mod: CVE-2022-24726"
    )


def test_create_issue_skips_record_with_issue():
    record = CVERecord(id="ID1", issue_reference="inMemory#9")
    client = FakeIssueClient()
    assert create_issue(record, client, body_for, fake_limiter([])) == ""
    assert client.issues == []


def test_create_issue_skips_when_body_fails():
    def bad_body(record):
        raise ValueError("no body")

    client = FakeIssueClient()
    assert create_issue(CVERecord(id="ID1"), client, bad_body, fake_limiter([])) == ""
    assert client.issues == []


def test_create_issue_wraps_client_error():
    class FailingClient(FakeIssueClient):
        def create_issue(self, *, title, body, labels):
            raise OSError("tracker down")

    with pytest.raises(RuntimeError, match="creating issue for ID1: tracker down"):
        create_issue(CVERecord(id="ID1"), FailingClient(), body_for, fake_limiter([]))