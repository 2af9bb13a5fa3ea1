from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from vulnworker.records import (
    CVERecord,
    CVERecordSnapshot,
    GHSARecord,
    ModuleScanRecord,
    TriageState,
    ValidationError,
)

UTC = timezone.utc


def valid_record(**changes):
    fields = dict(
        id="CVE-1905-0001",
        path="1905/CVE-1905-0001.json",
        blob_hash="123",
        commit_hash="456",
        commit_time=datetime(2000, 1, 2, tzinfo=UTC),
        cve_state="PUBLIC",
        triage_state=TriageState.NEEDS_ISSUE,
    )
    fields.update(changes)
    return CVERecord(**fields)


def test_triage_state_from_string():
    assert TriageState("NeedsIssue") is TriageState.NEEDS_ISSUE
    assert TriageState.HAS_VULN == "HasVuln"
    assert str(TriageState.ALIAS) == "Alias"


def test_triage_state_bad_value():
    with pytest.raises(ValidationError, match="bad TriageState"):
        TriageState("Bogus")


def test_valid_record_passes_and_keeps_state():
    record = valid_record()
    record.validate()
    assert record.triage_state is TriageState.NEEDS_ISSUE


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"id": ""}, "need ID"),
        ({"path": ""}, "need Path"),
        ({"blob_hash": ""}, "need BlobHash"),
        ({"commit_hash": ""}, "need CommitHash"),
        ({"commit_time": None}, "need CommitTime"),
        ({"triage_state": ""}, "bad TriageState"),
        ({"triage_state": "Nope"}, "bad TriageState"),
    ],
)
def test_cve_record_validate_errors(changes, message):
    with pytest.raises(ValidationError, match=message):
        valid_record(**changes).validate()


def test_cve_record_accepts_state_as_string():
    record = valid_record(triage_state="HasVuln")
    record.validate()
    assert TriageState(record.triage_state) is TriageState.HAS_VULN


def test_new_cve_record():
    cve = SimpleNamespace(id="CVE-2021-0001", state="PUBLIC")
    when = datetime(2021, 1, 26, 5, 0, tzinfo=timezone(timedelta(hours=5)))
    commit = SimpleNamespace(hash="abc123", time=when)
    record = CVERecord.new(cve, "2021/0xxx/CVE-2021-0001.json", "bh", commit)
    assert record.id == "CVE-2021-0001"
    assert record.cve_state == "PUBLIC"
    assert record.path == "2021/0xxx/CVE-2021-0001.json"
    assert record.blob_hash == "bh"
    assert record.commit_hash == "abc123"
    assert record.commit_time == datetime(2021, 1, 26, 0, 0, tzinfo=UTC)
    assert record.commit_time.tzinfo == UTC
    record.triage_state = TriageState.NEEDS_ISSUE
    record.validate()
    assert record.triage_state == "NeedsIssue"


def test_snapshot():
    record = valid_record(triage_state_reason="why")
    assert record.snapshot() == CVERecordSnapshot(
        commit_hash="456",
        cve_state="PUBLIC",
        triage_state=TriageState.NEEDS_ISSUE,
        triage_state_reason="why",
    )


def test_cve_record_accessors():
    record = valid_record(module="example.org/x/mod")
    assert record.id_() == "CVE-1905-0001"
    assert record.unit() == "example.org/x/mod"


def test_ghsa_record_accessors():
    advisory = SimpleNamespace(id="g1", vulns=[SimpleNamespace(package="p1")])
    record = GHSARecord(ghsa=advisory, triage_state=TriageState.NEEDS_ISSUE)
    assert record.id_() == "g1"
    assert record.unit() == "p1"
    assert record.issue_reference == ""
    assert record.issue_created_at is None


def test_cve_record_lists_are_independent():
    a = CVERecord()
    b = CVERecord()
    a.reference_urls.append("x")
    assert b.reference_urls == []


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"path": ""}, "need Path"),
        ({"version": ""}, "need Version"),
        ({"db_time": None}, "need DBTime"),
        ({"finished_at": None}, "need FinishedAt"),
    ],
)
def test_module_scan_record_validate(changes, message):
    tm = datetime(2020, 1, 1, tzinfo=UTC)
    fields = dict(path="m1", version="v1.2.3", db_time=tm, finished_at=tm)
    fields.update(changes)
    with pytest.raises(ValidationError, match=message):
        ModuleScanRecord(**fields).validate()