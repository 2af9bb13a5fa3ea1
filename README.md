# vulnworker

A library for keeping track of the triage of vulnerability reports (CVEs
and GitHub security advisories) that may affect Go modules: records and
their triage states, an in-memory store, and the logic that brings those
records up to date and files issues for the ones that need them.

## Modules

- `vulnworker.records`: the record types `CVERecord`, `GHSARecord`,
  `CommitUpdateRecord` and `ModuleScanRecord`, the history entry
  `CVERecordSnapshot`, and the `TriageState` enumeration (`NO_ACTION_NEEDED`,
  `NEEDS_ISSUE`, `ISSUE_CREATED`, `ALIAS`, `UPDATED_SINCE_ISSUE_CREATION`,
  `FALSE_POSITIVE`, `HAS_VULN`). `validate()` methods raise
  `ValidationError` for missing fields or unknown states.
- `vulnworker.memstore`: `MemStore`, an in-memory store. Its
  `transaction()` context manager holds a lock on the whole store and
  yields a `MemTransaction` for creating, setting and reading CVE and GHSA
  records. Failed operations raise `StoreError`.
- `vulnworker.ratelimit`: `RateLimiter`, a token bucket; `wait()` blocks
  until the next event is allowed and returns the seconds it slept. The
  clock and sleep functions can be passed in.
- `vulnworker.triage`: `TriageResult` (module path, package path, reason),
  `get_alias_ghsas(cve)`, which picks GHSA IDs out of a CVE's reference
  URLs, and `PkgsiteChecker`, which asks a package site by HTTP `HEAD`
  whether a path is a known module, caching each answer and throttling
  requests with a `RateLimiter`. `set_known_modules()` fills the cache and
  stops all further requests.
- `vulnworker.cve_update`: `CVEUpdater` reconciles a list of `RepoFile`s
  from one commit with the store, directory by directory (unchanged
  directories are skipped by tree hash) and in batches of up to 500, moving
  records between triage states as CVEs change. Helpers:
  `group_files_by_directory`, `id_from_filename`, `copy_removing`,
  `check_for_aliases`.
- `vulnworker.ghsa_update`: `update_ghsas(list_advisories, store)` lists
  the advisories changed since the newest one stored and adds or modifies
  `GHSARecord`s, giving an advisory the `ALIAS` state when a CVE it names
  already has an issue. Returns `UpdateGHSAStats`.
- `vulnworker.issues`: `create_cve_issues` and `create_ghsa_issues` file
  issues for records in `NEEDS_ISSUE` through a client you supply and store
  the issue reference; `create_issue`, `year_label` and `vuln_table` are
  the pieces they use. `check_cve_update` raises `CheckUpdateError` while a
  recent update is unfinished or when a commit is older than the latest
  update's.

## Example

```python
from datetime import datetime, timezone
from types import SimpleNamespace

from vulnworker.ghsa_update import update_ghsas
from vulnworker.memstore import MemStore

store = MemStore()
advisories = [
    SimpleNamespace(
        id="GHSA-aaaa-bbbb-cccc",
        identifiers=[],
        updated_at=datetime(2021, 12, 1, tzinfo=timezone.utc),
    ),
]

def list_advisories(since):
    return [a for a in advisories if a.updated_at >= since]

stats = update_ghsas(list_advisories, store)
print(stats.num_processed, stats.num_added, stats.num_modified)  # 1 1 0
```

## What it does not do

- It does not decide by itself whether a CVE affects a Go module: the
  `triage` callable given to `CVEUpdater` makes that decision.
- It does not read git repositories or parse CVE JSON: `CVEUpdater.update`
  takes `RepoFile`s, and the `parse_cve` callable turns each into a CVE
  object.
- It has no persistent store; `MemStore` keeps everything in memory.
- It has no issue-tracker client and does not write issue bodies: the
  client and the `new_body` function are supplied by the caller.
- It has no command-line program.

## Installation

```
pip install .
```

## Running the tests

```
pip install .[test]
pytest
```