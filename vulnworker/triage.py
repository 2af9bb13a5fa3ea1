"""Triage helpers: alias detection and pkgsite module lookups."""

from __future__ import annotations

import logging
import re
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

# Limit pkgsite requests to this many per second, with short bursts allowed.
PKGSITE_QPS = 5
PKGSITE_BURST = 3

_GHSA_PATTERN = re.compile(r"GHSA-[^-]{4}-[^-]{4}-[^-]{4}")


@dataclass
class TriageResult:
    """The module (and perhaps package) a CVE may affect, and why."""

    module_path: str = ""
    package_path: str = ""
    reason: str = ""


def get_alias_ghsas(cve: Any) -> list[str]:
    """Return the GHSA IDs found in the CVE's reference URLs.

    At most one ID is taken from each reference.
    """
    ghsas = []
    for reference in cve.references:
        match = _GHSA_PATTERN.search(reference.url)
        if match:
            ghsas.append(match.group(0))
    return ghsas


def _head_status(url: str) -> int:
    request = urllib.request.Request(url, method="HEAD")
    try:
        with urllib.request.urlopen(request, timeout=30) as response:
            return response.status
    except urllib.error.HTTPError as err:
        return err.code


class PkgsiteChecker:
    """Reports whether pkgsite knows a path to be a module, caching answers."""

    def __init__(
        self,
        base_url: str,
        *,
        limiter: RateLimiter | None = None,
        head: Callable[[str], int] | None = None,
    ) -> None:
        self.base_url = base_url
        self._limiter = limiter if limiter is not None else RateLimiter(PKGSITE_QPS, PKGSITE_BURST)
        self._head = head if head is not None else _head_status
        self._seen: dict[str, bool] = {}
        self._cache_complete = False

    def set_known_modules(self, modules: Iterable[str]) -> None:
        """Record every known module, so no further requests are needed."""
        for module in modules:
            self._seen[module] = True
        self._cache_complete = True

    def is_known(self, module_path: str) -> bool:
        """Report whether pkgsite knows module_path as a module."""
        if module_path in self._seen:
            return self._seen[module_path]
        if self._cache_complete:
            return False
        self._limiter.wait()
        url = f"{self.base_url}/mod/{module_path}"
        start = time.monotonic()
        try:
            status = self._head(url)
        except Exception as err:
            logger.debug(
                "checked if %s is known to pkgsite at HEAD: latency=%.3fs error=%s",
                url, time.monotonic() - start, err,
            )
            raise
        logger.debug(
            "checked if %s is known to pkgsite at HEAD: latency=%.3fs status=%d",
            url, time.monotonic() - start, status,
        )
        known = status == HTTPStatus.OK
        self._seen[module_path] = known
        return known