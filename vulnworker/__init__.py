"""Records, storage and update logic for triaging vulnerabilities in Go modules."""

__version__ = "0.1.0"