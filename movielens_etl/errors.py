"""Exception types raised by the ETL."""

from __future__ import annotations

from pathlib import Path


class EtlError(Exception):
    """Base class for ETL errors."""


class ConfigError(EtlError):
    """Invalid or incomplete run configuration."""


class SourceError(EtlError):
    """A source file could not be opened or parsed as a whole."""

    def __init__(self, path: Path | str, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{self.path.name}: {reason}")
