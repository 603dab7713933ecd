"""Exception hierarchy."""

from __future__ import annotations


class AlphaEdgeError(Exception):
    """Base class for errors raised by alpha-edge."""


class ConfigurationError(AlphaEdgeError):
    """A settings change was rejected."""


class SchemaVersionError(AlphaEdgeError):
    """A persisted record carries a schema version this build cannot read."""

    def __init__(self, table: str, version: object) -> None:
        super().__init__(f"{table}: unsupported schema version {version!r}")
        self.table = table
        self.version = version


class SubmissionError(AlphaEdgeError):
    """An order submitter could not place an order."""
