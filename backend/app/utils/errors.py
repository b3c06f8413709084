"""Fault hierarchy.

Expected outcomes (unknown RXCUI, upstream outage, duplicate or missing
medication) are ordinary return values. The exceptions here are reserved for
faults that should abort the current operation.
"""


class RxSnapshotError(Exception):
    """Base class for unrecoverable rxsnapshot faults."""


class SnapshotIntegrityError(RxSnapshotError):
    """A stored snapshot row can no longer be read back as a drug record."""

    def __init__(self, rxcui: str, detail: str) -> None:
        self.rxcui = rxcui
        self.detail = detail
        super().__init__(f"snapshot {rxcui!r} is corrupt: {detail}")


class ConfigurationError(RxSnapshotError):
    """Startup configuration is missing or unusable."""
