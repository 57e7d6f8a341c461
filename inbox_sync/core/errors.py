from __future__ import annotations


class IngestError(Exception):
    pass


class ConfigurationError(IngestError):
    """Missing or invalid identifiers/credentials. Fatal, raised before any I/O."""


class TransientFetchError(IngestError):
    def __init__(self, message: str, page_offset: int | None = None) -> None:
        super().__init__(message)
        self.page_offset = page_offset


class MalformedRecordError(IngestError):
    pass


class ConflictResolutionError(IngestError):
    """The store rejected an upsert for a reason other than the declared conflict target."""

    def __init__(self, message: str, external_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.external_ids = list(external_ids or [])
