from __future__ import annotations


class IcsyncError(Exception):
    pass


class SourceUnavailableError(IcsyncError):
    """The source document could not be fetched; nothing was synced."""


class StoreUnavailableError(IcsyncError):
    """The target calendar could not be reached or resolved; nothing was synced."""


class StoreOperationError(IcsyncError):
    """A single create/update/delete call against the store failed."""


class DuplicateIdentityError(IcsyncError):
    def __init__(self, duplicate_keys: list[str], threshold: int) -> None:
        self.duplicate_keys = list(duplicate_keys)
        self.threshold = threshold
        super().__init__(
            f"{len(self.duplicate_keys)} duplicate identity keys in document "
            f"(allowed: {threshold})"
        )


class ExpansionAbort(IcsyncError):
    """Raised while expanding a master whose rule cannot be expanded."""
