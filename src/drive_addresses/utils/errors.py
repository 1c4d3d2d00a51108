from typing import Any, Optional


class StoreError(Exception):
    """A record store operation failed."""

    def __init__(self, operation: str, message: str, original: Exception | None = None):
        self.operation = operation
        self.original = original
        super().__init__(f"{operation} failed: {message}")


class AddressExistsError(StoreError):
    """An insert was skipped because an address for the coordinate is already stored."""

    def __init__(self, existing: Any):
        self.existing = existing
        super().__init__(
            "insert_address",
            f"address {existing.id} already stored for ({existing.latitude}, {existing.longitude})",
        )


class FatalStoreError(StoreError):
    """
    A phase could not complete: enumerating broken drives failed, or the
    phase's transaction could not be committed.

    Nothing from that phase is kept.
    """

    def __init__(self, phase: str, cause: StoreError):
        self.phase = phase
        self.cause = cause
        super().__init__(cause.operation, f"{phase} phase aborted ({cause})", cause.original)

    def summary(self, detail: Optional[str] = None) -> str:
        """One-line description for logs and CLI output."""
        line = f"{self.phase} phase aborted during {self.operation}"
        if self.original is not None:
            line += f": {type(self.original).__name__}: {self.original}"
        else:
            line += f": {self.cause}"
        if detail:
            line += f" ({detail})"
        return line
