"""File sync result types."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class BundleFile:
    path: str
    content: str


@dataclass(frozen=True)
class SyncResult:
    """Outcome of pushing a set of files to an instance.

    Partial failure is reported here, never raised.
    """

    synced_count: int = 0
    failed_count: int = 0
    failed_paths: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed_count == 0

    @property
    def total(self) -> int:
        return self.synced_count + self.failed_count


@dataclass(frozen=True)
class SaveResult:
    """Outcome of bulk ingestion into the persistent store."""

    saved_count: int = 0
    failed_count: int = 0
    ignored_count: int = 0
