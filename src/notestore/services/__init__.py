"""Services sitting between the NoteStore facade and the storage backends."""

from notestore.services.migration import MigrationCoordinator, MigrationState
from notestore.services.write_coalescer import (
    SettlementReport,
    WriteCoalescer,
    WriteOutcome,
)

__all__ = [
    "MigrationCoordinator",
    "MigrationState",
    "SettlementReport",
    "WriteCoalescer",
    "WriteOutcome",
]
