"""Run persistence: SQLite state database and run stores."""

from shipgate.persistence.run_store import (
    InMemoryRunStore,
    RunStore,
    SQLiteRunStore,
    run_store_from_config,
)
from shipgate.persistence.state_db import (
    MigrationRecord,
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "InMemoryRunStore",
    "MigrationRecord",
    "RunStore",
    "SQLiteRunStore",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "run_store_from_config",
]
