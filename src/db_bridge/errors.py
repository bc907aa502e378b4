"""Exception hierarchy for db-bridge.

Every error raised on purpose by the library derives from ``BridgeError`` so
callers can catch the whole family in one place.

Usage:
    from db_bridge.errors import DiscoveryError, LockAcquisitionError

    try:
        schema = await coordinator.discover(handle)
    except DiscoveryError as e:
        print(f"Discovery failed: {e}")
"""


class BridgeError(Exception):
    """Base class for all db-bridge errors."""

    pass


class UnsupportedDialectError(BridgeError):
    """Raised when a handle or URL names a dialect with no registered support."""

    def __init__(self, dialect: object):
        self.dialect = dialect
        super().__init__(
            f"Unsupported dialect: {dialect!r}. Supported: sqlite, postgresql"
        )


class DiscoveryError(BridgeError):
    """Raised when a table list or a table's columns cannot be read.

    Attributes:
        table: Table being introspected when the failure happened, if any.
    """

    def __init__(self, message: str, table: str | None = None):
        self.table = table
        super().__init__(message)


class PlanningError(BridgeError):
    """Raised when a construct has no safe translation on the target dialect.

    Attributes:
        table: Table that owns the offending construct.
    """

    def __init__(self, message: str, table: str | None = None):
        self.table = table
        super().__init__(message)


class MigrationExecutionError(BridgeError):
    """Raised for a failed table unit of work.

    Normally captured into ``MigrationResult.errors``; only propagated when
    ``fail_fast`` is set and no table could be migrated.

    Attributes:
        table: Table whose unit of work failed.
    """

    def __init__(self, message: str, table: str | None = None):
        self.table = table
        super().__init__(message)


class LockAcquisitionError(BridgeError):
    """Raised when the migration lock could not be obtained after retries."""

    pass
