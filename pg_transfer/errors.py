class TransferError(Exception):
    """Base class for every failure raised by the transfer core."""


class TransferDefinitionError(TransferError):
    """The stored job definition cannot be executed (no DB I/O attempted)."""


class ColumnMappingError(TransferDefinitionError):
    pass


class ConnectionResolutionError(TransferError):
    """A job side could not be turned into a usable connection endpoint."""


class TransferCancelled(TransferError):
    pass
