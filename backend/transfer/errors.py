"""Exceptions raised by the transfer engine."""


class TransferError(Exception):
    pass


class TransferBusyError(TransferError):
    """Raised when a send or receive starts while one is already in flight."""


class ProtocolError(TransferError):
    """Raised when a control frame cannot be decoded into a known message."""


class SessionError(TransferError):
    """Raised on TLS/transport failures or when no session is available."""


class SourceReadError(TransferError):
    """Raised when the outbound file cannot be read."""


class StorageError(TransferError):
    """Raised when a received file cannot be written to disk."""
