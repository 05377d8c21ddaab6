"""Error taxonomy shared by the history service and its clients."""


class HistoryError(Exception):
    pass


class ValidationError(HistoryError):
    """A history read or write is missing a required field. Maps to HTTP 400."""


class PersistenceError(HistoryError):
    """The message store could not be reached or rejected a write."""


class SerializationError(HistoryError):
    """A local cache entry could not be encoded or decoded."""


class NetworkError(HistoryError):
    """A history read failed in transport or on the server."""
