"""
Error types for the SMS daemon.

- SourceError: reaching or talking to a modem failed
- StoreError: the message database is unavailable or a query/write failed
- MalformedTimestamp: a timestamp string could not be parsed
"""


class SmsDaemonError(Exception):
    """Base class for all daemon errors."""


class SourceError(SmsDaemonError):
    """Transport or protocol failure while talking to the modem manager."""


class StoreError(SmsDaemonError):
    """Persistence failure in the message store."""


class MalformedTimestamp(SmsDaemonError, ValueError):
    """Timestamp string is not a valid RFC 3339 date-time."""

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Failed to parse RFC3339 timestamp: {value!r}")
