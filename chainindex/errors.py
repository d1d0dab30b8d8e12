"""Exception hierarchy used throughout the indexer."""

from __future__ import annotations


class IndexerError(Exception):
    """Base class for every error raised by the indexer."""


class ConnectionFailure(IndexerError):
    """A connection to a remote service could not be used."""

    description = "Connection error"

    def __init__(self, msg: str) -> None:
        self.msg = msg
        super().__init__(f"Connection error: {msg}")


class RpcError(IndexerError):
    """A remote procedure call returned an error."""

    description = "RPC error"

    def __init__(self, code: int, error: str, method: str) -> None:
        self.code = code
        self.error = error
        self.method = method
        super().__init__(f"{method} RPC error {code}: {error}")


class Interrupted(IndexerError):
    """Work was interrupted by an external signal."""

    description = "Interruption by external signal"

    def __init__(self, sig: int) -> None:
        self.sig = sig
        super().__init__(f"Interrupted by signal {sig}")


class TooPopular(IndexerError):
    """A script has more history entries than the configured limit."""

    description = "Too many history entries"

    def __init__(self) -> None:
        super().__init__("Too many history entries")