"""Exception types shared by the relay server and the remote link."""


class RelayError(Exception):
    """Base class for relay failures."""


class SpawnError(RelayError):
    """The child command could not be found or launched."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Failed to start {command}: {reason}")
        self.command = command
        self.reason = reason


class AuthError(RelayError):
    """A client presented a token that does not match the session."""


class TransportError(RelayError):
    """Socket-level failure talking to a peer."""


class ParseError(RelayError):
    """An inbound message could not be decoded."""


class StartupError(RelayError):
    """The listening socket could not be opened."""
