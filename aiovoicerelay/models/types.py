"""Enums and state transitions used by aiovoicerelay."""

from enum import Enum


class OutputKind(Enum):
    """Where the encoded stream ends up."""

    NETWORK = "network"
    """Icecast-style SOURCE upload."""
    FILE = "file"
    """Local file, appended to."""


class SessionState(Enum):
    """Lifecycle of a single speaker session."""

    ACTIVE = "active"
    """Decoder and mixer input are live and fed by the speaker stream."""
    CLOSED = "closed"
    """Teardown has run; the session holds no resources."""


class SessionEvent(Enum):
    """Signals delivered by a speaker stream."""

    END = "end"
    """The stream was exhausted."""
    CLOSE = "close"
    """The stream was closed or detached by its owner."""
    ERROR = "error"
    """The stream raised while being read."""


class ConnectionState(Enum):
    """Connection states of the network sink."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    """Upload request issued, waiting for the handshake response."""
    CONNECTED = "connected"


class ConnectionEvent(Enum):
    """Inputs of the network sink state machine."""

    CONNECT = "connect"
    """A connection attempt is started."""
    HANDSHAKE_OK = "handshake_ok"
    """The server answered the upload request with a 2xx status."""
    FAILED = "failed"
    """Non-2xx response, transport error or timeout."""
    CLOSED = "closed"
    """The transport was closed."""


def next_session_state(state: SessionState, event: SessionEvent) -> SessionState:
    """Return the session state after ``event``.

    Any signal closes an active session; a closed session stays closed.
    """
    _ = event
    if state is SessionState.ACTIVE:
        return SessionState.CLOSED
    return state


def next_connection_state(state: ConnectionState, event: ConnectionEvent) -> ConnectionState:
    """Return the connection state after ``event``.

    Events that make no sense in ``state`` leave it unchanged.
    """
    match (state, event):
        case (ConnectionState.DISCONNECTED, ConnectionEvent.CONNECT):
            return ConnectionState.CONNECTING
        case (ConnectionState.CONNECTING, ConnectionEvent.HANDSHAKE_OK):
            return ConnectionState.CONNECTED
        case (
            ConnectionState.CONNECTING | ConnectionState.CONNECTED,
            ConnectionEvent.FAILED | ConnectionEvent.CLOSED,
        ):
            return ConnectionState.DISCONNECTED
        case _:
            return state
