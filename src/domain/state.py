from enum import Enum

from domain.errors import InvalidTransitionError


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    STOPPED = "stopped"


VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.CONNECTING},
    SessionState.CONNECTING: {SessionState.CONNECTED, SessionState.ERROR, SessionState.STOPPED},
    SessionState.CONNECTED: {SessionState.ERROR, SessionState.STOPPED},
    SessionState.ERROR: {SessionState.IDLE},
    SessionState.STOPPED: {SessionState.IDLE},
}


def validate_transition(current: SessionState, target: SessionState) -> None:
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot transition from {current.name} to {target.name}")
