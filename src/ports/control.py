from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol


@dataclass(frozen=True)
class ControlCommand:
    action: str
    payload: dict | None = None


CommandHandler = Callable[[ControlCommand], Awaitable[dict[str, Any]]]


class ControlServer(Protocol):
    """Accepts control requests and answers them through a CommandHandler."""

    async def start(self) -> None: ...
    async def stop(self) -> None: ...
