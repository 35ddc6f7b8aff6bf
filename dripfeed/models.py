# dripfeed/models.py
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# -----------------------------
# Session lifecycle
# -----------------------------

class SessionState(str, enum.Enum):
    VALIDATING = "validating"
    COUNTING = "counting"
    OPENING = "opening"
    STREAMING = "streaming"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED)


@dataclass
class Session:
    """
    One transmission attempt. Mutated only by the Transmitter that owns it.
    """
    path: str
    address: str
    speed: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    total_lines: Optional[int] = None
    lines_sent: int = 0
    state: SessionState = SessionState.VALIDATING
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "address": self.address,
            "speed": self.speed,
            "total_lines": self.total_lines,
            "lines_sent": self.lines_sent,
            "state": self.state.value,
            "error": self.error,
        }


# -----------------------------
# Events (observer vocabulary)
# -----------------------------
# `name` is the event name on the wire; `payload()` is the data sent with it.

@dataclass(frozen=True)
class ResultEvent:
    success: bool
    speed: Any = None
    address: Optional[str] = None
    message: Optional[str] = None

    name = "baud-rate-test-result"
    terminal = True

    def payload(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"success": self.success}
        if self.speed is not None:
            d["baudRate"] = self.speed
        if self.address is not None:
            d["comPort"] = self.address
        if self.message is not None:
            d["message"] = self.message
        return d


@dataclass(frozen=True)
class ProgressEvent:
    percent: int   # may exceed 100 when the last line has no terminator

    name = "progress"
    terminal = False

    def payload(self) -> int:
        return self.percent


@dataclass(frozen=True)
class LineEvent:
    text: str

    name = "gcode-line"
    terminal = False

    def payload(self) -> str:
        return self.text


@dataclass(frozen=True)
class CompletionEvent:
    message: str = "G-code file complete"

    name = "gcode-complete"
    terminal = True

    def payload(self) -> str:
        return self.message


@dataclass(frozen=True)
class ErrorEvent:
    message: str

    name = "error"
    terminal = True

    def payload(self) -> Dict[str, Any]:
        return {"message": self.message}


def to_frame(event) -> Dict[str, Any]:
    """JSON frame for the websocket transport."""
    return {"event": event.name, "data": event.payload()}
