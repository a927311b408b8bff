from __future__ import annotations

import contextlib
import contextvars
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

PHASE_SESSION = "session"
PHASE_XFRM = "xfrm"
PHASE_CAPTURE = "capture"
PHASE_RETRIEVAL = "retrieval"
# Countdown lines; printers overwrite them in place instead of scrolling.
PHASE_TICK = "tick"
PHASES = (PHASE_SESSION, PHASE_XFRM, PHASE_CAPTURE, PHASE_RETRIEVAL, PHASE_TICK)

LEVEL_INFO = "info"
LEVEL_WARNING = "warning"


@dataclass(frozen=True)
class ProgressEvent:
    message: str
    phase: str = PHASE_SESSION
    level: str = LEVEL_INFO

    @property
    def is_tick(self) -> bool:
        return self.phase == PHASE_TICK

    @property
    def is_warning(self) -> bool:
        return self.level == LEVEL_WARNING


ProgressEmitter = Callable[[ProgressEvent], None]

_progress_emitter_var: contextvars.ContextVar[Optional[ProgressEmitter]] = contextvars.ContextVar(
    "progress_emitter", default=None
)


@contextlib.contextmanager
def progress_emitter_context(emitter: Optional[ProgressEmitter]) -> Iterator[None]:
    token = _progress_emitter_var.set(emitter)
    try:
        yield
    finally:
        _progress_emitter_var.reset(token)


def emit_progress(message: str, phase: str = PHASE_SESSION, level: str = LEVEL_INFO) -> None:
    """Forward a human-readable progress line to the installed emitter, if any."""
    emitter = _progress_emitter_var.get()
    if emitter is None:
        return
    event = ProgressEvent(
        message=str(message),
        phase=phase if phase in PHASES else PHASE_SESSION,
        level=LEVEL_WARNING if level == LEVEL_WARNING else LEVEL_INFO,
    )
    try:
        emitter(event)
    except Exception:
        # Progress forwarding must never break a capture session.
        return


def emit_warning(message: str, phase: str = PHASE_SESSION) -> None:
    emit_progress(message, phase=phase, level=LEVEL_WARNING)


def emit_tick(message: str) -> None:
    emit_progress(message, phase=PHASE_TICK)
