"""Map spoken or typed phrases onto clock commands."""

from __future__ import annotations

import enum
from typing import Optional, Sequence, Tuple

from .engine import ClockEngine, LocationDirectory
from .errors import UnknownWorkLocationError
from .events import ClockNotice
from .geofence import match
from .logging import get_logger
from .models import WorkLocation

logger = get_logger(__name__)


class Command(str, enum.Enum):
    CLOCK_IN = "CLOCK_IN"
    CLOCK_OUT = "CLOCK_OUT"


# Checked in order; the first phrase found in the text wins.
PHRASES: Tuple[Tuple[str, Command], ...] = (
    ("clock in", Command.CLOCK_IN),
    ("clock out", Command.CLOCK_OUT),
)


def interpret(text: Optional[str]) -> Optional[Command]:
    if not text:
        return None
    lowered = " ".join(text.lower().split())
    for phrase, command in PHRASES:
        if phrase in lowered:
            return command
    return None


def _default_location(engine: ClockEngine, user_id: str, locations: Sequence[WorkLocation]) -> WorkLocation:
    if not locations:
        raise UnknownWorkLocationError("No work locations available for a clock-in", user_id=user_id)
    fix = engine.last_known_fix(user_id)
    if fix is not None:
        nearby = match(fix.point, locations)
        if nearby is not None:
            return nearby
    return locations[0]


def execute(
    engine: ClockEngine,
    user_id: str,
    text: str,
    directory: LocationDirectory,
) -> Optional[Tuple[Command, ClockNotice]]:
    """Run the command recognised in ``text``; None if nothing matched."""
    command = interpret(text)
    if command is None:
        logger.info("command_not_recognised", user_id=user_id, text=text)
        return None
    notes = f"Voice command: {text.strip()}"
    if command is Command.CLOCK_IN:
        location = _default_location(engine, user_id, list(directory.active()))
        notice = engine.clock_in(user_id, location.id, notes=notes)
    else:
        notice = engine.clock_out(user_id, notes=notes)
    logger.info("command_executed", user_id=user_id, command=command.value)
    return command, notice
