# branchchat/service/commands.py

"""Slash commands that bypass normal streaming (``/image``, ``/video``, ``/search``)."""

from enum import Enum
from typing import Iterable, Optional, Tuple


class Command(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    SEARCH = "search"


def parse_command(content: str, explicit: Iterable[str] = ()) -> Tuple[Optional[Command], str]:
    """
    Detect a command on a user turn.

    Explicit commands win over a leading ``/image`` / ``/video`` / ``/search`` token.

    Returns:
        (command or None, the text the command should act on)
    """
    for name in explicit:
        try:
            return Command(name.lstrip("/").lower()), content.strip()
        except ValueError:
            continue

    stripped = content.lstrip()
    for command in Command:
        token = f"/{command.value}"
        if stripped == token or stripped.startswith((token + " ", token + "\n")):
            return command, stripped[len(token):].strip()
    return None, content
