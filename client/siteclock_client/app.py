"""Einstiegspunkt für die SiteClock-Konsole.

Jede Eingabezeile ist entweder ein Konsolenbefehl (``status``, ``sessions``,
``at <lat> <lon>``, ``refresh``, ``quit``) oder freier Text, der als
Sprachbefehl an die API geht.
"""

from __future__ import annotations

import argparse
import sys
from typing import Callable, Iterable, Optional

from .api_client import ApiClient, ApiError
from .config import AppConfig, load_config
from .models import ClockResult, ClockStatus, SessionRecord

Output = Callable[[str], None]


def format_status(status: ClockStatus) -> str:
    if not status.is_clocked_in:
        return f"{status.user_id}: ausgestempelt"
    since = status.clocked_in_at.isoformat(timespec="minutes") if status.clocked_in_at else "?"
    minutes = int((status.duration_ms or 0) / 60000)
    return f"{status.user_id}: eingestempelt bei {status.work_location_name} seit {since} ({minutes} min)"


def format_session(session: SessionRecord) -> str:
    started = session.clocked_in_at.isoformat(timespec="minutes") if session.clocked_in_at else "?"
    if session.is_open:
        return f"{started}  {session.work_location_name}  offen"
    origin = "auto" if session.automatic else "manuell"
    return f"{started}  {session.work_location_name}  {session.duration_minutes} min ({origin})"


def format_result(result: ClockResult) -> str:
    if result.event is None:
        return f"keine Änderung - {format_status(result.status)}"
    return f"{result.event} - {format_status(result.status)}"


def handle_line(client: ApiClient, config: AppConfig, user_id: str, line: str, out: Output) -> bool:
    """Verarbeitet eine Eingabezeile; ``False`` beendet die Konsole."""

    text = line.strip()
    if not text:
        return True
    word, _, rest = text.partition(" ")
    word = word.lower()
    if word in ("quit", "exit"):
        return False
    if word == "status":
        out(format_status(client.get_status(user_id)))
    elif word == "sessions":
        sessions = client.list_sessions(user_id)
        if not sessions:
            out("keine Sitzungen")
        for session in sessions:
            out(format_session(session))
    elif word == "at":
        try:
            latitude, longitude = (float(part) for part in rest.split())
        except ValueError:
            out("Verwendung: at <breitengrad> <längengrad>")
            return True
        out(format_result(client.send_location(user_id, latitude, longitude)))
    elif word == "refresh":
        out(format_result(client.refresh_location(user_id, config.refresh_timeout_seconds)))
    else:
        out(format_result(client.send_command(user_id, text)))
    return True


def run_console(
    client: ApiClient,
    config: AppConfig,
    user_id: str,
    lines: Iterable[str],
    out: Output = print,
) -> None:
    for line in lines:
        try:
            if not handle_line(client, config, user_id, line, out):
                return
        except ApiError as exc:
            reason = exc.code or str(exc)
            out(f"Fehler: {reason}")


def main(argv: Optional[list[str]] = None) -> None:
    """Startet die Konsole und liest Befehle von stdin."""

    config = load_config()
    parser = argparse.ArgumentParser(prog="siteclock", description="SiteClock Konsole")
    parser.add_argument("--user", default=config.user_id, help="Benutzerkennung (SITECLOCK_USER_ID)")
    parser.add_argument("--url", default=config.api_base_url, help="Basis-URL der API")
    args = parser.parse_args(argv)
    if not args.user:
        parser.error("--user oder SITECLOCK_USER_ID ist erforderlich")

    client = ApiClient(args.url, timeout=config.request_timeout_seconds)
    try:
        print(format_status(client.get_status(args.user)))
    except ApiError as exc:
        print(f"API Fehler: {exc}", file=sys.stderr)
        sys.exit(1)
    run_console(client, config, args.user, sys.stdin)


__all__ = ["main", "run_console", "handle_line"]
