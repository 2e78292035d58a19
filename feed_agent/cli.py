"""CLI entry point for the calendar-feed-agent package."""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 10)


def _print_setup_banner(
    agent_id: str,
    port: int,
    *,
    for_startup: bool = True,
) -> None:
    """Print feed URLs and option hints. If for_startup, show 'server started' line; else show 'Setup' header."""
    base = f"http://localhost:{port}"
    print()
    if for_startup:
        print("Calendar feed agent started (agent: {})".format(agent_id))
    else:
        print("Calendar Feed Agent Setup")
        print("Agent: {}".format(agent_id))
    print()
    print("Docs:     {}/docs".format(base))
    print("Status:   {}/status".format(base))
    print("Events:   POST {}/events".format(base))
    print("Feeds:    {}/feeds/<secret>.ics  (.rss, .json)".format(base))
    print()
    print("────────────────────────────────────────────")
    print("Agent options live in <AGENT_OPTIONS_DIR>/<AGENT_ID>.yaml.")
    print("Set at least one secret (no slashes or dots) and the expected receive period:")
    print()
    print("   secrets: [change-me]")
    print("   expected_receive_period_in_days: 2")
    print("   events_to_show: 40")
    print()
    print("Set AUTH_TOKEN in .env to require 'Authorization: Bearer <token>' on POST /events.")
    print("Run 'calendar-feed-agent check' to validate the options.")
    print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _ensure_supported_python() -> None:
    if sys.version_info < MIN_PYTHON:
        print(
            "Error: Python {} detected. calendar-feed-agent requires Python {}.{}+.".format(
                _python_version_str(),
                MIN_PYTHON[0],
                MIN_PYTHON[1],
            ),
            file=sys.stderr,
        )
        sys.exit(2)


def _print_help() -> None:
    print("Calendar Feed Agent CLI")
    print()
    print("Usage:")
    print("  calendar-feed-agent           Start the feed server")
    print("  calendar-feed-agent setup     Print setup guidance")
    print("  calendar-feed-agent check     Validate agent options")
    print("  calendar-feed-agent doctor    Print install/environment diagnostics")
    print()


def _run_check() -> int:
    """Validate every agent options file; return the process exit code."""
    from .options_loader import OptionsLoadError, list_agent_ids, load_options

    agent_ids = list_agent_ids()
    if not agent_ids:
        print("No agent options found.", file=sys.stderr)
        return 1

    failures = 0
    for agent_id in agent_ids:
        try:
            options = load_options(agent_id)
        except OptionsLoadError as exc:
            failures += 1
            print(f"{agent_id}: invalid")
            for error in exc.errors or [str(exc)]:
                print(f"  - {error}")
            continue
        print(f"{agent_id}: ok (events_to_show={options.events_to_show}, secrets={len(options.secrets)})")
    return 1 if failures else 0


def _print_doctor() -> None:
    print("Calendar Feed Agent Doctor")
    print()
    print(f"Platform: {platform.platform()}")
    print(f"Python:   {_python_version_str()}")
    print(f"Exe:      {sys.executable}")
    print(f"In venv:  {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin: {shutil.which('calendar-feed-agent') or 'not found'}")

    try:
        pip_version = subprocess.check_output(
            [sys.executable, "-m", "pip", "--version"],
            text=True,
            stderr=subprocess.STDOUT,
        ).strip()
    except Exception as exc:  # pragma: no cover - diagnostics fallback
        pip_version = f"unavailable ({exc})"
    print(f"Pip:      {pip_version}")

    from .config import get_settings

    settings = get_settings()
    print(f"Agent:    {settings.agent_id}")
    print(f"Options:  {settings.options_dir}")
    print(f"Database: {os.environ.get('DATABASE_URL') and 'postgres (DATABASE_URL)' or settings.db_path}")
    if sys.version_info < MIN_PYTHON:
        print(
            f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}."
        )


def main() -> None:
    """Run the feed server or handle setup/check/doctor commands."""
    from .config import get_settings

    settings = get_settings()

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "setup":
            _print_setup_banner(agent_id=settings.agent_id, port=settings.http_port, for_startup=False)
            sys.exit(0)
        if subcommand == "check":
            sys.exit(_run_check())
        if subcommand == "doctor":
            _print_doctor()
            sys.exit(0)

    _ensure_supported_python()
    import uvicorn

    _print_setup_banner(agent_id=settings.agent_id, port=settings.http_port, for_startup=True)

    uvicorn.run(
        "feed_agent.main:app",
        host=settings.http_host,
        port=settings.http_port,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
