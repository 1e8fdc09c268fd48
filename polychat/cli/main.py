"""
polychat CLI Main Entry Point

Provides a terminal chat client for Claude, Gemini and Groq with automatic
rate-limit fallback, plus key and history management.
"""

import sys

import typer

# Load project environment variables immediately upon module import
from polychat.core.env_loader import load_project_env

# Initialize environment before any other imports that depend on it
load_project_env()

from polychat.cli._globals import set_global_config
from polychat.cli.commands import chat
from polychat.cli.commands.history import history_app
from polychat.cli.commands.keys import keys_app
from polychat.cli.config import get_config
from polychat.core.logger import setup_logging


def config_callback(
    api_base: str = typer.Option(
        None,
        "--api-base",
        help="Backend API base URL (e.g., http://127.0.0.1:8000). Overrides POLYCHAT_API_BASE env var.",
        envvar="POLYCHAT_API_BASE",
    ),
    timeout: int = typer.Option(
        None,
        "--timeout",
        help="Request timeout in seconds. Overrides POLYCHAT_CLI_TIMEOUT env var.",
        envvar="POLYCHAT_CLI_TIMEOUT",
    ),
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Log level (DEBUG, INFO, WARNING, ERROR). Overrides POLYCHAT_LOG_LEVEL env var.",
        envvar="POLYCHAT_LOG_LEVEL",
    ),
) -> None:
    """Global options callback. Sets configuration for all commands."""
    setup_logging(log_level)
    set_global_config(get_config(api_base=api_base, timeout=timeout))


app = typer.Typer(
    name="polychat",
    help="polychat: chat with Claude, Gemini and Groq with automatic rate-limit fallback",
    no_args_is_help=True,
    callback=config_callback,
)

app.command()(chat.chat)
app.add_typer(keys_app, name="keys")
app.add_typer(history_app, name="history")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
) -> None:
    """Run the /api/chat passthrough server."""
    import uvicorn

    uvicorn.run("polychat.main:app", host=host, port=port)


def main() -> None:
    """Main entry point for CLI."""
    try:
        app()
    except KeyboardInterrupt:
        print("\n[ABORTED] Aborted by user.", file=sys.stderr)
        sys.exit(0)
    except Exception as e:
        print(f"\n[ERROR] Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
