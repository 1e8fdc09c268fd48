"""History command - browse and delete stored conversations."""

import json

import typer

from polychat.cli.lib.safe_output import safe_print
from polychat.services import chat_store

history_app = typer.Typer(help="Browse stored conversations", no_args_is_help=True)


@history_app.command("list")
def list_sessions(
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=chat_store.MAX_SESSIONS),
    json_output: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """List conversations, most recently updated first."""
    sessions = chat_store.list_sessions(limit=limit)
    current = chat_store.get_current_session_id()

    if json_output:
        safe_print(json.dumps([s.model_dump(mode="json", exclude={"messages"}) for s in sessions], ensure_ascii=False, indent=2))
        return

    if not sessions:
        safe_print("No conversations yet.")
        return

    for session in sessions:
        marker = "*" if session.id == current else " "
        updated = session.updated_at.strftime("%Y-%m-%d %H:%M")
        safe_print(f"{marker} {session.id}  {updated}  [{session.provider}]  {session.title}")


@history_app.command("show")
def show_session(session_id: str = typer.Argument(..., help="Session ID")) -> None:
    """Print every message of a conversation."""
    session = chat_store.get_session(session_id)
    if session is None:
        safe_print(f"Session not found: {session_id}", err=True)
        raise typer.Exit(1)

    safe_print(f"# {session.title} ({session.provider})\n")
    for message in session.messages:
        label = "You" if message.role == "user" else "Assistant"
        safe_print(f"{label}: {message.content}")
        for query in message.search_queries or []:
            safe_print(f"  [search] {query.query}: {len(query.results)} results")
        safe_print("")


@history_app.command("delete")
def delete_session(session_id: str = typer.Argument(..., help="Session ID")) -> None:
    """Delete a conversation."""
    if not chat_store.delete_session(session_id):
        safe_print(f"Session not found: {session_id}", err=True)
        raise typer.Exit(1)
    safe_print(f"Deleted {session_id}")
