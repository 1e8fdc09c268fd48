"""Chat command - Interactive conversation mode."""

import asyncio
import signal
import sys
import threading
from typing import Optional

import typer

from polychat.cli._globals import get_global_config
from polychat.cli.lib.chat_renderer import PROVIDER_NAMES, ChatRenderer
from polychat.cli.lib.safe_output import emoji, safe_print
from polychat.client import AsyncAPIClient
from polychat.core.providers import MODEL_LABELS, MODELS_BY_PROVIDER, provider_for_model, supports_web_search
from polychat.schemas.chat import ChatSession
from polychat.services import chat_store
from polychat.services.chat_orchestrator import ChatOrchestrator
from polychat.services.credential_store import CredentialStore
from polychat.services.sse_decoders import StreamSinks


async def _read_line(prompt: str) -> str:
    """input() on a daemon thread so the event loop keeps running while the user types."""
    loop = asyncio.get_running_loop()
    future: asyncio.Future = loop.create_future()

    def _settle(line: Optional[str], exc: Optional[BaseException]) -> None:
        if future.done():
            return
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(line)

    def _reader() -> None:
        try:
            line = input(prompt)
        except Exception as exc:
            loop.call_soon_threadsafe(_settle, None, exc)
        else:
            loop.call_soon_threadsafe(_settle, line, None)

    threading.Thread(target=_reader, name="polychat-input", daemon=True).start()
    return await future


def _print_repl_help() -> None:
    safe_print("\n[Commands]\n")
    safe_print("  - Type a message and press Enter to send it")
    safe_print("  - Ctrl+C while a reply streams: stop generation (the message is discarded)")
    safe_print("  - /provider <claude|gemini|groq>: switch provider (selects its default model)")
    safe_print("  - /model <id>: switch model within the current provider")
    safe_print("  - /models: list models of the current provider")
    safe_print("  - /search on|off: toggle web search (Claude and Gemini only)")
    safe_print("  - /clear: start a new conversation")
    safe_print("  - /exit, quit, Ctrl+D: leave\n")


def _print_status(orchestrator: ChatOrchestrator) -> None:
    search = "on" if orchestrator.web_search_enabled else "off"
    safe_print(
        f"{emoji('💡', '[INFO]')} {PROVIDER_NAMES[orchestrator.provider]} / "
        f"{orchestrator.model} / web search {search}"
    )


def _open_session(session_id: Optional[str], provider: str, new: bool) -> ChatSession:
    if not new:
        session_id = session_id or chat_store.get_current_session_id()
        if session_id:
            session = chat_store.get_session(session_id)
            if session is not None:
                chat_store.set_current_session_id(session.id)
                return session
            safe_print(f"{emoji('⚠️', '[WARN]')} Session {session_id} not found, starting a new one")
    return chat_store.create_session(provider)


def _handle_command(raw: str, orchestrator: ChatOrchestrator, state: dict) -> bool:
    """Run a local slash command. Returns False when the REPL should exit."""
    parts = raw.split()
    cmd = parts[0].lower()
    arg = parts[1] if len(parts) > 1 else ""

    if cmd in {"/exit", "/quit"}:
        return False

    if cmd == "/help":
        _print_repl_help()
    elif cmd == "/provider":
        if arg not in MODELS_BY_PROVIDER:
            safe_print(f"Usage: /provider <{'|'.join(MODELS_BY_PROVIDER)}>")
        else:
            orchestrator.set_provider(arg)
            _print_status(orchestrator)
    elif cmd == "/model":
        try:
            orchestrator.set_model(arg)
            _print_status(orchestrator)
        except ValueError as exc:
            safe_print(str(exc))
    elif cmd == "/models":
        for model in MODELS_BY_PROVIDER[orchestrator.provider]:
            marker = "*" if model == orchestrator.model else " "
            safe_print(f" {marker} {model}  {MODEL_LABELS.get(model, '')}")
    elif cmd == "/search":
        if arg not in {"on", "off"}:
            safe_print("Usage: /search on|off")
        elif arg == "on" and not supports_web_search(orchestrator.provider):
            safe_print(f"{PROVIDER_NAMES[orchestrator.provider]} does not support web search")
        else:
            orchestrator.set_web_search(arg == "on")
            _print_status(orchestrator)
    elif cmd == "/clear":
        orchestrator.clear_messages()
        state["session"] = chat_store.create_session(orchestrator.provider)
        safe_print(f"{emoji('🧹', '[CLEAR]')} New conversation: {state['session'].id}")
    else:
        safe_print(f"Unknown command {cmd}; type /help")
    return True


async def _send(orchestrator: ChatOrchestrator, renderer: ChatRenderer, text: str) -> None:
    loop = asyncio.get_running_loop()
    stop_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop_generation)
        stop_installed = True
    except (NotImplementedError, RuntimeError):
        # add_signal_handler is unavailable on Windows event loops
        pass

    renderer.begin_turn(orchestrator.provider, orchestrator.model)
    try:
        aborted = await orchestrator.send_message(text)
    finally:
        if stop_installed:
            loop.remove_signal_handler(signal.SIGINT)

    if aborted:
        renderer.render_aborted()
        return

    if orchestrator.error is not None:
        renderer.render_error(orchestrator.error)
        orchestrator.clear_error()
        return

    last = orchestrator.messages[-1]
    renderer.end_turn(last.citations)
    if orchestrator.fallback_info is not None:
        renderer.render_fallback(orchestrator.fallback_info)
        orchestrator.clear_fallback_info()


async def _chat_loop(
    provider: Optional[str],
    model: Optional[str],
    web_search: bool,
    session_id: Optional[str],
    new: bool,
) -> None:
    config = get_global_config()
    store = CredentialStore()
    provider = provider or config.provider or store.first_available_provider()

    if store.needs_any_key():
        safe_print(
            f"{emoji('🔑', '[TIP]')} No API keys stored. Use `polychat keys set <provider> <key>` "
            f"unless the server has its own keys."
        )
    elif not store.has_key(provider):
        safe_print(
            f"{emoji('🔑', '[TIP]')} No {PROVIDER_NAMES[provider]} key stored; "
            "requests rely on the server key or fall back to another provider."
        )

    state = {"session": _open_session(session_id, provider, new)}

    def _persist(message) -> None:
        chat_store.append_message(state["session"].id, message)

    renderer = ChatRenderer()
    async with AsyncAPIClient(
        base_url=config.api_base,
        timeout=config.timeout,
        retry_times=config.retry_times,
    ) as client:
        orchestrator = ChatOrchestrator(
            client,
            provider=provider,
            credentials=store.fallback_api_keys,
            observers=StreamSinks(
                on_text=renderer.render_text,
                on_search_query=renderer.render_search_query,
            ),
            initial_messages=state["session"].messages,
            on_message_committed=_persist,
        )
        if model:
            orchestrator.set_model(model)
        orchestrator.set_web_search(web_search)

        safe_print("=" * 60)
        safe_print("polychat - multi-provider chat")
        safe_print("=" * 60)
        safe_print(f"Session: {state['session'].id} ({len(orchestrator.messages)} messages)")
        _print_status(orchestrator)
        safe_print("Type /help for commands.\n")

        while True:
            try:
                raw = (await _read_line("You: ")).strip()
            except EOFError:
                safe_print("\n\n[EXIT] Bye")
                break

            if not raw:
                continue
            if raw.lower() in {"quit", "exit"}:
                break

            # '//' sends a literal leading '/'
            if raw.startswith("//"):
                raw = raw[1:]
            elif raw.startswith("/"):
                if not _handle_command(raw, orchestrator, state):
                    break
                continue

            safe_print("")
            await _send(orchestrator, renderer, raw)
            safe_print("")


def chat(
    provider: Optional[str] = typer.Option(
        None,
        "--provider",
        "-p",
        help="Provider to start with (claude, gemini, groq). Defaults to the first one with a key.",
    ),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id within the provider"),
    web_search: bool = typer.Option(False, "--web-search", help="Enable web search (Claude/Gemini)"),
    session_id: Optional[str] = typer.Option(
        None,
        "--session-id",
        "-s",
        help="Session ID for continuing an existing conversation",
    ),
    new: bool = typer.Option(False, "--new", help="Start a new conversation instead of resuming"),
) -> None:
    """
    Interactive chat mode for multi-turn conversations.

    Rate-limited requests are retried automatically on the next provider
    (Gemini → Groq → Claude) that has a stored key.
    """
    if provider is not None and provider not in MODELS_BY_PROVIDER:
        safe_print(f"Unknown provider: {provider}", err=True)
        raise typer.Exit(1)
    if model and not provider:
        provider = provider_for_model(model)
        if provider is None:
            safe_print(f"Unknown model: {model}", err=True)
            raise typer.Exit(1)
    if provider and model and model not in MODELS_BY_PROVIDER[provider]:
        safe_print(f"Model {model} is not available for {provider}", err=True)
        raise typer.Exit(1)

    try:
        asyncio.run(_chat_loop(provider, model, web_search, session_id, new))
    except ValueError as exc:
        safe_print(str(exc), err=True)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        print("\n\n[EXIT] Bye", file=sys.stderr)
