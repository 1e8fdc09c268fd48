"""Console output that survives terminals without UTF-8.

Streamed model replies routinely carry emoji, CJK text and typographic
punctuation. On a cp1252 or ascii console a plain ``print`` of such a delta
raises mid-stream, so every CLI write goes through this module instead.
"""

import sys
from typing import TextIO

import typer


def _encoding_of(stream: TextIO) -> str:
    return getattr(stream, "encoding", None) or "utf-8"


def _degrade(text: str, stream: TextIO) -> str:
    """Re-encode ``text`` for ``stream``, replacing what it cannot show."""
    try:
        encoding = _encoding_of(stream)
        return text.encode(encoding, errors="replace").decode(encoding, errors="replace")
    except LookupError:
        return text.encode("ascii", errors="replace").decode("ascii")


def supports_unicode() -> bool:
    try:
        "✅".encode(_encoding_of(sys.stdout))
    except (UnicodeEncodeError, LookupError):
        return False
    return True


_UNICODE_OK = supports_unicode()


def emoji(unicode_char: str, ascii_fallback: str) -> str:
    """Pick the glyph or its bracketed label, e.g. ``emoji("❌", "[ERROR]")``."""
    return unicode_char if _UNICODE_OK else ascii_fallback


def safe_print(text: str, end: str = "\n", flush: bool = False, err: bool = False) -> None:
    if err:
        safe_print_err(text, end=end, flush=flush)
        return
    try:
        print(text, end=end, flush=flush)
    except UnicodeEncodeError:
        print(_degrade(text, sys.stdout), end=end, flush=flush)


def safe_print_err(text: str, end: str = "\n", flush: bool = False) -> None:
    newline = end == "\n"
    try:
        typer.echo(text, err=True, nl=newline)
    except UnicodeEncodeError:
        typer.echo(_degrade(text, sys.stderr), err=True, nl=newline)
    if flush:
        sys.stderr.flush()
