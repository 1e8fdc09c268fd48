"""Tests for the streamed chat renderer."""

from polychat.cli.lib.chat_renderer import ChatRenderer
from polychat.schemas.chat import Citation, ErrorBody, FallbackInfo, SearchQuery, WebSearchResult


def test_render_text_prints_only_new_part(capsys):
    renderer = ChatRenderer()
    renderer.begin_turn("groq", "llama-3.3-70b-versatile")
    capsys.readouterr()

    renderer.render_text("Hel")
    renderer.render_text("Hello")
    renderer.render_text("Hello")
    renderer.render_text("Hello world")

    assert capsys.readouterr().out == "Hello world"


def test_begin_turn_resets_position(capsys):
    renderer = ChatRenderer()
    renderer.render_text("first reply")
    renderer.begin_turn("claude", "claude-sonnet-4-20250514")
    renderer.render_text("second")

    out = capsys.readouterr().out
    assert "Claude (claude-sonnet-4-20250514):" in out
    assert out.endswith("second")


def test_render_search_query_limits_results(capsys):
    renderer = ChatRenderer(max_results=2)
    results = [WebSearchResult(url=f"https://r{i}", title=f"R{i}") for i in range(4)]
    renderer.render_search_query(SearchQuery(query="weather", results=results))

    out = capsys.readouterr().out
    assert "weather" in out
    assert "https://r1" in out
    assert "https://r2" not in out


def test_end_turn_dedupes_sources(capsys):
    renderer = ChatRenderer()
    renderer.end_turn(
        [
            Citation(url="https://a", title="A", cited_text="x"),
            Citation(url="https://a", title="A", cited_text="y"),
            Citation(url="https://b", title="", cited_text="z"),
        ]
    )

    out = capsys.readouterr().out
    assert "[Sources]" in out
    assert out.count("https://a") == 1
    assert "https://b" in out


def test_end_turn_without_citations(capsys):
    ChatRenderer().end_turn(None)
    assert "[Sources]" not in capsys.readouterr().out


def test_render_fallback(capsys):
    ChatRenderer().render_fallback(
        FallbackInfo(from_provider="gemini", to_provider="groq", reason="rate limit exceeded")
    )
    out = capsys.readouterr().out
    assert "Gemini -> Groq" in out
    assert "rate limit exceeded" in out


def test_render_rate_limit_error(capsys):
    ChatRenderer().render_error(ErrorBody(type="gemini_error_429", message="Quota exceeded"))
    out = capsys.readouterr().out
    assert "Quota exceeded" in out
    assert "fallback" in out


def test_render_auth_error(capsys):
    ChatRenderer().render_error(ErrorBody(type="missing_api_key", message="No API key is configured."))
    assert "polychat keys set" in capsys.readouterr().out


def test_render_generic_error_with_code(capsys):
    ChatRenderer().render_error(ErrorBody(type="unknown_error", message="boom", errorCode="req_9"))
    assert "boom (req_9)" in capsys.readouterr().out


def test_render_aborted(capsys):
    ChatRenderer().render_aborted()
    assert "discarded" in capsys.readouterr().out
