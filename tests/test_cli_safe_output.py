"""Tests for CLI safe output handling with encoding fallback."""

from unittest import mock

from polychat.cli.lib.safe_output import emoji, safe_print, safe_print_err


class TestUnicodeSupport:
    """Test unicode/emoji support detection."""

    def test_emoji_provides_fallback(self):
        result = emoji("❌", "[ERROR]")
        assert result in ["❌", "[ERROR]"]


class TestSafePrint:
    def test_plain_text(self, capsys):
        safe_print("hello")
        assert capsys.readouterr().out == "hello\n"

    def test_end_and_flush(self, capsys):
        safe_print("a", end="", flush=True)
        safe_print("b", end="")
        assert capsys.readouterr().out == "ab"

    def test_err_goes_to_stderr(self, capsys):
        safe_print("oops", err=True)
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "oops" in captured.err

    def test_encode_error_falls_back(self):
        calls = []

        def fake_print(text, end="\n", flush=False):
            calls.append(text)
            if len(calls) == 1:
                raise UnicodeEncodeError("ascii", text, 0, 1, "cannot encode")

        with mock.patch("builtins.print", side_effect=fake_print):
            safe_print("Sunny ☀")

        assert len(calls) == 2

    def test_control_chars_dont_crash(self):
        with mock.patch("builtins.print"):
            safe_print("Normal\x00\x01\x02text")


def test_error_message_with_emoji():
    with mock.patch("typer.echo") as echo:
        safe_print_err(f"{emoji('❌', '[ERROR]')} Rate limit exceeded")
    assert echo.call_count == 1
