"""
Unit tests for trust prompt detection and auto-response.
"""

from unittest.mock import MagicMock

import pytest

from gana.exceptions import SessionNotFoundError
from gana.programs import Program
from gana.trust_prompts import (
    TRUST_PROMPTS,
    TrustPromptResponder,
    content_fingerprint,
    detect_trust_prompt,
    strip_ansi,
    wait_for_trust_prompt,
)

CLAUDE_SCREEN = "╭──────╮\n│ Do you trust the files in this folder? │\n│ > 1. Yes, proceed │"
AIDER_SCREEN = "Aider v0.80\nOpen documentation url for more info? (Y)es/(N)o/(D)on't ask again"


class FakeClock:
    """Deterministic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestStripAnsi:
    """Test escape sequence removal."""

    @pytest.mark.parametrize("raw,expected", [
        ("\x1b[31mred\x1b[0m", "red"),
        ("\x1b[1;38;5;208mbold orange\x1b[m", "bold orange"),
        ("\x1b]0;window title\x07text", "text"),
        ("\x1b]8;;https://example.com\x1b\\link\x1b]8;;\x1b\\", "link"),
        ("\x1b[2J\x1b[Hclear", "clear"),
        ("plain", "plain"),
    ])
    def test_cases(self, raw, expected):
        assert strip_ansi(raw) == expected


class TestDetect:
    """Test prompt detection per program."""

    def test_claude(self):
        prompt = detect_trust_prompt("claude", CLAUDE_SCREEN)
        assert prompt is TRUST_PROMPTS["claude"]
        assert prompt.response_keys == ("Enter",)

    @pytest.mark.parametrize("program", ["aider", "gemini"])
    def test_aider_and_gemini(self, program):
        prompt = detect_trust_prompt(program, AIDER_SCREEN)
        assert prompt.response_keys == ("d", "Enter")

    def test_accepts_program_enum(self):
        assert detect_trust_prompt(Program.CLAUDE, CLAUDE_SCREEN) is not None

    def test_colored_prompt(self):
        colored = "\x1b[1mDo you trust\x1b[0m the files in this folder?"
        # Escapes split the phrase; stripping restores it
        assert detect_trust_prompt("claude", colored) is not None

    def test_other_programs_have_no_prompt(self):
        assert detect_trust_prompt("codex", CLAUDE_SCREEN) is None

    def test_wrong_program_text(self):
        assert detect_trust_prompt("claude", AIDER_SCREEN) is None

    def test_empty_content(self):
        assert detect_trust_prompt("claude", "") is None

    def test_fingerprint_ignores_escapes(self):
        assert content_fingerprint("\x1b[1mabc\x1b[0m\n") == content_fingerprint("abc")


class TestResponder:
    """Test exactly-once answering."""

    def test_answers_once_while_prompt_stays(self):
        send = MagicMock()
        responder = TrustPromptResponder(send)

        answers = [responder.check("s", "claude", CLAUDE_SCREEN) for _ in range(10)]

        assert answers.count(True) == 1
        send.assert_called_once_with("s", "Enter")

    def test_answers_again_after_prompt_clears(self):
        send = MagicMock()
        responder = TrustPromptResponder(send)

        responder.check("s", "claude", CLAUDE_SCREEN)
        responder.check("s", "claude", "> ready for input")
        responder.check("s", "claude", CLAUDE_SCREEN)

        assert send.call_count == 2

    def test_sessions_are_independent(self):
        send = MagicMock()
        responder = TrustPromptResponder(send)

        responder.check("a", "claude", CLAUDE_SCREEN)
        responder.check("b", "claude", CLAUDE_SCREEN)

        assert send.call_count == 2

    def test_multi_key_response(self):
        send = MagicMock()
        TrustPromptResponder(send).check("s", "aider", AIDER_SCREEN)
        assert [c.args for c in send.call_args_list] == [("s", "d"), ("s", "Enter")]

    def test_vanished_session_is_not_remembered(self):
        send = MagicMock(side_effect=SessionNotFoundError("s"))
        responder = TrustPromptResponder(send)

        assert responder.check("s", "claude", CLAUDE_SCREEN) is False

        send.side_effect = None
        assert responder.check("s", "claude", CLAUDE_SCREEN) is True

    def test_forget(self):
        send = MagicMock()
        responder = TrustPromptResponder(send)
        responder.check("s", "claude", CLAUDE_SCREEN)

        responder.forget("s")
        responder.check("s", "claude", CLAUDE_SCREEN)

        assert send.call_count == 2


class TestWaitForTrustPrompt:
    """Test the post-launch wait with backoff."""

    def test_answers_when_prompt_appears(self):
        clock = FakeClock()
        screens = iter(["", "loading", CLAUDE_SCREEN])
        send = MagicMock()

        answered = wait_for_trust_prompt(
            lambda name: next(screens), send, "s", "claude",
            sleep=clock.sleep, clock=clock,
        )

        assert answered is True
        send.assert_called_once_with("s", "Enter")
        assert clock.sleeps == pytest.approx([0.1, 0.12])

    def test_backoff_is_capped(self):
        clock = FakeClock()

        answered = wait_for_trust_prompt(
            lambda name: "", MagicMock(), "s", "claude",
            timeout=20.0, sleep=clock.sleep, clock=clock,
        )

        assert answered is False
        assert max(clock.sleeps) == pytest.approx(1.0)
        assert clock.sleeps == sorted(clock.sleeps)

    def test_times_out_with_program_default(self):
        clock = FakeClock()

        wait_for_trust_prompt(lambda name: "", MagicMock(), "s", "claude",
                              sleep=clock.sleep, clock=clock)

        assert clock.now >= TRUST_PROMPTS["claude"].timeout

    def test_program_without_prompt_returns_immediately(self):
        capture = MagicMock()
        assert wait_for_trust_prompt(capture, MagicMock(), "s", "codex") is False
        capture.assert_not_called()

    def test_session_exits_while_waiting(self):
        capture = MagicMock(side_effect=SessionNotFoundError("s"))
        clock = FakeClock()
        assert wait_for_trust_prompt(capture, MagicMock(), "s", "claude",
                                     sleep=clock.sleep, clock=clock) is False

    def test_zero_timeout_never_captures(self):
        capture = MagicMock()
        assert wait_for_trust_prompt(capture, MagicMock(), "s", "claude", timeout=0) is False
        capture.assert_not_called()
