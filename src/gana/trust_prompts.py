"""
Trust/permission prompt detection and auto-response.

Assistants ask for confirmation the first time they run in a directory.
Detection is plain substring matching against captured pane text; the
responder answers each prompt occurrence once, not once per poll.
"""

import hashlib
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .exceptions import SessionNotFoundError
from .logging_config import get_logger

logger = get_logger("trust_prompts")

# CSI sequences (colors, cursor movement), OSC sequences (titles, hyperlinks)
# terminated by BEL or ST, and two-character escapes.
ANSI_ESCAPE_PATTERN = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from text.

    tmux capture with escape sequences keeps colors for rendering, but
    matching and cache comparison need plain text.
    """
    return ANSI_ESCAPE_PATTERN.sub("", text)


@dataclass(frozen=True)
class TrustPrompt:
    """A known prompt and the keys that accept it."""

    program: str
    pattern: str
    response_keys: Tuple[str, ...]
    timeout: float  # how long to wait for it after launch


TRUST_PROMPTS: Dict[str, TrustPrompt] = {
    "claude": TrustPrompt("claude", "Do you trust the files in this folder?", ("Enter",), 30.0),
    "aider": TrustPrompt("aider", "Open documentation url", ("d", "Enter"), 45.0),
    "gemini": TrustPrompt("gemini", "Open documentation url", ("d", "Enter"), 45.0),
}


def detect_trust_prompt(program: str, content: str) -> Optional[TrustPrompt]:
    """Return the program's trust prompt if it is visible in ``content``."""
    prompt = TRUST_PROMPTS.get(getattr(program, "value", program))
    if prompt is None or not content:
        return None
    if prompt.pattern in strip_ansi(content):
        return prompt
    return None


def content_fingerprint(content: str) -> str:
    return hashlib.sha1(strip_ansi(content).strip().encode("utf-8", "replace")).hexdigest()


class TrustPromptResponder:
    """Answers trust prompts, once per occurrence.

    Remembers the fingerprint of the pane content it last answered for each
    session. While the same content stays on screen nothing is sent; once
    the prompt disappears the memory is cleared so a later prompt in the
    same session is answered again.

    Args:
        send_keys: callable(session_name, keys) delivering one key sequence
    """

    def __init__(self, send_keys: Callable[[str, str], None]):
        self._send_keys = send_keys
        self._answered: Dict[str, str] = {}
        self._lock = threading.Lock()

    def check(self, session_name: str, program: str, content: str) -> bool:
        """Respond if a fresh prompt is visible.

        Returns:
            True if keys were sent on this call
        """
        prompt = detect_trust_prompt(program, content)
        fingerprint = content_fingerprint(content) if prompt else None

        with self._lock:
            if prompt is None:
                self._answered.pop(session_name, None)
                return False
            if self._answered.get(session_name) == fingerprint:
                return False
            self._answered[session_name] = fingerprint

        try:
            for keys in prompt.response_keys:
                self._send_keys(session_name, keys)
        except SessionNotFoundError:
            with self._lock:
                self._answered.pop(session_name, None)
            return False

        logger.info(f"Answered {program} trust prompt in {session_name}")
        return True

    def forget(self, session_name: str) -> None:
        with self._lock:
            self._answered.pop(session_name, None)


def wait_for_trust_prompt(
    capture: Callable[[str], str],
    send_keys: Callable[[str, str], None],
    session_name: str,
    program: str,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll a freshly launched session and accept its trust prompt.

    Polls every 100ms at first, backing off by 1.2x up to 1s between
    captures. Programs without a known prompt return immediately.

    Returns:
        True if a prompt was answered, False on timeout or no known prompt
    """
    prompt = TRUST_PROMPTS.get(getattr(program, "value", program))
    if prompt is None:
        return False

    deadline = clock() + (prompt.timeout if timeout is None else timeout)
    delay = 0.1
    while clock() < deadline:
        try:
            content = capture(session_name)
        except SessionNotFoundError:
            return False
        if detect_trust_prompt(program, content):
            for keys in prompt.response_keys:
                send_keys(session_name, keys)
            logger.info(f"Accepted {program} trust prompt in {session_name}")
            return True
        sleep(delay)
        delay = min(delay * 1.2, 1.0)

    logger.debug(f"No trust prompt from {program} in {session_name}")
    return False
