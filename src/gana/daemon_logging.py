"""
Console + file logger for the daemon.

Writes human-readable, styled lines to the console (when there is one) and
plain tagged lines to the daemon log file.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.theme import Theme


DAEMON_THEME = Theme({
    "info": "cyan",
    "warn": "yellow",
    "error": "bold red",
    "success": "bold green",
    "dim": "dim white",
    "highlight": "bold white",
})


class DaemonLogger:
    """Logger with rich console output and a plain-text log file."""

    def __init__(self, log_file: Path, theme: Optional[Theme] = None, console: Optional[Console] = None):
        self.log_file = Path(log_file)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self.console = console or Console(theme=theme or DAEMON_THEME, stderr=True)

    def _write_to_file(self, message: str, level: str) -> None:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        try:
            with open(self.log_file, "a") as f:
                f.write(f"{timestamp} [{level}] {message}\n")
        except OSError:
            pass

    def _log(self, style: str, symbol: str, message: str, level: str) -> None:
        timestamp = datetime.now().strftime("%H:%M:%S")
        self.console.print(f"[dim]{timestamp}[/dim] [{style}]{symbol}[/{style}] {message}")
        self._write_to_file(message, level)

    def info(self, message: str) -> None:
        self._log("info", "●", message, "INFO")

    def warn(self, message: str) -> None:
        self._log("warn", "▲", message, "WARN")

    def error(self, message: str) -> None:
        self._log("error", "✗", message, "ERROR")

    def success(self, message: str) -> None:
        self._log("success", "✓", message, "INFO")

    def debug(self, message: str) -> None:
        self._write_to_file(message, "DEBUG")

    def section(self, title: str) -> None:
        self.console.rule(f"[highlight]{title}[/highlight]")
        self._write_to_file(f"=== {title} ===", "INFO")
