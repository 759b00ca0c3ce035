"""
Supported assistant programs and how to build their command lines.
"""

from enum import Enum
from typing import Dict, List


class Program(str, Enum):
    CLAUDE = "claude"
    AIDER = "aider"
    GEMINI = "gemini"
    CODEX = "codex"
    AMP = "amp"


DEFAULT_PROGRAM = Program.CLAUDE

# Flag that disables the assistant's own permission prompts
SKIP_PERMISSION_FLAGS: Dict[Program, List[str]] = {
    Program.CLAUDE: ["--dangerously-skip-permissions"],
    Program.AIDER: ["--yes-always"],
    Program.GEMINI: ["--yolo"],
    Program.CODEX: ["--dangerously-bypass-approvals-and-sandbox"],
    Program.AMP: ["--dangerously-allow-all"],
}

# Flag that picks up the previous conversation in the same directory
RESUME_FLAGS: Dict[Program, List[str]] = {
    Program.CLAUDE: ["--continue"],
    Program.AIDER: ["--restore-chat-history"],
}


def parse_program(value: str) -> Program:
    """Parse a program name, raising ValueError for unknown ones."""
    if isinstance(value, Program):
        return value
    try:
        return Program(str(value).strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in Program)
        raise ValueError(f"unknown program '{value}' (expected one of: {valid})") from None


def build_command(
    program: Program,
    skip_permissions: bool = False,
    resume_conversation: bool = False,
) -> List[str]:
    """Build the argv used to launch an assistant.

    Args:
        program: Which assistant to launch
        skip_permissions: Pass the program's permission-bypass flag
        resume_conversation: Pass the program's resume flag, if it has one

    Returns:
        Command line as a list of arguments
    """
    program = Program(program)
    command = [program.value]
    if resume_conversation:
        command.extend(RESUME_FLAGS.get(program, []))
    if skip_permissions:
        command.extend(SKIP_PERMISSION_FLAGS.get(program, []))
    return command
