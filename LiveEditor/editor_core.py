#!/usr/bin/env python3
"""
editor_core.py — Foundation layer for LiveEditor.

Contains: .env loader, Config, coloured Log, the event/result dataclasses
shared by the orchestrator and the web layer, and the conversation builder
that turns a client payload into the transcript sent upstream.
"""
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import colorama

colorama.just_fix_windows_console()

VERSION = "1.2.0"


# =============================================================================
# .ENV FILE LOADER
# Loaded before Config so env-var defaults pick up the values.
# Searches: <script dir>/.env, then cwd/.env. Does NOT override existing vars.
# =============================================================================

def _load_dotenv():
    """Load key=value pairs from a .env file into os.environ.

    Checks (in order):
      1. Directory containing this script
      2. Current working directory
    Existing environment variables are never overridden.
    """
    candidates = [
        Path(__file__).parent / ".env",
        Path.cwd() / ".env",
    ]
    for env_file in candidates:
        if not env_file.exists():
            continue
        try:
            for raw in env_file.read_text(encoding="utf-8").splitlines():
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, _, val = line.partition("=")
                key = key.strip()
                val = val.strip()
                if len(val) >= 2 and val[0] in ('"', "'") and val[-1] == val[0]:
                    val = val[1:-1]
                if key and key not in os.environ:
                    os.environ[key] = val
        except OSError as e:
            print(f"[!] Could not read {env_file}: {e}", file=sys.stderr)
        break


_load_dotenv()


# =============================================================================
# CONFIGURATION
# =============================================================================

class Config:
    """Central config — every value overridable via environment variable."""

    # Upstream model
    ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
    ANTHROPIC_URL     = os.getenv("ANTHROPIC_URL",     "https://api.anthropic.com/v1/messages")
    ANTHROPIC_VERSION = os.getenv("ANTHROPIC_VERSION", "2023-06-01")
    MODEL             = os.getenv("CLAUDE_MODEL",      "claude-haiku-4-5-20251001")
    TEMPERATURE       = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    LLM_TIMEOUT       = int(os.getenv("LLM_TIMEOUT",       "120"))

    # Output token limit per content type
    MAX_TOKENS_CSV      = int(os.getenv("MAX_TOKENS_CSV",      "4096"))
    MAX_TOKENS_MARKDOWN = int(os.getenv("MAX_TOKENS_MARKDOWN", "8192"))

    # Execution limits
    MAX_ITERATIONS  = int(os.getenv("MAX_ITERATIONS",  "25"))
    MAX_TOOL_OUTPUT = int(os.getenv("MAX_TOOL_OUTPUT", "200000"))

    # Streaming
    STREAM_QUEUE_SIZE  = int(os.getenv("STREAM_QUEUE_SIZE",  "64"))
    KEEPALIVE_INTERVAL = float(os.getenv("KEEPALIVE_INTERVAL", "15"))

    CONTENT_TYPES = ("csv", "markdown")

    @classmethod
    def init(cls):
        cls._validate()
        if not cls.ANTHROPIC_API_KEY:
            Log.warning("ANTHROPIC_API_KEY is not set — /api/generate will refuse requests")

    @classmethod
    def _validate(cls):
        if cls.MAX_ITERATIONS < 1:
            raise ValueError("MAX_ITERATIONS must be >= 1")
        if cls.STREAM_QUEUE_SIZE < 1:
            raise ValueError("STREAM_QUEUE_SIZE must be >= 1")
        if cls.LLM_TIMEOUT < 1:
            raise ValueError("LLM_TIMEOUT must be >= 1")
        if not 0.0 <= cls.TEMPERATURE <= 1.0:
            raise ValueError(f"Invalid LLM_TEMPERATURE: {cls.TEMPERATURE}")

    @classmethod
    def max_tokens_for(cls, content_type: str) -> int:
        if content_type == "markdown":
            return cls.MAX_TOKENS_MARKDOWN
        return cls.MAX_TOKENS_CSV


# =============================================================================
# COLORS & LOGGING
# =============================================================================

class Colors:
    RESET   = "\033[0m"
    BOLD    = "\033[1m"
    RED     = "\033[38;5;196m"
    GREEN   = "\033[38;5;114m"
    YELLOW  = "\033[38;5;214m"
    MAGENTA = "\033[38;5;176m"
    CYAN    = "\033[38;5;116m"


def colored(text: str, color: str, bold: bool = False) -> str:
    return f"{Colors.BOLD if bold else ''}{color}{text}{Colors.RESET}"


class Log:
    """Coloured logger. Everything goes to stderr so stdout stays clean for
    the CLI's document and event output."""

    @staticmethod
    def _print(prefix: str, msg: str, color: str):
        print(colored(f"{prefix} {msg}", color), file=sys.stderr)

    @staticmethod
    def info(msg: str):    Log._print("[INFO]", msg, Colors.CYAN)
    @staticmethod
    def success(msg: str): Log._print("[✓]",    msg, Colors.GREEN)
    @staticmethod
    def warning(msg: str): Log._print("[!]",    msg, Colors.YELLOW)
    @staticmethod
    def error(msg: str):   Log._print("[✗]",    msg, Colors.RED)
    @staticmethod
    def tool(name: str, args: str):
        print(colored(f"[→] {name}({args})", Colors.MAGENTA), file=sys.stderr)


# =============================================================================
# UTILITIES
# =============================================================================

def truncate_output(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    half        = max_length // 2
    total_lines = text.count("\n") + 1
    return (text[:half]
            + f"\n\n... [TRUNCATED {len(text) - max_length} chars,"
              f" {total_lines} total lines] ...\n\n"
            + text[-(max_length - half - 100):])


# =============================================================================
# EVENTS & RESULTS
# =============================================================================

class EditorStopped(Exception):
    """Raised inside the editing loop when the request has been cancelled."""


@dataclass
class EditorEvent:
    type: str
    data: Dict[str, Any]

    def to_payload(self) -> Dict[str, Any]:
        """Wire form sent to the client: the type tag merged with the data."""
        return {"type": self.type, **self.data}


@dataclass
class EditorResult:
    status:     str
    content:    str
    iterations: int
    events:     List[EditorEvent]
    messages:   List[Dict[str, Any]]
    error_code: Optional[str] = None


# =============================================================================
# CONVERSATION BUILDER
# =============================================================================

CONTENT_PREFIX     = "Current content:\n"
INSTRUCTION_MARKER = "\n\nInstruction: "

_VALID_ROLES = frozenset({"user", "assistant"})


def _split_edit_request(text: str) -> Optional[Tuple[str, str]]:
    """Split "Current content:\\n<X>\\n\\nInstruction: <Y>" into its halves.

    Returns (content_part, instruction_part) with the marker kept at the
    front of the instruction part, or None when the text has another shape.
    """
    if not text.startswith(CONTENT_PREFIX):
        return None
    idx = text.rfind(INSTRUCTION_MARKER)
    if idx < len(CONTENT_PREFIX):
        return None
    return text[:idx], text[idx:]


def _segment_first_turn(content: Any) -> Any:
    if not isinstance(content, str):
        return content
    parts = _split_edit_request(content)
    if parts is None:
        return content
    head, tail = parts
    return [
        {"type": "text", "text": head, "cache_control": {"type": "ephemeral"}},
        {"type": "text", "text": tail},
    ]


def _is_empty(content: Any) -> bool:
    if content is None:
        return True
    if isinstance(content, str):
        return not content.strip()
    if isinstance(content, list):
        return len(content) == 0
    return False


def build_conversation(payload: Union[str, List[Dict[str, Any]]],
                       legacy: bool = False) -> List[Dict[str, Any]]:
    """Build the initial transcript from a client payload.

    In legacy mode ``payload`` is a bare prompt string and becomes a single
    user turn. Otherwise it is the client's message list: roles are checked,
    empty turns dropped, the remaining turns must alternate, and the first
    user turn is split into a cacheable document segment and an uncached
    instruction segment when it carries the "Current content / Instruction"
    shape.

    Raises ValueError on a payload that cannot be turned into a transcript.
    """
    if legacy:
        if not isinstance(payload, str) or not payload.strip():
            raise ValueError("Prompt is required")
        return [{"role": "user", "content": payload}]

    if not isinstance(payload, list):
        raise ValueError("messages must be a list")

    messages: List[Dict[str, Any]] = []
    segmented = False
    for i, raw in enumerate(payload):
        if not isinstance(raw, dict):
            raise ValueError(f"messages[{i}] must be an object")
        role    = raw.get("role")
        content = raw.get("content")
        if role not in _VALID_ROLES:
            raise ValueError(f"messages[{i}] has invalid role: {role!r}")
        if not isinstance(content, (str, list)):
            raise ValueError(f"messages[{i}] content must be a string or a list")
        if _is_empty(content):
            continue
        if messages and messages[-1]["role"] == role:
            raise ValueError(f"messages[{i}] follows another {role!r} turn; "
                             f"user and assistant turns must alternate")
        if role == "user" and not segmented:
            content   = _segment_first_turn(content)
            segmented = True
        messages.append({"role": role, "content": content})

    if not messages:
        raise ValueError("messages must contain at least one non-empty message")
    if messages[0]["role"] != "user":
        raise ValueError("the first message must come from the user")
    return messages


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(seg.get("text", "") for seg in content
                       if isinstance(seg, dict) and seg.get("type") == "text")
    return ""


def extract_current_content(messages: List[Dict[str, Any]]) -> str:
    """Document text from the most recent user turn that embeds one, or ""."""
    for msg in reversed(messages):
        if msg.get("role") != "user":
            continue
        parts = _split_edit_request(_message_text(msg.get("content")))
        if parts is not None:
            return parts[0][len(CONTENT_PREFIX):]
    return ""
