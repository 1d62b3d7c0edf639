#!/usr/bin/env python3
"""
editor_tools.py — Tool layer for LiveEditor.

The command executor is a pure function over the document text: it takes an
EditCommand and the current buffer and returns an ExecutionResult carrying
either the new text or a structured error. Failures are data, not
exceptions, because they become input to the next model turn.

Also holds the single tool declaration sent upstream and the per content
type system prompts.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from editor_core import Config, truncate_output


TOOL_NAME = "text_editor"

ERROR_PREVIEW_CHARS = 100

# Error codes
INVALID_COMMAND = "invalid_command"
NO_MATCH        = "no_match"
AMBIGUOUS_MATCH = "ambiguous_match"
RANGE_ERROR     = "range_error"


# =============================================================================
# COMMANDS
# =============================================================================

@dataclass(frozen=True)
class ViewCommand:
    view_range: Optional[Tuple[int, int]] = None
    kind = "view"


@dataclass(frozen=True)
class ReplaceCommand:
    old_str: str
    new_str: str = ""
    kind = "str_replace"


@dataclass(frozen=True)
class InsertCommand:
    insert_line: int
    new_str: str
    kind = "insert"


@dataclass(frozen=True)
class DeleteRangeCommand:
    start_line: int
    end_line: int
    kind = "delete_range"


EditCommand = Union[ViewCommand, ReplaceCommand, InsertCommand, DeleteRangeCommand]

COMMAND_NAMES = ("view", "str_replace", "insert", "delete_range")


@dataclass
class EditSpan:
    """Where an edit landed, in offsets of the text *before* the edit."""
    start_pos: int
    end_pos:   int
    old_text:  str
    new_text:  str

    def to_dict(self) -> Dict[str, Any]:
        return {"start_pos": self.start_pos, "end_pos": self.end_pos,
                "old_text": self.old_text, "new_text": self.new_text}


@dataclass
class ExecutionResult:
    success:       bool
    content:       Optional[str] = None
    message:       Optional[str] = None
    error:         Optional[Dict[str, Any]] = None
    line_count:    Optional[int] = None
    total_lines:   Optional[int] = None
    lines_deleted: Optional[int] = None
    edit:          Optional[EditSpan] = None
    mutated:       bool = field(default=False, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.message is not None:       out["message"]       = self.message
        if self.content is not None:       out["content"]       = self.content
        if self.line_count is not None:    out["line_count"]    = self.line_count
        if self.total_lines is not None:   out["total_lines"]   = self.total_lines
        if self.lines_deleted is not None: out["lines_deleted"] = self.lines_deleted
        if self.error is not None:         out["error"]         = self.error
        return out

    def summary(self) -> str:
        if self.success:
            return self.message or "OK"
        return (self.error or {}).get("detail") or self.message or "Command failed"


def _fail(code: str, detail: str, **extra: Any) -> ExecutionResult:
    return ExecutionResult(success=False, message=detail,
                           error={"code": code, "detail": detail, **extra})


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _require_int(args: Dict[str, Any], key: str, command: str) -> Tuple[Optional[int], Optional[str]]:
    if key not in args or args[key] is None:
        return None, f"'{command}' requires '{key}'"
    if not _is_int(args[key]):
        return None, f"'{key}' must be an integer, got {args[key]!r}"
    return args[key], None


def _require_str(args: Dict[str, Any], key: str, command: str) -> Tuple[Optional[str], Optional[str]]:
    if key not in args or args[key] is None:
        return None, f"'{command}' requires '{key}'"
    if not isinstance(args[key], str):
        return None, f"'{key}' must be a string, got {type(args[key]).__name__}"
    return args[key], None


def parse_command(args: Any) -> Tuple[Optional[EditCommand], Optional[str]]:
    """Turn raw tool input into an EditCommand.

    Returns (command, None) on success, or (None, error message).
    Fields that belong to other commands are ignored.
    """
    if not isinstance(args, dict):
        return None, f"Tool input must be an object, got {type(args).__name__}"
    command = args.get("command")
    if command not in COMMAND_NAMES:
        return None, (f"Unknown command {command!r}. "
                      f"Expected one of: {', '.join(COMMAND_NAMES)}")

    if command == "view":
        rng = args.get("view_range")
        if rng is None:
            return ViewCommand(), None
        if (not isinstance(rng, (list, tuple)) or len(rng) != 2
                or not all(_is_int(v) for v in rng)):
            return None, f"'view_range' must be two integers [start, end], got {rng!r}"
        return ViewCommand(view_range=(rng[0], rng[1])), None

    if command == "str_replace":
        old, err = _require_str(args, "old_str", command)
        if err:
            return None, err
        new = args.get("new_str")
        if new is None:
            new = ""
        if not isinstance(new, str):
            return None, f"'new_str' must be a string, got {type(new).__name__}"
        return ReplaceCommand(old_str=old, new_str=new), None

    if command == "insert":
        line, err = _require_int(args, "insert_line", command)
        if err:
            return None, err
        text, err = _require_str(args, "new_str", command)
        if err:
            return None, err
        return InsertCommand(insert_line=line, new_str=text), None

    start, err = _require_int(args, "start_line", command)
    if err:
        return None, err
    end, err = _require_int(args, "end_line", command)
    if err:
        return None, err
    return DeleteRangeCommand(start_line=start, end_line=end), None


# =============================================================================
# COMMAND EXECUTOR
# =============================================================================

def split_lines(content: str) -> List[str]:
    """1-indexed line view of the buffer; the empty buffer has no lines."""
    return content.split("\n") if content else []


def _line_offset(lines: List[str], n: int) -> int:
    """Character offset where line n+1 starts (n lines precede it)."""
    return sum(len(line) + 1 for line in lines[:n])


def count_occurrences(haystack: str, needle: str) -> int:
    """Literal occurrence count, overlapping matches included."""
    count, start = 0, 0
    while True:
        idx = haystack.find(needle, start)
        if idx < 0:
            return count
        count += 1
        start = idx + 1


def _view(cmd: ViewCommand, content: str) -> ExecutionResult:
    lines = split_lines(content)
    total = len(lines)
    if cmd.view_range is None:
        return ExecutionResult(success=True, content=content, line_count=total,
                               total_lines=total, message=f"Viewed {total} lines")
    start, end = cmd.view_range
    if end == -1 or end > total:
        end = total
    start = max(1, start)
    chunk = lines[start - 1:end] if start <= end else []
    return ExecutionResult(
        success=True, content="\n".join(chunk), line_count=len(chunk),
        total_lines=total,
        message=f"Viewed lines {start}-{end} of {total}" if chunk else f"No lines in range (total {total})",
    )


def _replace(cmd: ReplaceCommand, content: str) -> ExecutionResult:
    if not cmd.old_str:
        return _fail(INVALID_COMMAND, "'old_str' must not be empty")
    count = count_occurrences(content, cmd.old_str)
    if count == 0:
        preview = cmd.old_str[:ERROR_PREVIEW_CHARS]
        return _fail(NO_MATCH,
                     f"No match found for: {preview!r}. "
                     "Use 'view' to check the exact current text.",
                     occurrences=0)
    if count > 1:
        return _fail(AMBIGUOUS_MATCH,
                     f"Found {count} occurrences of the search text. "
                     "Include more surrounding context so it matches exactly once.",
                     occurrences=count)
    idx = content.find(cmd.old_str)
    end = idx + len(cmd.old_str)
    new_content = content[:idx] + cmd.new_str + content[end:]
    action  = "Deleted" if not cmd.new_str else "Replaced"
    line_no = content.count("\n", 0, idx) + 1
    return ExecutionResult(
        success=True, content=new_content, mutated=True,
        message=f"{action} text at line {line_no}",
        edit=EditSpan(start_pos=idx, end_pos=end,
                      old_text=cmd.old_str, new_text=cmd.new_str),
    )


def _insert(cmd: InsertCommand, content: str) -> ExecutionResult:
    lines = split_lines(content)
    total = len(lines)
    n     = cmd.insert_line
    if n < 0 or n > total:
        return _fail(RANGE_ERROR,
                     f"insert_line {n} is out of range: must be between 0 and {total}",
                     attempted=n, min=0, max=total)
    new_lines = lines[:n] + cmd.new_str.split("\n") + lines[n:]
    if total == 0:
        pos, inserted = 0, cmd.new_str
    elif n == total:
        pos, inserted = len(content), "\n" + cmd.new_str
    else:
        pos, inserted = _line_offset(lines, n), cmd.new_str + "\n"
    added = len(new_lines) - total
    where = "at the top" if n == 0 else f"after line {n}"
    return ExecutionResult(
        success=True, content="\n".join(new_lines), mutated=True,
        message=f"Inserted {added} line(s) {where}",
        edit=EditSpan(start_pos=pos, end_pos=pos, old_text="", new_text=inserted),
    )


def _delete_range(cmd: DeleteRangeCommand, content: str) -> ExecutionResult:
    lines = split_lines(content)
    total = len(lines)
    start, end = cmd.start_line, cmd.end_line
    if total == 0:
        return _fail(RANGE_ERROR, "Cannot delete lines: the content is empty",
                     attempted=[start, end], min=1, max=0)
    if start < 1 or end > total or start > end:
        return _fail(RANGE_ERROR,
                     f"Invalid range [{start}, {end}]: need 1 <= start_line <= "
                     f"end_line <= {total}",
                     attempted=[start, end], min=1, max=total)
    if end < total:
        span_start = _line_offset(lines, start - 1)
        span_end   = _line_offset(lines, end)
    elif start > 1:
        # Last lines go: take the newline that ended the preceding line.
        span_start = _line_offset(lines, start - 1) - 1
        span_end   = len(content)
    else:
        span_start, span_end = 0, len(content)
    removed = end - start + 1
    return ExecutionResult(
        success=True, content="\n".join(lines[:start - 1] + lines[end:]),
        mutated=True, lines_deleted=removed,
        message=f"Deleted {removed} line(s) ({start}-{end})",
        edit=EditSpan(start_pos=span_start, end_pos=span_end,
                      old_text=content[span_start:span_end], new_text=""),
    )


_EXECUTORS = {
    ViewCommand:        _view,
    ReplaceCommand:     _replace,
    InsertCommand:      _insert,
    DeleteRangeCommand: _delete_range,
}


def execute_command(command: EditCommand, content: str) -> ExecutionResult:
    handler = _EXECUTORS.get(type(command))
    if handler is None:
        return _fail(INVALID_COMMAND, f"Unsupported command: {command!r}")
    return handler(command, content)


def execute_tool(name: str, args: Any, content: str) -> ExecutionResult:
    """Validate a model tool call and run it against ``content``."""
    if name != TOOL_NAME:
        return _fail(INVALID_COMMAND, f"Unknown tool: {name!r}. Use '{TOOL_NAME}'.")
    command, err = parse_command(args)
    if err:
        return _fail(INVALID_COMMAND, err)
    return execute_command(command, content)


def tool_result_block(tool_use_id: str, result: ExecutionResult) -> Dict[str, Any]:
    """Tool-result segment appended to the transcript after an execution."""
    payload = json.dumps(result.to_dict(), ensure_ascii=False)
    if len(payload) > Config.MAX_TOOL_OUTPUT:
        payload = json.dumps({"success": result.success, "truncated": True,
                              "data": truncate_output(payload, Config.MAX_TOOL_OUTPUT)},
                             ensure_ascii=False)
    block: Dict[str, Any] = {"type": "tool_result", "tool_use_id": tool_use_id,
                             "content": payload}
    if not result.success:
        block["is_error"] = True
    return block


# =============================================================================
# TOOL DECLARATION
# =============================================================================

TOOL_SCHEMA: Dict[str, Any] = {
    "name": TOOL_NAME,
    "description": (
        "View and edit the current document. Lines are 1-indexed.\n"
        "* view: show the document, or only view_range [start, end]\n"
        "* str_replace: replace old_str with new_str; old_str must match "
        "exactly one location, character for character\n"
        "* insert: insert new_str as new line(s) after insert_line "
        "(0 inserts at the top)\n"
        "* delete_range: delete lines start_line through end_line inclusive"
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "enum": ["view", "str_replace", "insert", "delete_range"],
                "description": "The command to run.",
            },
            "view_range": {
                "type": "array",
                "items": {"type": "integer"},
                "description": "Optional [start_line, end_line] for view. Use -1 as end_line to read to the end.",
            },
            "old_str": {
                "type": "string",
                "description": "Exact text to replace (str_replace).",
            },
            "new_str": {
                "type": "string",
                "description": "Replacement text (str_replace) or text to insert (insert).",
            },
            "insert_line": {
                "type": "integer",
                "description": "Line after which to insert; 0 for the top (insert).",
            },
            "start_line": {
                "type": "integer",
                "description": "First line to delete (delete_range).",
            },
            "end_line": {
                "type": "integer",
                "description": "Last line to delete, inclusive (delete_range).",
            },
        },
        "required": ["command"],
    },
}


# =============================================================================
# SYSTEM PROMPTS
# =============================================================================

_EDITING_RULES = """
You work on the document only through the text_editor tool.

════════════════════════════════════════════════════
HOW TO EDIT
════════════════════════════════════════════════════
- If the document is empty, build it with insert (insert_line 0), then
  extend it with further inserts.
- If the document already exists, make targeted edits. Never rewrite the
  whole document when a few changes will do.
- Use view to check line numbers before insert or delete_range.
- str_replace needs old_str to match exactly one location. If it fails,
  view the document and retry with more context.
- When you are done, reply with one or two sentences summarising what you
  changed. Do not repeat the document in your reply.
"""

SYSTEM_PROMPTS: Dict[str, str] = {
    "csv": """You are a helpful AI assistant that creates and edits CSV data based on user requests.

Key guidelines:
- Keep valid CSV format with headers in the first row
- Use commas to separate values
- Wrap values in quotes if they contain commas, quotes, or newlines
- Escape internal quotes by doubling them ("")
- Generate realistic sample data with appropriate columns
- Generate at least 5-10 rows of data unless specified otherwise
- Keep all existing data unless explicitly asked to remove it
""" + _EDITING_RULES,

    "markdown": """You are a helpful AI assistant that creates and edits well-formatted Markdown content based on user requests.

Key guidelines:
- Keep valid Markdown syntax
- Use appropriate headers (# ## ###) for structure
- Format lists, code blocks, tables, and other elements properly
- Preserve the overall structure unless asked to change it
- Use proper Markdown syntax for emphasis, links, images, etc.
""" + _EDITING_RULES,
}


def system_prompt_for(content_type: str) -> str:
    return SYSTEM_PROMPTS.get(content_type, SYSTEM_PROMPTS["csv"])
