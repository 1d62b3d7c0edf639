#!/usr/bin/env python3
"""
editor_main.py — Editing loop and command-line entrypoint for LiveEditor.

Contains: run_editor() (the tool-use loop) and the CLI.

Usage:
  python editor_main.py "Create a table of 10 planets"            # generate
  python editor_main.py -f data.csv "Add a population column"      # edit a file
  python editor_main.py -f notes.md -o out.md "Fix the headings"   # write result

run_editor() alternates between asking the model and executing the tool
call it asked for, until the model answers without a tool call (completed),
the model endpoint fails or sends an unusable tool call (failed), the
iteration ceiling is hit (failed), or the stop event is set (cancelled).
Every step is reported through event_callback in emission order.
"""

import argparse
import json
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from editor_core import (
    VERSION, Config, Colors, Log, colored,
    EditorEvent, EditorResult, EditorStopped,
    CONTENT_PREFIX, INSTRUCTION_MARKER,
    build_conversation,
)
from editor_tools import (
    TOOL_SCHEMA, ExecutionResult,
    execute_tool, tool_result_block, system_prompt_for,
)
from editor_llm import LLMClient


# Terminal error codes
UPSTREAM_ERROR  = "upstream_error"
PROTOCOL_ERROR  = "protocol_error"
ITERATION_LIMIT = "iteration_limit"
INTERNAL_ERROR  = "internal_error"


# =============================================================================
# TRANSCRIPT HELPERS
# =============================================================================

def _wire_blocks(blocks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Assistant content as it goes back upstream: no private keys, no empty text."""
    out = []
    for b in blocks:
        if b.get("type") == "text":
            if b.get("text"):
                out.append({"type": "text", "text": b["text"]})
        elif b.get("type") == "tool_use":
            out.append({"type": "tool_use", "id": b["id"], "name": b["name"],
                        "input": b.get("input") or {}})
    return out


def _protocol_problem(tool_blocks: List[Dict[str, Any]]) -> Optional[str]:
    if not tool_blocks:
        return "Model requested a tool but sent no tool call"
    for b in tool_blocks:
        if not b.get("id") or not b.get("name"):
            return "Model sent a tool call without an id or name"
        if b.get("_truncated"):
            return f"Tool call '{b['name']}' arrived with unreadable input"
        if not isinstance(b.get("input"), dict):
            return f"Tool call '{b['name']}' input is not an object"
    return None


# =============================================================================
# EDITING LOOP
# =============================================================================

def run_editor(
    messages: List[Dict[str, Any]],
    content: str = "",
    content_type: str = "csv",
    client: Optional[LLMClient] = None,
    event_callback: Optional[Callable[[EditorEvent], None]] = None,
    flush_wait: Optional[Callable[[], None]] = None,
    stop_event: Optional[threading.Event] = None,
    max_iterations: Optional[int] = None,
    mode: str = "output",
) -> EditorResult:
    stop_event = stop_event or threading.Event()
    client     = client or LLMClient(stop_event)
    limit      = max_iterations or Config.MAX_ITERATIONS
    system     = system_prompt_for(content_type)
    max_tokens = Config.max_tokens_for(content_type)

    transcript: List[Dict[str, Any]] = list(messages)
    events:     List[EditorEvent]    = []
    buffer     = content
    iteration  = 0

    # ── event emitter ─────────────────────────────────────────────────────────
    def emit(event_type: str, data: Dict[str, Any]) -> None:
        ev = EditorEvent(type=event_type, data=data)
        events.append(ev)
        if event_callback:
            event_callback(ev)
        if mode != "interactive":
            return
        if event_type == "tool_use":
            Log.tool(data.get("tool", ""), data.get("command") or "?")
        elif event_type == "tool_result":
            (Log.success if data.get("success") else Log.warning)(data.get("message", ""))
        elif event_type == "text":
            print(colored(f"\nAssistant: {data.get('text', '')}\n", Colors.CYAN),
                  file=sys.stderr)
        elif event_type == "error":
            Log.error(data.get("error", ""))

    def finish(status: str, error_code: Optional[str] = None) -> EditorResult:
        return EditorResult(status=status, content=buffer, iterations=iteration,
                            events=events, messages=transcript, error_code=error_code)

    def fail(code: str, message: str) -> EditorResult:
        emit("error", {"error": message, "code": code})
        return finish("failed", code)

    def run_tool(block: Dict[str, Any]) -> ExecutionResult:
        nonlocal buffer
        name = block["name"]
        args = block["input"]
        emit("tool_use", {"tool": name, "command": args.get("command"), "id": block["id"]})
        result = execute_tool(name, args, buffer)
        if result.success and result.mutated:
            buffer = result.content
            emit("content_update", {
                "content": buffer,
                "edit":    result.edit.to_dict() if result.edit else None,
            })
        emit("tool_result", {"success": result.success, "message": result.summary()})
        return result

    # ── main loop ──────────────────────────────────────────────────────────────
    try:
        while True:
            if stop_event.is_set():
                return finish("cancelled")
            if iteration >= limit:
                Log.warning(f"Reached max iterations ({limit})")
                return fail(ITERATION_LIMIT,
                            f"Stopped after {limit} model calls without a final reply")
            iteration += 1
            Log.info(f"Iteration {iteration}/{limit}")

            # Do not run ahead of the client: everything from the last
            # iteration must be written before the next model call.
            if flush_wait:
                flush_wait()

            response = client.call(transcript, system, [TOOL_SCHEMA], max_tokens)

            if response.get("cancelled") or stop_event.is_set():
                return finish("cancelled")
            if "error" in response:
                return fail(UPSTREAM_ERROR, response["error"])

            blocks      = response.get("content") or []
            tool_blocks = [b for b in blocks if b.get("type") == "tool_use"]

            if response.get("stop_reason") == "tool_use" or tool_blocks:
                problem = _protocol_problem(tool_blocks)
                if problem:
                    return fail(PROTOCOL_ERROR, problem)

                transcript.append({"role": "assistant", "content": _wire_blocks(blocks)})
                results = []
                for block in tool_blocks:
                    result = run_tool(block)
                    results.append(tool_result_block(block["id"], result))
                transcript.append({"role": "user", "content": results})
                continue

            for block in blocks:
                if block.get("type") == "text" and block.get("text"):
                    emit("text", {"text": block["text"]})
            wire = _wire_blocks(blocks)
            if wire:
                transcript.append({"role": "assistant", "content": wire})
            Log.success(f"Done after {iteration} model call(s)")
            return finish("completed")

    except EditorStopped:
        Log.info("Editing stopped by caller")
        return finish("cancelled")


# =============================================================================
# CLI
# =============================================================================

def _guess_content_type(path: Optional[Path]) -> str:
    if path and path.suffix.lower() in (".md", ".markdown"):
        return "markdown"
    return "csv"


def _build_request(instruction: str, content: str) -> str:
    if content:
        return f"{CONTENT_PREFIX}{content}{INSTRUCTION_MARKER}{instruction}"
    return instruction


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Create or edit a CSV or Markdown document with a language model.",
    )
    parser.add_argument("instruction", help="What to create or change")
    parser.add_argument("-f", "--file", help="Document to edit (omit to generate from scratch)")
    parser.add_argument("-t", "--type", choices=Config.CONTENT_TYPES,
                        help="Content type (default: from file extension, else csv)")
    parser.add_argument("-o", "--output", help="Write the result here instead of stdout")
    parser.add_argument("--max-iterations", type=int, default=None,
                        help=f"Model call ceiling (default: {Config.MAX_ITERATIONS})")
    parser.add_argument("--events", action="store_true",
                        help="Print the event stream as JSON lines on stdout")
    parser.add_argument("--version", action="version", version=f"LiveEditor {VERSION}")
    args = parser.parse_args()

    try:
        Config.init()
    except ValueError as e:
        Log.error(f"Configuration error: {e}")
        return 2
    if not Config.ANTHROPIC_API_KEY:
        Log.error("ANTHROPIC_API_KEY is not set")
        return 2

    src     = Path(args.file) if args.file else None
    content = ""
    if src is not None and src.exists():
        content = src.read_text(encoding="utf-8")
    content_type = args.type or _guess_content_type(src)

    messages = build_conversation([{"role": "user",
                                    "content": _build_request(args.instruction, content)}])

    def _print_event(ev: EditorEvent) -> None:
        print(json.dumps(ev.to_payload(), ensure_ascii=False), flush=True)

    try:
        result = run_editor(
            messages,
            content        = content,
            content_type   = content_type,
            event_callback = _print_event if args.events else None,
            max_iterations = args.max_iterations,
            mode           = "interactive",
        )
    except KeyboardInterrupt:
        Log.warning("Interrupted")
        return 130

    if result.status != "completed":
        Log.error(f"Editing {result.status}: {result.error_code or ''}")
        return 1

    if args.output:
        Path(args.output).write_text(result.content, encoding="utf-8")
        Log.success(f"Wrote {len(result.content)} chars to {args.output}")
    elif not args.events:
        sys.stdout.write(result.content)
    return 0


if __name__ == "__main__":
    sys.exit(main())
