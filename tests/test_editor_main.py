"""Tests for editor_main -- the tool-use loop and the CLI.

The model is replaced by ScriptedClient, which hands back canned replies in
the shape LLMClient.call() produces.
"""

import copy
import json
import threading

import pytest

import editor_main
from editor_core import Config, EditorResult, EditorStopped
from editor_main import (
    ITERATION_LIMIT, PROTOCOL_ERROR, UPSTREAM_ERROR, run_editor,
)
from editor_tools import TOOL_NAME


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class ScriptedClient:
    def __init__(self, replies, on_call=None):
        self.replies = list(replies)
        self.calls   = []
        self.on_call = on_call

    def call(self, messages, system, tools, max_tokens):
        self.calls.append({"messages": copy.deepcopy(messages), "system": system,
                           "tools": tools, "max_tokens": max_tokens})
        if self.on_call:
            self.on_call(self)
        if len(self.replies) == 1:
            return copy.deepcopy(self.replies[0])
        return self.replies.pop(0)


def tool_reply(args, tool_id="toolu_1", text=""):
    content = []
    if text:
        content.append({"type": "text", "text": text})
    content.append({"type": "tool_use", "id": tool_id, "name": TOOL_NAME, "input": args})
    return {"content": content, "stop_reason": "tool_use", "usage": {}}


def text_reply(text):
    return {"content": [{"type": "text", "text": text}], "stop_reason": "end_turn", "usage": {}}


USER = [{"role": "user", "content": "Current content:\nname,age\nann,31\n\nInstruction: fix ann"}]


def _types(result):
    return [e.type for e in result.events]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestEditingLoop:
    def test_event_order_for_edit_then_view_then_reply(self):
        client = ScriptedClient([
            tool_reply({"command": "str_replace", "old_str": "ann,31", "new_str": "ann,32"}),
            tool_reply({"command": "view"}, tool_id="toolu_2"),
            text_reply("Updated Ann's age."),
        ])
        result = run_editor(USER, content="name,age\nann,31", client=client)

        assert result.status == "completed"
        assert result.content == "name,age\nann,32"
        assert result.iterations == 3
        assert _types(result) == ["tool_use", "content_update", "tool_result",
                                  "tool_use", "tool_result", "text"]

        tool_use = result.events[0].data
        assert tool_use == {"tool": TOOL_NAME, "command": "str_replace", "id": "toolu_1"}
        update = result.events[1].data
        assert update["content"] == "name,age\nann,32"
        assert update["edit"]["old_text"] == "ann,31"
        assert update["edit"]["new_text"] == "ann,32"
        assert result.events[2].data["success"] is True
        assert result.events[-1].data == {"text": "Updated Ann's age."}

    def test_callback_sees_events_in_emission_order(self):
        seen = []
        client = ScriptedClient([tool_reply({"command": "view"}), text_reply("ok")])
        result = run_editor(USER, content="a", client=client,
                            event_callback=lambda ev: seen.append(ev.type))
        assert seen == _types(result)

    def test_transcript_carries_tool_round_trip(self):
        client = ScriptedClient([
            tool_reply({"command": "view"}, text="Looking first."),
            text_reply("done"),
        ])
        run_editor(USER, content="a\nb", client=client)

        second = client.calls[1]["messages"]
        assert [m["role"] for m in second] == ["user", "assistant", "user"]
        assistant = second[1]["content"]
        assert assistant[0] == {"type": "text", "text": "Looking first."}
        assert assistant[1]["type"] == "tool_use"
        result_block = second[2]["content"][0]
        assert result_block["type"] == "tool_result"
        assert result_block["tool_use_id"] == "toolu_1"
        assert json.loads(result_block["content"])["content"] == "a\nb"

    def test_tool_declaration_and_token_limit_passed_upstream(self, monkeypatch):
        monkeypatch.setattr(Config, "MAX_TOKENS_MARKDOWN", 8192)
        client = ScriptedClient([text_reply("# Title")])
        run_editor(USER, content_type="markdown", client=client)
        call = client.calls[0]
        assert call["tools"][0]["name"] == TOOL_NAME
        assert call["max_tokens"] == 8192
        assert "Markdown" in call["system"]

    def test_failed_command_fed_back_and_loop_continues(self):
        client = ScriptedClient([
            tool_reply({"command": "str_replace", "old_str": "x", "new_str": "y"}),
            text_reply("Nothing to change."),
        ])
        result = run_editor(USER, content="x\nx", client=client)

        assert result.status == "completed"
        assert result.content == "x\nx"
        assert _types(result) == ["tool_use", "tool_result", "text"]
        assert result.events[1].data["success"] is False
        fed_back = client.calls[1]["messages"][-1]["content"][0]
        assert fed_back["is_error"] is True
        assert json.loads(fed_back["content"])["error"]["code"] == "ambiguous_match"

    def test_unknown_command_is_not_fatal(self):
        client = ScriptedClient([tool_reply({"command": "teleport"}), text_reply("sorry")])
        result = run_editor(USER, content="a", client=client)
        assert result.status == "completed"
        assert result.events[1].data["success"] is False

    def test_several_tool_calls_in_one_reply(self):
        reply = {"content": [
            {"type": "tool_use", "id": "t1", "name": TOOL_NAME,
             "input": {"command": "insert", "insert_line": 0, "new_str": "h1,h2"}},
            {"type": "tool_use", "id": "t2", "name": TOOL_NAME,
             "input": {"command": "insert", "insert_line": 1, "new_str": "1,2"}},
        ], "stop_reason": "tool_use"}
        client = ScriptedClient([reply, text_reply("Made it.")])
        result = run_editor(USER, content="", client=client)

        assert result.content == "h1,h2\n1,2"
        results = client.calls[1]["messages"][-1]["content"]
        assert [r["tool_use_id"] for r in results] == ["t1", "t2"]

    def test_flush_wait_runs_before_every_model_call(self):
        order = []
        client = ScriptedClient([tool_reply({"command": "view"}), text_reply("ok")],
                                on_call=lambda c: order.append("call"))
        run_editor(USER, content="a", client=client, flush_wait=lambda: order.append("flush"))
        assert order == ["flush", "call", "flush", "call"]


# ---------------------------------------------------------------------------
# Failure and cancellation
# ---------------------------------------------------------------------------

class TestTermination:
    def test_iteration_ceiling_is_never_exceeded(self):
        client = ScriptedClient([tool_reply({"command": "view"})])
        result = run_editor(USER, content="a", client=client, max_iterations=4)

        assert len(client.calls) == 4
        assert result.status == "failed"
        assert result.error_code == ITERATION_LIMIT
        assert result.events[-1].type == "error"
        assert result.events[-1].data["code"] == ITERATION_LIMIT

    def test_upstream_error(self):
        client = ScriptedClient([{"error": "API request failed (HTTP 529): overloaded"}])
        result = run_editor(USER, content="a", client=client)
        assert result.status == "failed"
        assert result.error_code == UPSTREAM_ERROR
        assert _types(result) == ["error"]
        assert "529" in result.events[0].data["error"]

    def test_tool_stop_without_tool_call_is_protocol_error(self):
        client = ScriptedClient([{"content": [{"type": "text", "text": "hmm"}],
                                  "stop_reason": "tool_use"}])
        result = run_editor(USER, content="a", client=client)
        assert result.error_code == PROTOCOL_ERROR

    def test_unreadable_tool_input_is_protocol_error(self):
        reply = tool_reply({})
        reply["content"][0]["_truncated"] = True
        result = run_editor(USER, content="a", client=ScriptedClient([reply]))
        assert result.error_code == PROTOCOL_ERROR
        assert _types(result) == ["error"]

    def test_cancelled_during_model_call(self):
        stop = threading.Event()

        def cancel(_client):
            stop.set()

        client = ScriptedClient([{"cancelled": True}], on_call=cancel)
        result = run_editor(USER, content="a", client=client, stop_event=stop)
        assert result.status == "cancelled"
        assert "error" not in _types(result)

    def test_stopped_before_first_call(self):
        stop = threading.Event()
        stop.set()
        client = ScriptedClient([text_reply("never")])
        result = run_editor(USER, content="a", client=client, stop_event=stop)
        assert result.status == "cancelled"
        assert client.calls == []

    def test_callback_raising_stop_cancels(self):
        def refuse(_ev):
            raise EditorStopped("gone")

        client = ScriptedClient([tool_reply({"command": "view"}), text_reply("ok")])
        result = run_editor(USER, content="a", client=client, event_callback=refuse)
        assert result.status == "cancelled"
        assert len(client.calls) == 1


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestCLI:
    def test_missing_api_key(self, monkeypatch):
        monkeypatch.setattr(Config, "ANTHROPIC_API_KEY", "")
        monkeypatch.setattr("sys.argv", ["liveeditor", "make a table"])
        assert editor_main.main() == 2

    def test_edits_file_and_writes_output(self, monkeypatch, tmp_path):
        src = tmp_path / "notes.md"
        src.write_text("# Old\n", encoding="utf-8")
        out = tmp_path / "out.md"
        captured = {}

        def fake_run(messages, **kwargs):
            captured["messages"] = messages
            captured.update(kwargs)
            return EditorResult(status="completed", content="# New", iterations=1,
                                events=[], messages=messages)

        monkeypatch.setattr(Config, "ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setattr(editor_main, "run_editor", fake_run)
        monkeypatch.setattr("sys.argv", ["liveeditor", "-f", str(src), "-o", str(out),
                                         "Rename the heading"])
        assert editor_main.main() == 0
        assert out.read_text(encoding="utf-8") == "# New"
        assert captured["content"] == "# Old\n"
        assert captured["content_type"] == "markdown"
        head, tail = captured["messages"][0]["content"]
        assert head["text"] == "Current content:\n# Old\n"
        assert tail["text"] == "\n\nInstruction: Rename the heading"

    def test_untouched_file_written_back_byte_for_byte(self, monkeypatch, tmp_path):
        doc = "    indented code\n\ntext\n"
        src = tmp_path / "x.md"
        src.write_text(doc, encoding="utf-8")

        def unchanged(messages, content="", **kwargs):
            return EditorResult(status="completed", content=content, iterations=1,
                                events=[], messages=messages)

        monkeypatch.setattr(Config, "ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setattr(editor_main, "run_editor", unchanged)
        monkeypatch.setattr("sys.argv", ["liveeditor", "-f", str(src), "-o", str(src),
                                         "Leave it alone"])
        assert editor_main.main() == 0
        assert src.read_text(encoding="utf-8") == doc

    def test_failure_exit_code(self, monkeypatch, capsys):
        def fake_run(messages, **kwargs):
            return EditorResult(status="failed", content="", iterations=1, events=[],
                                messages=messages, error_code=UPSTREAM_ERROR)

        monkeypatch.setattr(Config, "ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setattr(editor_main, "run_editor", fake_run)
        monkeypatch.setattr("sys.argv", ["liveeditor", "make a table"])
        assert editor_main.main() == 1
        assert capsys.readouterr().out == ""
