#!/usr/bin/env python3
"""
editor_llm.py — Upstream model client for LiveEditor.

Talks to the Anthropic Messages API with ``stream: true`` and assembles the
streamed content blocks back into one reply:

  {"content": [blocks...], "stop_reason": str, "usage": dict}

Failures come back as {"error": "..."} and cancellation as
{"cancelled": True}; nothing here raises for network or HTTP problems.
A stream cut off before ``message_stop`` is a failure, and a tool call whose
input did not arrive whole is marked ``_truncated`` so it is never run.
There is no retry: a failed call ends the request.
"""

import json
import threading
from typing import Any, Dict, List, Optional

import requests

from editor_core import Config, Log
from editor_stream import iter_frames


class LLMClient:
    """One client per request; abort() may be called from another thread."""

    def __init__(self, stop_event: Optional[threading.Event] = None):
        self._stop   = stop_event or threading.Event()
        self._lock   = threading.Lock()
        self._active: Optional[requests.Response] = None

    @staticmethod
    def _headers() -> Dict[str, str]:
        return {
            "Content-Type":      "application/json",
            "anthropic-version": Config.ANTHROPIC_VERSION,
            "x-api-key":         Config.ANTHROPIC_API_KEY,
        }

    @staticmethod
    def build_payload(messages: List[Dict[str, Any]], system: str,
                      tools: List[Dict[str, Any]], max_tokens: int) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model":       Config.MODEL,
            "max_tokens":  max_tokens,
            "temperature": Config.TEMPERATURE,
            "messages":    messages,
            "stream":      True,
        }
        if system: payload["system"] = system
        if tools:  payload["tools"]  = tools
        return payload

    def abort(self) -> None:
        """Stop the current call, closing the upstream response if one is open."""
        self._stop.set()
        with self._lock:
            resp = self._active
        if resp is not None:
            resp.close()

    def call(self, messages: List[Dict[str, Any]], system: str,
             tools: List[Dict[str, Any]], max_tokens: int) -> Dict[str, Any]:
        if self._stop.is_set():
            return {"cancelled": True}
        payload = self.build_payload(messages, system, tools, max_tokens)
        try:
            resp = requests.post(
                Config.ANTHROPIC_URL, json=payload, headers=self._headers(),
                stream=True, timeout=Config.LLM_TIMEOUT,
            )
        except requests.Timeout as e:
            return {"error": f"Request to model timed out: {e}"}
        except requests.RequestException as e:
            if self._stop.is_set():
                return {"cancelled": True}
            return {"error": f"Cannot reach model endpoint: {e}"}

        with self._lock:
            self._active = resp
        try:
            if resp.status_code != 200:
                details = (resp.text or "")[:200]
                Log.error(f"Model API error: HTTP {resp.status_code} {details}")
                return {"error":  f"API request failed (HTTP {resp.status_code}): {details}",
                        "status": resp.status_code}
            return self._parse_stream(resp)
        except (requests.RequestException, OSError, ValueError) as e:
            if self._stop.is_set():
                return {"cancelled": True}
            return {"error": f"Model stream interrupted: {e}"}
        finally:
            with self._lock:
                self._active = None
            resp.close()

    def _parse_stream(self, resp) -> Dict[str, Any]:
        blocks: Dict[int, Dict[str, Any]] = {}
        partial_json: Dict[int, str]      = {}
        stop_reason: Optional[str]        = None
        usage: Dict[str, Any]             = {}
        finished                          = False

        for frame in iter_frames(resp.iter_content(chunk_size=None)):
            if self._stop.is_set():
                return {"cancelled": True}
            ftype = frame.get("type")

            if ftype == "error":
                err = frame.get("error") or {}
                return {"error": f"Model stream error: {err.get('type', 'error')}: "
                                 f"{err.get('message', '')}"}

            if ftype == "message_start":
                usage.update((frame.get("message") or {}).get("usage") or {})

            elif ftype == "content_block_start":
                idx   = frame.get("index", len(blocks))
                block = dict(frame.get("content_block") or {})
                if block.get("type") == "tool_use":
                    partial_json[idx] = ""
                elif block.get("type") == "text":
                    block.setdefault("text", "")
                blocks[idx] = block

            elif ftype == "content_block_delta":
                idx   = frame.get("index")
                delta = frame.get("delta") or {}
                if idx not in blocks:
                    Log.warning(f"[PARSE] delta for unknown block {idx!r} — skipping")
                    continue
                if delta.get("type") == "text_delta":
                    blocks[idx]["text"] = blocks[idx].get("text", "") + delta.get("text", "")
                elif delta.get("type") == "input_json_delta":
                    partial_json[idx] = partial_json.get(idx, "") + delta.get("partial_json", "")

            elif ftype == "message_delta":
                delta = frame.get("delta") or {}
                if delta.get("stop_reason"):
                    stop_reason = delta["stop_reason"]
                usage.update(frame.get("usage") or {})

            elif ftype == "message_stop":
                finished = True
                break

        if self._stop.is_set():
            return {"cancelled": True}
        if not finished:
            Log.error("[PARSE] model stream ended without message_stop")
            return {"error": "Model stream ended before the reply was complete"}

        content: List[Dict[str, Any]] = []
        for idx in sorted(blocks):
            block = blocks[idx]
            btype = block.get("type")
            if btype == "text":
                content.append({"type": "text", "text": block.get("text", "")})
            elif btype == "tool_use":
                tool = self._finish_tool_block(block, partial_json.get(idx, ""))
                if stop_reason == "max_tokens":
                    tool["_truncated"] = True
                content.append(tool)

        if stop_reason == "max_tokens":
            Log.warning("Generation stopped: output token limit hit (stop_reason=max_tokens)")

        return {"content": content, "stop_reason": stop_reason, "usage": usage}

    @staticmethod
    def _finish_tool_block(block: Dict[str, Any], args_str: str) -> Dict[str, Any]:
        """Tool call with its input decoded. Input that does not parse as sent
        is marked ``_truncated`` and never patched up into a runnable command."""
        out = {"type": "tool_use", "id": block.get("id"), "name": block.get("name"),
               "input": block.get("input") or {}}
        if not args_str.strip():
            return out
        try:
            out["input"] = json.loads(args_str)
            return out
        except json.JSONDecodeError as parse_err:
            Log.error(f"[PARSE] '{out['name']}' input JSON decode failed at pos "
                      f"{parse_err.pos}: {parse_err.msg} — tail={args_str[-80:]!r}")
        out["input"]      = {}
        out["_truncated"] = True
        return out
