#!/usr/bin/env python3
"""
editor_web.py — HTTP front end for LiveEditor.

  POST /api/generate   run one editing session, streamed as server-sent events
  POST /api/stop       cancel a running session by request_id
  GET  /, /health      liveness probe

Each /api/generate request gets its own buffer, transcript, model client,
stop event and event channel. The editing loop runs in a worker thread and
pushes events into the channel; the response generator writes them out as
``data: <json>`` frames and always finishes with ``data: [DONE]``.

Usage:
  python editor_web.py [PORT]
"""

import sys
import threading
import traceback
import uuid
from datetime import datetime, timezone
from typing import Dict, Tuple

from flask import Flask, Response, jsonify, request

from editor_core import (
    VERSION, Config, Log,
    EditorEvent, EditorStopped,
    build_conversation, extract_current_content,
)
from editor_stream import (
    DONE_FRAME, KEEPALIVE_FRAME,
    ChannelClosed, EventChannel, sse_frame,
)
from editor_llm import LLMClient
from editor_main import INTERNAL_ERROR, run_editor


app = Flask(__name__)

# request_id -> (stop_event, client); the only state shared across requests.
_active: "Dict[str, Tuple[threading.Event, LLMClient]]" = {}
_active_lock = threading.Lock()


def _register(rid: str, stop_event: threading.Event, client: LLMClient) -> None:
    with _active_lock:
        _active[rid] = (stop_event, client)


def _unregister(rid: str) -> None:
    with _active_lock:
        _active.pop(rid, None)


# =============================================================================
# RESPONSE HELPERS
# =============================================================================

_CORS_HEADERS = {
    "Access-Control-Allow-Origin":  "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@app.after_request
def _add_cors(resp: Response) -> Response:
    resp.headers.setdefault("Access-Control-Allow-Origin", "*")
    return resp


def _preflight() -> Response:
    return Response(status=204, headers=_CORS_HEADERS)


def _json_error(message: str, status: int):
    return jsonify({"error": message}), status


def _sse_response(generator, request_id: str) -> Response:
    return Response(
        generator,
        mimetype="text/event-stream",
        headers={
            "Cache-Control":     "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection":        "keep-alive",
            "Content-Type":      "text/event-stream; charset=utf-8",
            "X-Request-ID":      request_id,
        },
    )


@app.errorhandler(404)
def _not_found(_err):
    return Response("Not found", status=404, mimetype="text/plain")


@app.errorhandler(405)
def _not_allowed(_err):
    return Response("Method not allowed", status=405, mimetype="text/plain")


# =============================================================================
# ROUTES
# =============================================================================

@app.route("/")
@app.route("/health")
def health():
    return jsonify({
        "status":    "ok",
        "message":   "LiveEditor is running",
        "version":   VERSION,
        "model":     Config.MODEL,
        "endpoint":  "/api/generate",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


@app.route("/api/generate", methods=["POST", "OPTIONS"])
def generate():
    if request.method == "OPTIONS":
        return _preflight()

    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        data = {}

    content_type = data.get("contentType") or "csv"
    if content_type not in Config.CONTENT_TYPES:
        content_type = "csv"

    messages = data.get("messages")
    prompt   = data.get("prompt")
    if not messages and not (isinstance(prompt, str) and prompt.strip()):
        return _json_error("Prompt or messages are required", 400)

    if not Config.ANTHROPIC_API_KEY:
        Log.error("ANTHROPIC_API_KEY is not set")
        return _json_error("API key not configured", 500)

    try:
        if messages:
            transcript = build_conversation(messages)
        else:
            transcript = build_conversation(prompt, legacy=True)
    except ValueError as e:
        return _json_error(str(e), 400)

    content = data.get("content")
    if not isinstance(content, str):
        content = extract_current_content(transcript)

    rid        = str(data.get("request_id") or uuid.uuid4().hex)
    stop_event = threading.Event()
    channel    = EventChannel(Config.STREAM_QUEUE_SIZE, stop_event)
    client     = LLMClient(stop_event)
    _register(rid, stop_event, client)
    Log.info(f"[{rid}] {content_type} request: {len(transcript)} message(s), "
             f"{len(content)} chars of content")

    def event_cb(event: EditorEvent) -> None:
        try:
            channel.put(event)
        except ChannelClosed:
            raise EditorStopped("client disconnected")

    def run_in_thread():
        try:
            result = run_editor(
                transcript,
                content        = content,
                content_type   = content_type,
                client         = client,
                event_callback = event_cb,
                flush_wait     = channel.wait_flushed,
                stop_event     = stop_event,
            )
            Log.info(f"[{rid}] {result.status} after {result.iterations} iteration(s)")
        except EditorStopped:
            Log.info(f"[{rid}] stopped while reporting a failure")
        except Exception as exc:
            Log.error(f"[{rid}] editor crashed: {exc}\n{traceback.format_exc()}")
            try:
                channel.put(EditorEvent(type="error", data={
                    "error": f"Internal error: {exc}", "code": INTERNAL_ERROR,
                }))
            except ChannelClosed:
                Log.warning(f"[{rid}] client gone, error not delivered")
        finally:
            channel.close()
            _unregister(rid)

    def frames():
        finished = False
        try:
            for event in channel.drain(keepalive=Config.KEEPALIVE_INTERVAL):
                if event is None:
                    yield KEEPALIVE_FRAME
                    continue
                yield sse_frame(event.to_payload())
                channel.mark_flushed()
            finished = True
            yield DONE_FRAME
        finally:
            if not finished:
                # Client went away mid-stream.
                client.abort()
                channel.close()

    threading.Thread(target=run_in_thread, daemon=True, name=f"editor-{rid[:8]}").start()
    return _sse_response(frames(), rid)


@app.route("/api/stop", methods=["POST", "OPTIONS"])
def stop():
    if request.method == "OPTIONS":
        return _preflight()
    data = request.get_json(force=True, silent=True) or {}
    rid  = str(data.get("request_id") or "")
    with _active_lock:
        entry = _active.get(rid)
    if entry:
        _, client = entry
        client.abort()
        return jsonify({"stopped": True})
    return jsonify({"stopped": False, "detail": "unknown request_id"})


# =============================================================================
# STARTUP
# =============================================================================

if __name__ == "__main__":
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 8787
    try:
        Config.init()
    except ValueError as e:
        sys.exit(f"ERROR: Config.init() failed: {e}")

    print("\n" + "═" * 58)
    print(f"  LiveEditor  v{VERSION}")
    print("═" * 58)
    print(f"  Local     →  http://localhost:{port}/api/generate")
    print(f"  Model     :  {Config.MODEL}")
    print(f"  Max iters :  {Config.MAX_ITERATIONS}")
    print("═" * 58 + "\n")

    app.run(host="0.0.0.0", port=port, threaded=True, debug=False)
