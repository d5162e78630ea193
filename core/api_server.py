"""
Flask server exposing the LocalMind model lifecycle and generation endpoints.
"""

from __future__ import annotations

import json
import os
import queue
import threading
import uuid
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Tuple, Type

from dotenv import load_dotenv
from flask import Flask, Response, abort, jsonify, request, stream_with_context
from pydantic import BaseModel, Field, ValidationError

from core.errors import GenerationBusy
from core.model_manager import CompletionCallback
from core.runtime import Runtime, build_runtime
from core.streaming import QueueSink
from utils.logger_util import get_logger

logger = get_logger("api.server")


class DownloadRequest(BaseModel):
    name: str = Field(min_length=1)


class LoadRequest(BaseModel):
    name: Optional[str] = None


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    max_tokens: int = Field(default=256, ge=1, le=4096)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    stream: bool = False


class GenerateResponse(BaseModel):
    id: str
    text: str
    mode: str


class SettingsPayload(BaseModel):
    auto_load_model: Optional[bool] = None


def create_app(runtime: Optional[Runtime] = None) -> Flask:
    """
    Factory that configures and returns a Flask application.

    Args:
        runtime: Pre-built runtime (tests inject one); built from settings otherwise.
    """

    load_dotenv()
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False

    runtime = runtime or build_runtime()
    app.extensions["localmind"] = runtime
    settings_loader = runtime.settings
    manager = runtime.manager
    dispatcher = runtime.dispatcher

    operation_timeout = settings_loader.get_float("api", "operation_timeout", default=600)
    generation_timeout = settings_loader.get_float("api", "generation_timeout", default=300)

    def json_abort(status_code: int, detail: Any) -> None:
        response = jsonify({"detail": detail})
        response.status_code = status_code
        abort(response)

    def enforce_token() -> None:
        token_required = settings_loader.get_bool("api", "token_auth_enabled", default=False)
        if not token_required:
            return
        expected = os.getenv("LOCALMIND_API_TOKEN")
        auth_header = request.headers.get("Authorization", "")
        provided = auth_header.replace("Bearer ", "", 1)
        if not expected or provided != expected:
            json_abort(401, "Invalid token")

    def parse_payload(model_cls: Type[BaseModel]) -> BaseModel:
        payload = request.get_json(silent=True) or {}
        try:
            return model_cls.model_validate(payload)
        except ValidationError as exc:
            json_abort(400, exc.errors(include_url=False, include_context=False))

    def run_operation(start: Callable[[CompletionCallback], "Future[bool]"]) -> Tuple[bool, Optional[str]]:
        """Run a lifecycle operation and wait for its completion callback."""
        outcome: Dict[str, Any] = {}
        done = threading.Event()

        def on_complete(ok: bool, error: Optional[str]) -> None:
            outcome["ok"] = ok
            outcome["error"] = error
            done.set()

        start(on_complete)
        if not done.wait(operation_timeout):
            json_abort(504, "Operation timed out")
        return outcome["ok"], outcome["error"]

    def lifecycle_response(ok: bool, error: Optional[str]) -> Response:
        body = {"ok": ok, "state": manager.state.value, "mode": runtime.adapter.mode()}
        if ok:
            return jsonify(body)
        body["detail"] = error
        response = jsonify(body)
        response.status_code = 409
        return response

    @app.route("/healthz", methods=["GET"])
    def health() -> Response:
        return jsonify({"status": "ok", "state": manager.state.value, "mode": runtime.adapter.mode()})

    @app.route("/v1/models", methods=["GET"])
    def list_models() -> Response:
        enforce_token()
        data = [
            {
                "name": descriptor.name,
                "display_name": descriptor.display_name,
                "description": descriptor.description,
                "size_bytes": descriptor.size_bytes,
                "size": manager.model_size(descriptor.name),
                "context_length": descriptor.context_length,
                "downloaded": manager.is_model_downloaded(descriptor.name),
            }
            for descriptor in manager.available_models()
        ]
        return jsonify({"data": data, "downloaded": manager.downloaded_models()})

    @app.route("/v1/status", methods=["GET"])
    def status() -> Response:
        enforce_token()
        payload = manager.detailed_status()
        payload["systemInfo"] = manager.system_info()
        return jsonify(payload)

    @app.route("/v1/models/download", methods=["POST"])
    def download_model() -> Response:
        enforce_token()
        req_model = parse_payload(DownloadRequest)
        if req_model.name not in runtime.registry:
            json_abort(404, f"Unknown model: {req_model.name}")
        if manager.is_downloading:
            json_abort(409, "A model download is already in progress")

        def on_complete(ok: bool, error: Optional[str]) -> None:
            if ok:
                logger.info("Download of %s finished", req_model.name)
            else:
                logger.warning("Download of %s failed: %s", req_model.name, error)

        manager.download_model(req_model.name, on_complete=on_complete)
        response = jsonify({"status": "started", "name": req_model.name})
        response.status_code = 202
        return response

    @app.route("/v1/models/download/cancel", methods=["POST"])
    def cancel_download() -> Response:
        enforce_token()
        return jsonify({"cancelled": manager.cancel_download()})

    @app.route("/v1/models/load", methods=["POST"])
    def load_model() -> Response:
        enforce_token()
        req_model = parse_payload(LoadRequest)
        ok, error = run_operation(lambda done: manager.load_model(req_model.name, on_complete=done))
        return lifecycle_response(ok, error)

    @app.route("/v1/models/unload", methods=["POST"])
    def unload_model() -> Response:
        enforce_token()
        ok, error = run_operation(lambda done: manager.unload_model(on_complete=done))
        return lifecycle_response(ok, error)

    @app.route("/v1/models/<path:name>", methods=["DELETE"])
    def delete_model(name: str) -> Response:
        enforce_token()
        ok, error = run_operation(lambda done: manager.delete_model(name, on_complete=done))
        return lifecycle_response(ok, error)

    @app.route("/v1/generate", methods=["POST"])
    def generate() -> Response:
        enforce_token()
        req_model = parse_payload(GenerateRequest)
        sink = QueueSink()
        handle = dispatcher.generate(req_model.prompt, req_model.max_tokens, req_model.temperature, sink)
        if not handle.accepted:
            status_code = 409 if isinstance(handle.error, GenerationBusy) else 500
            json_abort(status_code, str(handle.error))

        generation_id = f"gen-{handle.session.id if handle.session else uuid.uuid4().hex}"

        if req_model.stream:

            def sse_stream() -> Any:
                try:
                    for event in sink.iter_events(timeout=generation_timeout):
                        chunk = {"id": generation_id, "type": event.kind, "text": event.text}
                        yield f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n"
                except queue.Empty:
                    dispatcher.stop_generation()
                    yield f"data: {json.dumps({'id': generation_id, 'type': 'error', 'text': 'Generation timed out'})}\n\n"
                yield "data: [DONE]\n\n"

            return Response(stream_with_context(sse_stream()), mimetype="text/event-stream")

        try:
            terminal = None
            for event in sink.iter_events(timeout=generation_timeout):
                terminal = event
        except queue.Empty:
            dispatcher.stop_generation()
            json_abort(504, "Generation timed out")

        if terminal is None or terminal.kind == "error":
            json_abort(502, terminal.text if terminal else "Generation ended without a result")

        response_payload = GenerateResponse(id=generation_id, text=terminal.text, mode=runtime.adapter.mode())
        return jsonify(response_payload.model_dump())

    @app.route("/v1/generate/stop", methods=["POST"])
    def stop_generation() -> Response:
        enforce_token()
        dispatcher.stop_generation()
        return jsonify({"stopped": True})

    @app.route("/settings", methods=["GET"])
    def get_settings() -> Response:
        enforce_token()
        return jsonify({"auto_load_model": manager.is_auto_load_enabled()})

    @app.route("/settings", methods=["POST"])
    def update_settings() -> Response:
        enforce_token()
        req_model = parse_payload(SettingsPayload)
        if req_model.auto_load_model is not None:
            manager.set_auto_load(req_model.auto_load_model)
        return jsonify({"auto_load_model": manager.is_auto_load_enabled()})

    return app
