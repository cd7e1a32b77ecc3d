"""
Audit API routes.

Runs the alignment pipeline as a server-sent event stream and exposes the
session's graph, Venn result and agent tools.
"""

import asyncio
import json
import uuid

from flask import current_app, jsonify, request, Response
from pydantic import ValidationError

from audit import AuditPipeline, RunContext, ToolError, ToolExecutor, ORCHESTRATOR_TOOLS
from config import load_settings
from models import Element
from repositories import get_repository
from . import audit_bp


def _repo():
    return current_app.config.get("AUDIT_REPO") or get_repository()


def _build_pipeline(repo) -> AuditPipeline:
    factory = current_app.config.get("PIPELINE_FACTORY")
    if factory is not None:
        return factory(repo)
    return AuditPipeline.from_settings(load_settings(), repo=repo)


def _token() -> str:
    return request.args.get("token") or request.headers.get("X-Share-Token", "")


def _parse_elements(items) -> list[Element]:
    return [Element.model_validate(item) for item in (items or [])]


def _access_error(e: Exception):
    if isinstance(e, KeyError):
        return jsonify({"error": "Session not found"}), 404
    return jsonify({"error": "Invalid token"}), 403


@audit_bp.route("/api/audit/run", methods=["POST"])
def run_audit():
    """
    Run the full pipeline: NODES → EXTRACT → MERGE → GRAPH → TESSERACT → VENN

    Streams progress events; the last one is 'completed' (with the Venn
    result) or 'error'.
    """
    data = request.json or {}
    try:
        d1_elements = _parse_elements(data.get("d1Elements"))
        d2_elements = _parse_elements(data.get("d2Elements"))
    except ValidationError as e:
        return jsonify({"error": f"Invalid elements: {e}"}), 400

    ctx = RunContext(
        session_id=data.get("sessionId") or str(uuid.uuid4()),
        token=data.get("shareToken", ""),
        project_id=data.get("projectId", ""),
    )
    pipeline = _build_pipeline(_repo())

    def generate():
        loop = asyncio.new_event_loop()
        events = pipeline.stream(ctx, d1_elements, d2_elements)
        try:
            yield f"data: {json.dumps({'phase': 'idle', 'message': 'Starting audit...', 'progress': 0, 'sessionId': ctx.session_id})}\n\n"
            while True:
                try:
                    event = loop.run_until_complete(events.__anext__())
                except StopAsyncIteration:
                    break
                yield f"data: {json.dumps(event.to_dict())}\n\n"
        finally:
            loop.run_until_complete(events.aclose())
            loop.close()

    return Response(generate(), mimetype="text/event-stream")


@audit_bp.route("/api/audit/<session_id>")
def get_session(session_id):
    """Session status and phase."""
    repo = _repo()
    try:
        session = repo.sessions.check_access(session_id, _token())
    except (KeyError, PermissionError) as e:
        return _access_error(e)
    return jsonify({
        "id": session.id,
        "projectId": session.project_id,
        "status": session.status.value,
        "phase": session.phase,
        "error": session.error,
        "updatedAt": session.updated_at.isoformat(),
    })


@audit_bp.route("/api/audit/<session_id>/graph")
def get_graph(session_id):
    """All nodes and edges of a session's traceability graph."""
    repo = _repo()
    token = _token()
    try:
        nodes = repo.graph.get_existing_nodes_by_session(session_id, token)
        edges = repo.graph.get_edges_by_session(session_id, token)
    except (KeyError, PermissionError) as e:
        return _access_error(e)
    return jsonify({
        "nodes": [n.to_dict() for n in nodes],
        "edges": [e.to_dict() for e in edges],
    })


@audit_bp.route("/api/audit/<session_id>/venn")
def get_venn(session_id):
    """The session's final Venn result."""
    repo = _repo()
    try:
        result = repo.trail.get_venn_result(session_id, _token())
    except (KeyError, PermissionError) as e:
        return _access_error(e)
    if result is None:
        return jsonify({"error": "No Venn result yet"}), 404
    return jsonify(result.to_dict())


@audit_bp.route("/api/audit/tools")
def list_tools():
    """Tool definitions for agent orchestrators."""
    return jsonify(ORCHESTRATOR_TOOLS)


@audit_bp.route("/api/audit/<session_id>/tools/<name>", methods=["POST"])
def call_tool(session_id, name):
    """Execute one agent tool call against a session."""
    data = request.json or {}
    repo = _repo()
    token = data.get("shareToken") or _token()
    try:
        repo.sessions.check_access(session_id, token)
    except (KeyError, PermissionError) as e:
        return _access_error(e)

    try:
        datasets = {
            "dataset1": _parse_elements(data.get("d1Elements")),
            "dataset2": _parse_elements(data.get("d2Elements")),
        }
    except ValidationError as e:
        return jsonify({"error": f"Invalid elements: {e}"}), 400

    ctx = RunContext(session_id=session_id, token=token)
    executor = ToolExecutor(repo, ctx, datasets)
    try:
        result = executor.execute(name, data.get("params") or {})
    except ToolError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"tool": name, "result": result})
