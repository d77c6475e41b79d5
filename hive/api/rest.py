"""REST API for Hive.

Endpoints:
  GET  /tasks                    - List tasks (?include_archived=true)
  POST /tasks                    - Create task
  POST /tasks/archive            - Bulk archive ({"filter": all|schedule|done|archived})
  GET  /tasks/{id}               - Get task
  PUT  /tasks/{id}               - Update task
  DELETE /tasks/{id}             - Delete task
  POST /tasks/{id}/enqueue       - backlog -> queued
  POST /tasks/{id}/reset         - Manual dead-letter reset
  GET  /schedules                - List schedules
  POST /schedules                - Create schedule (duplicates merge)
  GET  /schedules/{id}           - Get schedule
  PUT  /schedules/{id}           - Update schedule
  DELETE /schedules/{id}         - Delete schedule
  POST /schedules/{id}/run       - Fire now
  GET  /agents                   - List agents
  POST /agents                   - Register agent
  GET  /sessions                 - List sessions
  POST /sessions                 - Create session
  POST /sessions/heartbeat       - {"action": "disable_all"}
  GET  /sessions/{id}/mailbox    - List envelopes (?limit=&include_acked=)
  POST /sessions/{id}/mailbox    - {"action": send|ack|clear, ...}
  GET  /sessions/{id}/runs       - Run state + recent runs
  POST /sessions/{id}/runs       - Enqueue a run ({"message", "mode", "dedupe_key", "wait"})
  POST /sessions/{id}/stop       - Abort the in-flight run
  GET  /health                   - Health check (DB connectivity)
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from hive.config import Settings
from hive.core.hive import Hive
from hive.core.schemas import (
    AgentInput,
    EnvelopeInput,
    RunMode,
    ScheduleInput,
    ScheduleUpdate,
    SessionInput,
    TaskInput,
    TaskUpdate,
)
from hive.errors import HiveError
from hive.utils import clamp_int

logger = logging.getLogger(__name__)


def _error_response(e: Exception) -> JSONResponse:
    if isinstance(e, HiveError):
        return JSONResponse({"error": e.message}, status_code=e.status_code)
    if isinstance(e, PydanticValidationError):
        return JSONResponse(
            {"error": "Invalid request", "details": e.errors(include_url=False, include_context=False)},
            status_code=400,
        )
    logger.exception("Unhandled API error")
    return JSONResponse({"error": str(e)}, status_code=500)


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _flag(request: Request, name: str, default: bool = False) -> bool:
    value = request.query_params.get(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def create_app(
    hive: Hive,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    invalid_json = {"error": "Invalid JSON body"}

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def list_tasks(request: Request) -> JSONResponse:
        """GET /tasks - List tasks, newest first."""
        try:
            tasks = await hive.list_tasks(include_archived=_flag(request, "include_archived"))
            return JSONResponse({"tasks": [t.model_dump(mode="json") for t in tasks]})
        except Exception as e:
            return _error_response(e)

    async def create_task(request: Request) -> JSONResponse:
        """POST /tasks - Create a task."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse(invalid_json, status_code=400)
        try:
            task = await hive.create_task(TaskInput.model_validate(body))
            return JSONResponse(task.model_dump(mode="json"), status_code=201)
        except Exception as e:
            return _error_response(e)

    async def archive_tasks(request: Request) -> JSONResponse:
        """POST /tasks/archive - Bulk archive or purge."""
        body = await _json_body(request) or {}
        try:
            result = await hive.archive_tasks(body.get("filter") or request.query_params.get("filter") or "archived")
            return JSONResponse(result.model_dump(mode="json"))
        except Exception as e:
            return _error_response(e)

    async def get_task(request: Request) -> JSONResponse:
        """GET /tasks/{id}"""
        try:
            task = await hive.get_task(request.path_params["id"])
            return JSONResponse(task.model_dump(mode="json"))
        except Exception as e:
            return _error_response(e)

    async def update_task(request: Request) -> JSONResponse:
        """PUT /tasks/{id}"""
        body = await _json_body(request)
        if body is None:
            return JSONResponse(invalid_json, status_code=400)
        try:
            task = await hive.update_task(request.path_params["id"], TaskUpdate.model_validate(body))
            return JSONResponse(task.model_dump(mode="json"))
        except Exception as e:
            return _error_response(e)

    async def delete_task(request: Request) -> JSONResponse:
        """DELETE /tasks/{id}"""
        try:
            await hive.delete_task(request.path_params["id"])
            return JSONResponse({"status": "deleted", "id": request.path_params["id"]})
        except Exception as e:
            return _error_response(e)

    async def enqueue_task(request: Request) -> JSONResponse:
        """POST /tasks/{id}/enqueue"""
        try:
            task = await hive.enqueue_task(request.path_params["id"])
            return JSONResponse(task.model_dump(mode="json"))
        except Exception as e:
            return _error_response(e)

    async def reset_task(request: Request) -> JSONResponse:
        """POST /tasks/{id}/reset"""
        try:
            task = await hive.reset_task(request.path_params["id"])
            return JSONResponse(task.model_dump(mode="json"))
        except Exception as e:
            return _error_response(e)

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    async def list_schedules(request: Request) -> JSONResponse:
        """GET /schedules"""
        try:
            schedules = await hive.list_schedules()
            return JSONResponse({"schedules": [s.model_dump(mode="json") for s in schedules]})
        except Exception as e:
            return _error_response(e)

    async def create_schedule(request: Request) -> JSONResponse:
        """POST /schedules - Create, or return the existing duplicate (200)."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse(invalid_json, status_code=400)
        try:
            schedule = await hive.create_schedule(ScheduleInput.model_validate(body))
            status = 200 if schedule.deduplicated else 201
            return JSONResponse(schedule.model_dump(mode="json"), status_code=status)
        except Exception as e:
            return _error_response(e)

    async def get_schedule(request: Request) -> JSONResponse:
        """GET /schedules/{id}"""
        try:
            schedule = await hive.get_schedule(request.path_params["id"])
            return JSONResponse(schedule.model_dump(mode="json"))
        except Exception as e:
            return _error_response(e)

    async def update_schedule(request: Request) -> JSONResponse:
        """PUT /schedules/{id}"""
        body = await _json_body(request)
        if body is None:
            return JSONResponse(invalid_json, status_code=400)
        try:
            schedule = await hive.update_schedule(request.path_params["id"], ScheduleUpdate.model_validate(body))
            return JSONResponse(schedule.model_dump(mode="json"))
        except Exception as e:
            return _error_response(e)

    async def delete_schedule(request: Request) -> JSONResponse:
        """DELETE /schedules/{id}"""
        try:
            await hive.delete_schedule(request.path_params["id"])
            return JSONResponse({"status": "deleted", "id": request.path_params["id"]})
        except Exception as e:
            return _error_response(e)

    async def run_schedule(request: Request) -> JSONResponse:
        """POST /schedules/{id}/run - Fire now. An in-flight skip is still a 200."""
        try:
            result = await hive.fire_schedule(request.path_params["id"])
            return JSONResponse(result.model_dump(mode="json"))
        except Exception as e:
            return _error_response(e)

    # ------------------------------------------------------------------
    # Agents & sessions
    # ------------------------------------------------------------------

    async def list_agents(request: Request) -> JSONResponse:
        """GET /agents"""
        try:
            agents = await hive.directory.list_agents()
            return JSONResponse({"agents": [a.model_dump(mode="json") for a in agents]})
        except Exception as e:
            return _error_response(e)

    async def create_agent(request: Request) -> JSONResponse:
        """POST /agents"""
        body = await _json_body(request)
        if body is None:
            return JSONResponse(invalid_json, status_code=400)
        try:
            agent = await hive.directory.create_agent(AgentInput.model_validate(body))
            return JSONResponse(agent.model_dump(mode="json"), status_code=201)
        except Exception as e:
            return _error_response(e)

    async def list_sessions(request: Request) -> JSONResponse:
        """GET /sessions"""
        try:
            sessions = await hive.directory.list_sessions()
            return JSONResponse({"sessions": [s.model_dump(mode="json") for s in sessions]})
        except Exception as e:
            return _error_response(e)

    async def create_session(request: Request) -> JSONResponse:
        """POST /sessions"""
        body = await _json_body(request)
        if body is None:
            return JSONResponse(invalid_json, status_code=400)
        try:
            session = await hive.directory.create_session(SessionInput.model_validate(body))
            return JSONResponse(session.model_dump(mode="json"), status_code=201)
        except Exception as e:
            return _error_response(e)

    async def heartbeat(request: Request) -> JSONResponse:
        """POST /sessions/heartbeat - Only ``disable_all`` is supported."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse(invalid_json, status_code=400)
        if body.get("action") != "disable_all":
            return JSONResponse({"error": "Unsupported heartbeat action"}, status_code=400)
        try:
            result = await hive.disable_all_heartbeats(body.get("reason") or "Heartbeat disabled")
            return JSONResponse(result)
        except Exception as e:
            return _error_response(e)

    # ------------------------------------------------------------------
    # Mailbox
    # ------------------------------------------------------------------

    async def list_mailbox(request: Request) -> JSONResponse:
        """GET /sessions/{id}/mailbox"""
        session_id = request.path_params["id"]
        try:
            envelopes = await hive.list_mailbox(
                session_id,
                limit=clamp_int(request.query_params.get("limit"), 50, 1, 500),
                include_acked=_flag(request, "include_acked"),
            )
            return JSONResponse({
                "session_id": session_id,
                "envelopes": [e.model_dump(mode="json") for e in envelopes],
            })
        except Exception as e:
            return _error_response(e)

    async def post_mailbox(request: Request) -> JSONResponse:
        """POST /sessions/{id}/mailbox - send (default), ack or clear."""
        session_id = request.path_params["id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse(invalid_json, status_code=400)
        action = body.get("action") or "send"
        try:
            if action == "send":
                fields = {k: v for k, v in body.items() if k != "action"}
                envelope = await hive.send_envelope(
                    EnvelopeInput.model_validate({**fields, "to_session_id": session_id})
                )
                return JSONResponse(envelope.model_dump(mode="json"), status_code=201)
            if action == "ack":
                envelope_id = body.get("envelope_id")
                if not envelope_id:
                    return JSONResponse({"error": "Missing required field: envelope_id"}, status_code=400)
                envelope = await hive.ack_envelope(session_id, envelope_id)
                if envelope is None:
                    return JSONResponse({"error": "Envelope not found"}, status_code=404)
                return JSONResponse(envelope.model_dump(mode="json"))
            if action == "clear":
                result = await hive.clear_mailbox(session_id, include_acked=body.get("include_acked", True) is not False)
                return JSONResponse(result.model_dump(mode="json"))
            return JSONResponse({"error": f"Unknown mailbox action: {action}"}, status_code=400)
        except Exception as e:
            return _error_response(e)

    # ------------------------------------------------------------------
    # Session runs
    # ------------------------------------------------------------------

    async def get_runs(request: Request) -> JSONResponse:
        """GET /sessions/{id}/runs"""
        session_id = request.path_params["id"]
        try:
            state = hive.runs.get_session_run_state(session_id)
            runs = hive.runs.list_runs(session_id, limit=clamp_int(request.query_params.get("limit"), 20, 1, 200))
            return JSONResponse({
                **state.model_dump(mode="json"),
                "runs": [r.model_dump(mode="json") for r in runs],
            })
        except Exception as e:
            return _error_response(e)

    async def enqueue_run(request: Request) -> JSONResponse:
        """POST /sessions/{id}/runs - Queue a run; ``wait`` blocks for the reply."""
        session_id = request.path_params["id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse(invalid_json, status_code=400)
        message = body.get("message")
        if not message or not isinstance(message, str):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)
        try:
            mode = RunMode(body.get("mode") or RunMode.FOLLOWUP)
        except ValueError:
            return JSONResponse({"error": f"Unknown run mode: {body.get('mode')}"}, status_code=400)
        try:
            handle = await hive.enqueue_session_run(
                session_id,
                message,
                mode=mode,
                source=body.get("source") or "api",
                internal=bool(body.get("internal", False)),
                dedupe_key=body.get("dedupe_key"),
            )
            result: dict[str, Any] = {
                "run_id": handle.run_id,
                "deduped": handle.deduped,
                "merged": handle.merged,
            }
            if not body.get("wait"):
                return JSONResponse(result, status_code=202)
            result["text"] = await handle.result
            return JSONResponse(result)
        except Exception as e:
            return _error_response(e)

    async def stop_session(request: Request) -> JSONResponse:
        """POST /sessions/{id}/stop"""
        try:
            stopped = hive.stop_session(request.path_params["id"])
            return JSONResponse({"stopped": stopped})
        except Exception as e:
            return _error_response(e)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            return JSONResponse(await hive.health())
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/tasks", list_tasks),
        Route("/tasks", create_task, methods=["POST"]),
        Route("/tasks/archive", archive_tasks, methods=["POST"]),
        Route("/tasks/{id}", get_task),
        Route("/tasks/{id}", update_task, methods=["PUT"]),
        Route("/tasks/{id}", delete_task, methods=["DELETE"]),
        Route("/tasks/{id}/enqueue", enqueue_task, methods=["POST"]),
        Route("/tasks/{id}/reset", reset_task, methods=["POST"]),
        Route("/schedules", list_schedules),
        Route("/schedules", create_schedule, methods=["POST"]),
        Route("/schedules/{id}", get_schedule),
        Route("/schedules/{id}", update_schedule, methods=["PUT"]),
        Route("/schedules/{id}", delete_schedule, methods=["DELETE"]),
        Route("/schedules/{id}/run", run_schedule, methods=["POST"]),
        Route("/agents", list_agents),
        Route("/agents", create_agent, methods=["POST"]),
        Route("/sessions", list_sessions),
        Route("/sessions", create_session, methods=["POST"]),
        Route("/sessions/heartbeat", heartbeat, methods=["POST"]),
        Route("/sessions/{id}/mailbox", list_mailbox),
        Route("/sessions/{id}/mailbox", post_mailbox, methods=["POST"]),
        Route("/sessions/{id}/runs", get_runs),
        Route("/sessions/{id}/runs", enqueue_run, methods=["POST"]),
        Route("/sessions/{id}/stop", stop_session, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
