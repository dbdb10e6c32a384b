from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from crud import HISTORY_PAGE_LIMIT, CommandLedger, HistoryReader, SessionStore
from database import Database
from errors import RelayError, StorageError, UpstreamError, ValidationError
from settings import Settings, get_settings
from upstream import Failure, UpstreamExecutor


logger = logging.getLogger("command_relay")


def _error_body(exc: RelayError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "error": exc.message}
    if isinstance(exc, UpstreamError):
        body["details"] = exc.details
    return body


class CommandRelay:
    """Relay operations shared by the REST routes and the MCP tools.

    Each operation returns the success body or raises a RelayError.
    """

    def __init__(
        self,
        database: Database,
        settings: Settings,
        executor: Optional[UpstreamExecutor] = None,
    ) -> None:
        self.database = database
        self.settings = settings
        self.sessions = SessionStore(database)
        self.ledger = CommandLedger(database)
        self.reader = HistoryReader(database)
        self.executor = executor or UpstreamExecutor(settings)

    async def _resolve(self, session_id: Any):
        if session_id is not None and not isinstance(session_id, str):
            raise ValidationError("session_id must be a string")
        token = session_id or self.settings.default_session_id
        return await asyncio.to_thread(self.sessions.resolve_or_create, token)

    async def health(self) -> Dict[str, Any]:
        connected = await asyncio.to_thread(self.database.ping)
        return {
            "status": "OK",
            "message": "Command relay backend is running!",
            "database": "Connected" if connected else "Disconnected",
        }

    async def execute(self, command: Any, session_id: Any = None) -> Dict[str, Any]:
        if not isinstance(command, str) or not command.strip():
            raise ValidationError("Command is required")
        command = command.strip()

        session = await self._resolve(session_id)
        logger.info("Executing command for session %s: %s", session.token, command)

        started = time.perf_counter()
        outcome = await self.executor.execute(command, session.token)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        # The audit write never changes what the caller gets back.
        try:
            await asyncio.to_thread(self.ledger.record, session, command, elapsed_ms, outcome)
        except StorageError:
            logger.exception("Failed to record command for session %s", session.token)

        if isinstance(outcome, Failure):
            logger.error("Command failed after %sms: %s", elapsed_ms, outcome.message)
            raise UpstreamError(outcome.message, outcome.details)

        logger.info("Command executed successfully in %sms", elapsed_ms)
        return {
            "success": True,
            "data": outcome.payload,
            "execution_time": elapsed_ms,
            "message": "Command executed successfully",
        }

    async def history(self, session_id: Optional[str] = None, limit: Any = None) -> Dict[str, Any]:
        if limit is None:
            limit = self.settings.history_limit
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise ValidationError("limit must be an integer")
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        session = await self._resolve(session_id)
        items = await asyncio.to_thread(self.reader.list_history, session, limit)
        return {"success": True, "history": items}

    async def analytics(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        session = await self._resolve(session_id)
        data = await self.reader.analytics(session)
        return {"success": True, "analytics": data}

    async def clear_history(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        session = await self._resolve(session_id)
        removed = await asyncio.to_thread(self.reader.clear_history, session)
        logger.info("Cleared %s commands for session %s", removed, session.token)
        return {"success": True, "message": "History cleared", "deleted": removed}


async def _respond(operation) -> JSONResponse:
    try:
        body = await operation
    except RelayError as exc:
        return JSONResponse(_error_body(exc), status_code=exc.status_code)
    except Exception as exc:
        logger.exception("Request processing failed: %s", exc)
        return JSONResponse({"success": False, "error": str(exc)}, status_code=500)
    return JSONResponse(body)


async def _tool_result(operation) -> Dict[str, Any]:
    try:
        return await operation
    except RelayError as exc:
        return _error_body(exc)


def build_server(
    database: Database,
    settings: Optional[Settings] = None,
    executor: Optional[UpstreamExecutor] = None,
) -> FastMCP:
    """Create the FastMCP server with the relay's REST routes and MCP tools registered."""
    settings = settings or get_settings()
    relay = CommandRelay(database, settings, executor)

    # Provide concise server instructions to guide LLMs on when to use the relay tools.
    mcp = FastMCP(
        "command-relay",
        instructions=(
            "Command Relay:"
            " Use 'execute_command(command, session_id?)' to run a natural-language command upstream."
            " Use 'command_history(session_id?, limit?)' to list past commands, newest first."
            " Use 'command_analytics(session_id?)' for success/failure counts and average latency."
            " Use 'clear_history(session_id?)' to delete a session's history."
            " REST equivalents live under /api."
        ),
    )

    # Configure networking and mount path for standalone Streamable HTTP
    mcp.settings.host = settings.host
    mcp.settings.port = settings.port
    mcp.settings.streamable_http_path = "/mcp"

    @mcp.resource("relay://session/{session_id}/history")
    async def session_history_resource(session_id: str) -> str:
        """Return a session's recent command history as a JSON string."""
        return json.dumps(await _tool_result(relay.history(session_id)))

    @mcp.tool(name="execute_command")
    async def tool_execute_command(command: str, session_id: Optional[str] = None) -> dict:
        """Relay a command to the execution API and record the outcome.

        Returns the same body as POST /api/execute.
        """
        return await _tool_result(relay.execute(command, session_id))

    @mcp.tool(name="command_history")
    async def tool_command_history(session_id: Optional[str] = None, limit: int = HISTORY_PAGE_LIMIT) -> dict:
        """Return up to `limit` (max 50) past commands for the session, newest first."""
        return await _tool_result(relay.history(session_id, limit))

    @mcp.tool(name="command_analytics")
    async def tool_command_analytics(session_id: Optional[str] = None) -> dict:
        """Return total/successful/failed counts and average successful latency (ms)."""
        return await _tool_result(relay.analytics(session_id))

    @mcp.tool(name="clear_history")
    async def tool_clear_history(session_id: Optional[str] = None) -> dict:
        """Delete all recorded commands and results for the session."""
        return await _tool_result(relay.clear_history(session_id))

    @mcp.tool(name="help")
    def tool_help() -> dict:
        """List available tools and their usage signatures for this server."""
        return {
            "tools": [
                {
                    "name": "execute_command",
                    "args": {"command": "string", "session_id": "string?"},
                    "description": "Relay a command upstream and record the outcome.",
                },
                {
                    "name": "command_history",
                    "args": {"session_id": "string?", "limit": "int=50"},
                    "description": "Past commands for a session (newest first).",
                },
                {"name": "command_analytics", "args": {"session_id": "string?"}, "description": "Aggregate counts and latency."},
                {"name": "clear_history", "args": {"session_id": "string?"}, "description": "Delete a session's history."},
            ]
        }

    # ------------------------------
    # REST API: Command Relay
    # ------------------------------

    @mcp.custom_route("/api/health", methods=["GET"])
    async def health(request: Request):
        return await _respond(relay.health())

    @mcp.custom_route("/api/execute", methods=["POST"])
    async def execute(request: Request):
        """Relay a command.

        Body: { "command": str, "session_id": str? }
        """
        try:
            data = await request.json()
        except Exception:
            return JSONResponse({"success": False, "error": "invalid_json"}, status_code=400)
        if not isinstance(data, dict):
            data = {}
        return await _respond(relay.execute(data.get("command"), data.get("session_id")))

    @mcp.custom_route("/api/history", methods=["GET"])
    async def history(request: Request):
        params = request.query_params
        return await _respond(relay.history(params.get("session_id"), params.get("limit")))

    @mcp.custom_route("/api/history", methods=["DELETE"])
    async def clear_history(request: Request):
        return await _respond(relay.clear_history(request.query_params.get("session_id")))

    @mcp.custom_route("/api/analytics", methods=["GET"])
    async def analytics(request: Request):
        return await _respond(relay.analytics(request.query_params.get("session_id")))

    return mcp


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="[%(asctime)s] %(levelname)s - %(message)s",
    )
    with Database(settings.database_url) as database:
        database.init_db()
        mcp = build_server(database, settings)
        logger.info(
            "Command relay on http://%s:%s (REST under /api, MCP at %s), upstream %s",
            settings.host,
            settings.port,
            mcp.settings.streamable_http_path,
            settings.upstream_url,
        )
        # Run as a standalone Streamable HTTP MCP server
        mcp.run(transport="streamable-http")


if __name__ == "__main__":
    main()
