from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import ToolNotFound
from .model import BatchSummary, ToolCallRequest, ToolCallResult, ToolOutput
from .registry import ConnectionRegistry
from .types import Connection

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def _payload(output: Any) -> Any:
    if isinstance(output, ToolOutput):
        return output.model_dump(exclude={"kind"})
    return output


class ConcurrentToolExecutor:
    """Resolves tool names against the registry and runs batches in parallel.

    Tool names are only unique per connection. Without an explicit
    ``server_id`` the first connected server, in registration order, that
    exposes the name wins.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry
        self.last_summary: Optional[BatchSummary] = None

    def resolve(self, name: str, server_id: Optional[str] = None) -> Optional[Connection]:
        candidates = self.registry.connected()
        if server_id is not None:
            candidates = [c for c in candidates if c.server_id == server_id]
        for conn in candidates:
            if any(tool.name == name for tool in conn.tools):
                return conn
        return None

    async def call_tool(
        self, name: str, arguments: Dict[str, Any], server_id: Optional[str] = None
    ) -> Tuple[Connection, Any]:
        conn = self.resolve(name, server_id)
        if conn is None:
            raise ToolNotFound(name)
        logger.info("Calling tool %s on server %s", name, conn.server_id)
        return conn, await conn.client.call_tool(name, arguments)

    async def _execute_one(
        self, request: ToolCallRequest, conn: Optional[Connection]
    ) -> ToolCallResult:
        start = time.perf_counter()
        server_id = conn.server_id if conn else None
        try:
            if conn is None:
                raise ToolNotFound(request.name)
            output = await conn.client.call_tool(request.name, request.arguments)
        except Exception as e:
            elapsed = _elapsed_ms(start)
            logger.error("[Concurrent] %s failed after %sms: %s", request.name, elapsed, e)
            return ToolCallResult(
                id=request.id,
                name=request.name,
                server_id=server_id,
                success=False,
                error_message=str(e) or type(e).__name__,
                elapsed_ms=elapsed,
            )

        elapsed = _elapsed_ms(start)
        if isinstance(output, ToolOutput) and output.is_error:
            logger.warning("[Concurrent] %s reported an error after %sms", request.name, elapsed)
            return ToolCallResult(
                id=request.id,
                name=request.name,
                server_id=server_id,
                payload=_payload(output),
                success=False,
                error_message=output.text or "Tool reported an error",
                elapsed_ms=elapsed,
            )

        logger.info("[Concurrent] %s completed in %sms", request.name, elapsed)
        return ToolCallResult(
            id=request.id,
            name=request.name,
            server_id=server_id,
            payload=_payload(output),
            success=True,
            elapsed_ms=elapsed,
        )

    async def execute_batch(self, calls: Sequence[ToolCallRequest]) -> List[ToolCallResult]:
        """Run every call concurrently; one result per call, in input order."""
        start = time.perf_counter()
        logger.info("Executing %d MCP tools concurrently", len(calls))

        # Resolve up front so a missing tool never waits on a transport.
        resolved = [self.resolve(call.name, call.server_id) for call in calls]
        outcomes = await asyncio.gather(
            *(self._execute_one(call, conn) for call, conn in zip(calls, resolved)),
            return_exceptions=True,
        )

        results: List[ToolCallResult] = []
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                outcome = ToolCallResult(
                    id=call.id,
                    name=call.name,
                    success=False,
                    error_message=f"Execution failed: {outcome}",
                )
            results.append(outcome)

        succeeded = sum(1 for r in results if r.success)
        self.last_summary = BatchSummary(
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            elapsed_ms=_elapsed_ms(start),
        )
        logger.info(
            "Concurrent MCP execution completed in %sms: %d/%d successful",
            self.last_summary.elapsed_ms,
            succeeded,
            len(results),
        )
        return results
