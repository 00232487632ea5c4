"""Audit trail for tool calls.

Each `tools/call` produces one AuditEntry. Entries are logged through
structlog as they happen and appended to a JSONL file in batches; the
file is flushed when the batch fills and at shutdown.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiofiles

from shared.logging import get_logger
from shared.models import AuditEntry, ToolCallStatus, ToolDefinition

logger = get_logger(__name__)

REDACTED = "[REDACTED]"

# Argument names whose values never reach the audit trail
SENSITIVE_KEYS = frozenset({
    "password", "token", "secret", "api_key", "apikey", "credential", "nonce", "authorization",
})

# Submitted code can be arbitrarily long
MAX_ARGUMENT_CHARS = 2000


def redact(value: Any) -> Any:
    """Return a copy of an argument value safe to persist."""
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    if isinstance(value, str) and len(value) > MAX_ARGUMENT_CHARS:
        return value[:MAX_ARGUMENT_CHARS] + f"... [{len(value) - MAX_ARGUMENT_CHARS} chars]"
    return value


class AuditLogger:
    """
    Records tool calls.

    Entries carry the requested name, the resolved tool id and toolset,
    redacted arguments, outcome, wall time, the JSON-RPC id and the client
    address.
    """

    def __init__(
        self,
        log_path: str | Path = "logs/audit.log",
        enabled: bool = True,
        buffer_size: int = 100
    ) -> None:
        self.log_path = Path(log_path)
        self.enabled = enabled
        self.buffer_size = buffer_size
        self._pending: list[AuditEntry] = []
        self._lock = asyncio.Lock()

        if self.enabled:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def create_entry(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        status: ToolCallStatus,
        tool: Optional[ToolDefinition] = None,
        error: Optional[str] = None,
        execution_time_ms: float = 0,
        rpc_id: Optional[Any] = None,
        client_ip: Optional[str] = None
    ) -> AuditEntry:
        """
        Build the entry for one call.

        Args:
            tool_name: External name requested by the client
            arguments: Arguments supplied with the call
            status: Outcome of the call
            tool: Resolved tool definition, if the name was registered
            error: Error description for failed calls
            execution_time_ms: Handler wall time
            rpc_id: JSON-RPC request id
            client_ip: Client address
        """
        return AuditEntry(
            id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc),
            tool_name=tool_name,
            tool_id=tool.id if tool else None,
            toolset=tool.toolset if tool else None,
            arguments=redact(arguments),
            status=status,
            error=error,
            execution_time_ms=execution_time_ms,
            rpc_id=rpc_id if isinstance(rpc_id, (int, str)) else None,
            client_ip=client_ip,
        )

    async def log(self, entry: AuditEntry) -> None:
        if not self.enabled:
            return

        log = logger.warning if entry.status != ToolCallStatus.SUCCESS else logger.info
        log(
            "Tool call audited",
            audit_id=entry.id,
            tool=entry.tool_name,
            status=entry.status.value,
            execution_time_ms=round(entry.execution_time_ms, 2),
            client_ip=entry.client_ip,
        )

        async with self._lock:
            self._pending.append(entry)
            if len(self._pending) >= self.buffer_size:
                await self._write_pending()

    async def _write_pending(self) -> None:
        if not self._pending:
            return

        batch, self._pending = self._pending, []
        lines = "".join(entry.model_dump_json() + "\n" for entry in batch)
        try:
            async with aiofiles.open(self.log_path, "a") as f:
                await f.write(lines)
        except OSError as e:
            logger.error("Failed to write audit log", error=str(e), path=str(self.log_path))
            # Retried on the next write
            self._pending = batch + self._pending

    async def flush(self) -> None:
        """Write every buffered entry to the audit file."""
        async with self._lock:
            await self._write_pending()

    @property
    def buffered(self) -> int:
        return len(self._pending)
