"""MCP Server - FastAPI Application.

Every request is read in full and passed through the security gate before
any protocol logic runs. The relay route feeds editor replies to the
correlator; the main route hands the body to the protocol router.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Iterable, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from shared import __version__
from shared.config import Settings, get_settings
from shared.errors import AuthError
from shared.logging import get_logger, setup_logging
from shared.models import SecurityPolicy, ToolDefinition
from editor.bridge import EditorBridge
from interpreter.executor import PythonExecutor
from interpreter.lifecycle import LifecycleController, SessionLifecycle
from mcp_server.audit import AuditLogger
from mcp_server.auth import RELAY_PATH, Admission, GateRequest, SecurityGate, get_client_ip
from mcp_server.context import ToolContext
from mcp_server.correlator import Correlator
from mcp_server.nonces import NonceStore
from mcp_server.registry import ToolRegistry
from mcp_server.relay import handle_relay
from mcp_server.router import ProtocolRouter
from mcp_server.security_config import load_security_config
from mcp_server.wellknown import build_wellknown_router
from toolsets import filter_tools, load_all_toolsets, load_tools_config

logger = get_logger(__name__)

# Distinguishes "load the policy from the workspace" from an explicit None
_FROM_WORKSPACE: Any = object()


def _gate_request(request: Request, body: bytes) -> GateRequest:
    return GateRequest(
        method=request.method,
        path=request.url.path,
        headers=request.headers,
        peer=request.client.host if request.client else None,
        body=body,
    )


async def enforce_security(request: Request) -> Admission:
    """Dependency run for every route: admit the request or raise AuthError."""
    gate: SecurityGate = request.app.state.gate
    body = await request.body()
    return gate.evaluate(_gate_request(request, body))


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if exc.http_status == 401 else None
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.message},
        headers=headers,
    )


def create_app(
    settings: Optional[Settings] = None,
    policy: Optional[SecurityPolicy] = _FROM_WORKSPACE,
    tools: Optional[Iterable[ToolDefinition]] = None,
    executor: Optional[PythonExecutor] = None,
    editor: Optional[EditorBridge] = None,
    lifecycle: Optional[LifecycleController] = None,
) -> FastAPI:
    """
    Build a server instance.

    Each call builds independent components, so several instances can run
    side by side in one process.

    Args:
        settings: Application settings (cached settings if None)
        policy: Security policy; loaded from the workspace when omitted,
            None serves without any checks
        tools: Tool definitions (every toolset if None), filtered by the
            workspace tools config
        executor: Interpreter session
        editor: Editor bridge
        lifecycle: Lifecycle controller for restart/shutdown requests

    Returns:
        The FastAPI application
    """
    settings = settings or get_settings()
    workspace = settings.workspace

    if policy is _FROM_WORKSPACE:
        policy = load_security_config(
            workspace,
            agent_name=settings.server.agent_name,
            supervisor=settings.server.supervisor,
        )
    port = policy.port if policy is not None and policy.port else settings.server.port

    nonces = NonceStore(ttl=settings.editor.nonce_ttl)
    correlator = Correlator(default_timeout=settings.editor.response_timeout)
    executor = executor or PythonExecutor()
    editor = editor or EditorBridge(settings.editor, workspace)
    lifecycle = lifecycle or SessionLifecycle(executor)

    enabled = load_tools_config(workspace / settings.server.tools_config_path)
    registry = ToolRegistry(filter_tools(load_all_toolsets() if tools is None else tools, enabled))

    context = ToolContext(
        settings=settings,
        registry=registry,
        correlator=correlator,
        nonces=nonces,
        editor=editor,
        executor=executor,
        lifecycle=lifecycle,
        port=port,
    )
    audit_path = Path(settings.server.audit_log_path)
    if not audit_path.is_absolute():
        audit_path = settings.workspace / audit_path
    audit_logger = AuditLogger(
        log_path=audit_path,
        enabled=settings.server.enable_audit
    )
    router = ProtocolRouter(registry=registry, context=context, audit_logger=audit_logger)
    gate = SecurityGate(policy, nonces, trust_forwarded_for=settings.server.trust_forwarded_for)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting MCP Server",
            port=port,
            security_mode=gate.mode.value if gate.mode else "open",
            tool_count=len(registry),
            toolsets=registry.list_toolsets()
        )

        yield

        logger.info("Shutting down MCP Server")
        cancelled = correlator.cancel_all()
        if cancelled:
            logger.info("Cancelled pending editor waits", count=cancelled)
        await audit_logger.flush()

    app = FastAPI(
        title="replbridge",
        description="JSON-RPC tool server for a live Python session",
        version=__version__,
        lifespan=lifespan,
        dependencies=[Depends(enforce_security)],
    )
    app.add_exception_handler(AuthError, auth_error_handler)

    app.state.settings = settings
    app.state.policy = policy
    app.state.gate = gate
    app.state.nonces = nonces
    app.state.correlator = correlator
    app.state.registry = registry
    app.state.router = router
    app.state.context = context
    app.state.lifecycle = lifecycle
    app.state.audit_logger = audit_logger

    @app.post(RELAY_PATH, tags=["Relay"])
    async def editor_response(request: Request) -> JSONResponse:
        """Receive an editor reply for a correlated request."""
        status_code, payload = handle_relay(await request.body(), correlator)
        return JSONResponse(status_code=status_code, content=payload)

    @app.get("/health", tags=["System"])
    async def health_check() -> dict[str, Any]:
        """Liveness check outside JSON-RPC."""
        return {
            "status": "healthy",
            "version": __version__,
            "tool_count": len(registry),
            "pending_waits": correlator.pending_count,
        }

    app.include_router(build_wellknown_router(policy, port, workspace))

    @app.api_route("/", methods=["GET", "POST"], tags=["JSON-RPC"])
    async def rpc(request: Request) -> JSONResponse:
        """JSON-RPC entry point."""
        body = await request.body()
        client_ip = get_client_ip(_gate_request(request, body), settings.server.trust_forwarded_for)
        status_code, payload = await router.handle(body, client_ip=client_ip)
        return JSONResponse(status_code=status_code, content=payload)

    return app


def serve(settings: Settings) -> None:
    """Run a server until it is stopped or a client requests shutdown."""
    import uvicorn

    setup_logging(settings.log_level, json_output=settings.json_logs or settings.environment == "production")

    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.server.host,
        port=app.state.context.port,
        log_config=None,
    )
    server = uvicorn.Server(config)

    def request_exit() -> None:
        server.should_exit = True

    app.state.lifecycle.set_shutdown_callback(request_exit)
    server.run()


def main():
    """Run the MCP Server."""
    serve(get_settings())


if __name__ == "__main__":
    main()
