"""Discovery documents and OAuth stubs.

Some clients probe for OAuth before talking JSON-RPC. When a policy that
requires credentials is configured, these endpoints answer with fabricated
but well-formed values so the client proceeds to send its API key. They
grant nothing: every request still passes the security gate.
"""

import secrets
import time
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response

from shared.models import SecurityMode, SecurityPolicy

AGENTS_DOC = "AGENTS.md"
AGENTS_PATHS = (
    "/.well-known/agents.md",
    "/agents.md",
    "/.well-known/AGENTS.md",
    "/AGENTS.md",
)


def oauth_enabled(policy: Optional[SecurityPolicy]) -> bool:
    """OAuth is advertised only when a policy requires credentials."""
    return policy is not None and policy.mode != SecurityMode.LAX


def oauth_metadata(port: int) -> dict[str, Any]:
    base_url = f"http://localhost:{port}"
    return {
        "issuer": base_url,
        "authorization_endpoint": f"{base_url}/oauth/authorize",
        "token_endpoint": f"{base_url}/oauth/token",
        "registration_endpoint": f"{base_url}/oauth/register",
        "grant_types_supported": ["authorization_code", "client_credentials"],
        "response_types_supported": ["code"],
        "scopes_supported": ["read", "write"],
        "client_registration_types_supported": ["dynamic"],
        "code_challenge_methods_supported": ["S256"],
    }


def client_registration() -> dict[str, Any]:
    return {
        "client_id": f"replbridge-{secrets.token_hex(8)}",
        "client_secret": secrets.token_hex(16),
        "client_id_issued_at": int(time.time()),
        "grant_types": ["authorization_code", "client_credentials"],
        "response_types": ["code"],
        "redirect_uris": [
            "http://localhost:8080/callback",
            "http://127.0.0.1:8080/callback",
        ],
        "token_endpoint_auth_method": "client_secret_basic",
        "scope": "read write",
    }


def access_token() -> dict[str, Any]:
    return {
        "access_token": f"access_{secrets.token_hex(16)}",
        "token_type": "Bearer",
        "expires_in": 3600,
        "scope": "read write",
    }


def _not_found() -> Response:
    return PlainTextResponse("Not Found", status_code=404)


def build_wellknown_router(
    policy: Optional[SecurityPolicy],
    port: int,
    workspace_dir: str | Path = "."
) -> APIRouter:
    """
    Build the router for the agents document and the OAuth stubs.

    Args:
        policy: Active security policy; None disables the OAuth stubs
        port: Port advertised in the OAuth metadata
        workspace_dir: Directory searched for the agents document

    Returns:
        Router to include in the application
    """
    router = APIRouter(tags=["Discovery"])
    agents_path = Path(workspace_dir) / AGENTS_DOC

    async def agents_document() -> Response:
        if not agents_path.is_file():
            return PlainTextResponse(f"{AGENTS_DOC} not found in project root", status_code=404)
        return Response(
            content=agents_path.read_text(),
            media_type="text/markdown; charset=utf-8",
        )

    for path in AGENTS_PATHS:
        router.add_api_route(path, agents_document, methods=["GET"], include_in_schema=False)

    @router.get("/.well-known/oauth-authorization-server")
    async def metadata() -> Response:
        if not oauth_enabled(policy):
            return _not_found()
        return JSONResponse(oauth_metadata(port))

    @router.post("/oauth/register")
    async def register() -> Response:
        if not oauth_enabled(policy):
            return _not_found()
        return JSONResponse(client_registration(), status_code=201)

    @router.get("/oauth/authorize")
    async def authorize(request: Request) -> Response:
        if not oauth_enabled(policy):
            return _not_found()
        # Local development: every authorization request is approved
        redirect_uri = request.query_params.get("redirect_uri", "")
        query = urlencode({
            "code": f"auth_{secrets.token_hex(8)}",
            "state": request.query_params.get("state", ""),
        })
        return RedirectResponse(f"{redirect_uri}?{query}", status_code=302)

    @router.post("/oauth/token")
    async def token() -> Response:
        if not oauth_enabled(policy):
            return _not_found()
        return JSONResponse(access_token())

    return router
