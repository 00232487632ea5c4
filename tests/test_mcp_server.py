"""Tests for MCP Server components."""

import asyncio
import json
import threading
import time
from unittest.mock import Mock

import pytest

from shared.config import ServerSettings, Settings
from shared.models import SecurityMode, SecurityPolicy, ToolCallStatus, ToolDefinition


def make_tool(name, handler=None, tool_id=None, schema=None, toolset="test"):
    return ToolDefinition(
        id=tool_id or f"test.{name}",
        name=name,
        description=f"{name} tool",
        input_schema=schema or {"type": "object", "properties": {}, "required": []},
        handler=handler or (lambda arguments, context: f"{name} ok"),
        toolset=toolset,
    )


def make_router(tools):
    from mcp_server.audit import AuditLogger
    from mcp_server.context import ToolContext
    from mcp_server.correlator import Correlator
    from mcp_server.nonces import NonceStore
    from mcp_server.registry import ToolRegistry
    from mcp_server.router import ProtocolRouter

    registry = ToolRegistry(tools)
    context = ToolContext(
        settings=Settings(server=ServerSettings(enable_audit=False)),
        registry=registry,
        correlator=Correlator(),
        nonces=NonceStore(),
        editor=Mock(),
        executor=Mock(),
        lifecycle=Mock(),
    )
    return ProtocolRouter(registry=registry, context=context, audit_logger=AuditLogger(enabled=False))


def rpc(method, rpc_id=1, params=None):
    envelope = {"jsonrpc": "2.0", "id": rpc_id, "method": method}
    if params is not None:
        envelope["params"] = params
    return json.dumps(envelope).encode()


class TestToolRegistry:
    """Tests for the ToolRegistry."""

    def test_lookup_by_name_and_id(self):
        from mcp_server.registry import ToolRegistry

        registry = ToolRegistry([make_tool("ping", tool_id="core.ping")])

        assert registry.resolve("ping") == "core.ping"
        assert registry.get("ping").id == "core.ping"
        assert registry.get_by_id("core.ping").name == "ping"
        assert registry.get("missing") is None
        assert "ping" in registry
        assert len(registry) == 1

    def test_duplicate_name_rejected(self):
        from mcp_server.registry import ToolRegistry
        from shared.errors import RegistryError

        with pytest.raises(RegistryError, match="already registered"):
            ToolRegistry([
                make_tool("ping", tool_id="a.ping"),
                make_tool("ping", tool_id="b.ping"),
            ])

    def test_duplicate_id_rejected(self):
        from mcp_server.registry import ToolRegistry
        from shared.errors import RegistryError

        with pytest.raises(RegistryError):
            ToolRegistry([
                make_tool("one", tool_id="same"),
                make_tool("two", tool_id="same"),
            ])

    def test_listing_and_toolsets(self):
        from mcp_server.registry import ToolRegistry

        registry = ToolRegistry([
            make_tool("a", toolset="core"),
            make_tool("b", toolset="editor"),
            make_tool("c", toolset="editor"),
        ])

        listing = registry.listing()
        assert [t["name"] for t in listing] == ["a", "b", "c"]
        assert set(listing[0]) == {"name", "description", "inputSchema"}
        assert registry.list_toolsets() == ["core", "editor"]
        assert len(registry.list_tools(toolset="editor")) == 2

    def test_validate_arguments(self):
        from mcp_server.registry import ToolRegistry

        registry = ToolRegistry([make_tool("greet", schema={
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "count": {"type": "integer"}
            },
            "required": ["name"]
        })])

        is_valid, errors = registry.validate_arguments("greet", {"name": "x", "count": 5})
        assert is_valid
        assert errors == []

        is_valid, errors = registry.validate_arguments("greet", {"count": "five"})
        assert not is_valid
        assert len(errors) == 2


class TestProtocolRouter:
    """Tests for the protocol router."""

    @pytest.mark.asyncio
    async def test_empty_body(self):
        router = make_router([])

        status, payload = await router.handle(b"")

        assert status == 400
        assert payload["error"]["code"] == -32600
        assert payload["id"] == 0

    @pytest.mark.asyncio
    async def test_unparseable_body_is_internal_error(self):
        router = make_router([])

        status, payload = await router.handle(b"{not json")

        assert status == 500
        assert payload["error"]["code"] == -32603
        assert payload["id"] == 0

    @pytest.mark.asyncio
    async def test_missing_method_keeps_id(self):
        router = make_router([])

        status, payload = await router.handle(json.dumps({"jsonrpc": "2.0", "id": 7}).encode())

        assert status == 400
        assert payload["error"]["code"] == -32600
        assert payload["id"] == 7

    @pytest.mark.asyncio
    async def test_unknown_method(self):
        router = make_router([])

        status, payload = await router.handle(rpc("resources/list", rpc_id="abc"))

        assert status == 404
        assert payload["error"]["code"] == -32601
        assert payload["id"] == "abc"

    @pytest.mark.asyncio
    async def test_initialize(self):
        from mcp_server.router import PROTOCOL_VERSION

        router = make_router([])

        status, payload = await router.handle(rpc("initialize", params={}))

        assert status == 200
        assert payload["result"]["protocolVersion"] == PROTOCOL_VERSION
        assert payload["result"]["serverInfo"]["name"] == "replbridge"
        assert "error" not in payload

    @pytest.mark.asyncio
    async def test_initialized_notification(self):
        router = make_router([])

        body = json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}).encode()
        status, payload = await router.handle(body)

        assert status == 200
        assert payload == {}

    @pytest.mark.asyncio
    async def test_initialized_with_id_echoes_id(self):
        router = make_router([])

        body = json.dumps({"jsonrpc": "2.0", "id": 7, "method": "notifications/initialized"}).encode()
        status, payload = await router.handle(body)

        assert status == 200
        assert payload["id"] == 7
        assert payload["result"] == {}

    @pytest.mark.asyncio
    async def test_tools_list(self):
        router = make_router([make_tool("a"), make_tool("b")])

        status, payload = await router.handle(rpc("tools/list"))

        assert status == 200
        assert len(payload["result"]["tools"]) == 2

    @pytest.mark.asyncio
    async def test_call_unknown_tool(self):
        router = make_router([make_tool("a")])

        status, payload = await router.handle(
            rpc("tools/call", rpc_id=3, params={"name": "does_not_exist"})
        )

        assert status == 404
        assert payload["id"] == 3
        assert payload["error"]["code"] == -32602
        assert "does_not_exist" in payload["error"]["message"]

    @pytest.mark.asyncio
    async def test_call_missing_name(self):
        router = make_router([make_tool("a")])

        status, payload = await router.handle(rpc("tools/call", params={"arguments": {}}))

        assert status == 400
        assert payload["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_call_sync_tool(self):
        def echo(arguments, context):
            return f"echo {arguments['text']} from {context.rpc_id}"

        router = make_router([make_tool("echo", handler=echo)])

        status, payload = await router.handle(
            rpc("tools/call", rpc_id=11, params={"name": "echo", "arguments": {"text": "hi"}})
        )

        assert status == 200
        assert payload["id"] == 11
        assert payload["result"] == {"content": [{"type": "text", "text": "echo hi from 11"}]}

    @pytest.mark.asyncio
    async def test_call_async_tool(self):
        async def slow(arguments, context):
            await asyncio.sleep(0)
            return "done"

        router = make_router([make_tool("slow", handler=slow)])

        status, payload = await router.handle(rpc("tools/call", params={"name": "slow"}))

        assert status == 200
        assert payload["result"]["content"][0]["text"] == "done"

    @pytest.mark.asyncio
    async def test_invalid_arguments(self):
        router = make_router([make_tool("greet", schema={
            "type": "object",
            "properties": {"name": {"type": "string"}},
            "required": ["name"]
        })])

        status, payload = await router.handle(
            rpc("tools/call", params={"name": "greet", "arguments": {}})
        )

        assert status == 400
        assert payload["error"]["code"] == -32602
        assert payload["error"]["data"]

    @pytest.mark.asyncio
    async def test_failing_tool_is_isolated(self):
        def broken(arguments, context):
            raise RuntimeError("boom")

        router = make_router([make_tool("broken", handler=broken), make_tool("fine")])

        status, payload = await router.handle(rpc("tools/call", rpc_id=5, params={"name": "broken"}))

        assert status == 500
        assert payload["id"] == 5
        assert payload["error"]["code"] == -32603
        assert payload["error"]["message"].startswith("Internal error:")
        assert "boom" in payload["error"]["message"]

        status, payload = await router.handle(rpc("tools/call", rpc_id=6, params={"name": "fine"}))
        assert status == 200
        assert payload["id"] == 6

    @pytest.mark.asyncio
    async def test_calls_are_audited(self):
        from mcp_server.audit import AuditLogger

        router = make_router([make_tool("a")])
        audited = []

        class RecordingAudit(AuditLogger):
            async def log(self, entry):
                audited.append(entry)

        router.audit_logger = RecordingAudit(enabled=False)

        await router.handle(rpc("tools/call", params={"name": "a"}))
        await router.handle(rpc("tools/call", params={"name": "missing"}))

        assert [e.status for e in audited] == [ToolCallStatus.SUCCESS, ToolCallStatus.NOT_FOUND]
        assert audited[0].tool_id == "test.a"


class TestSecurityGate:
    """Tests for the security gate."""

    def _gate(self, policy, trust_forwarded_for=True):
        from mcp_server.auth import SecurityGate
        from mcp_server.nonces import NonceStore

        return SecurityGate(policy, NonceStore(), trust_forwarded_for=trust_forwarded_for)

    def _request(self, path="/", key=None, peer="127.0.0.1", body=b"", headers=None):
        from mcp_server.auth import GateRequest

        headers = dict(headers or {})
        if key is not None:
            headers["Authorization"] = f"Bearer {key}"
        return GateRequest(method="POST", path=path, headers=headers, peer=peer, body=body)

    def test_open_admits_everything(self):
        from mcp_server.auth import Admission

        gate = self._gate(None)

        assert gate.evaluate(self._request()) == Admission.OPEN
        assert gate.evaluate(self._request(key="anything", peer="8.8.8.8")) == Admission.OPEN
        assert gate.evaluate(self._request(path="/vscode-response", key="x")) == Admission.OPEN

    def test_lax_without_credentials(self):
        from mcp_server.auth import Admission

        gate = self._gate(SecurityPolicy(mode=SecurityMode.LAX, api_keys=["k1"]))

        assert gate.evaluate(self._request()) == Admission.LAX

    def test_lax_with_wrong_credentials(self):
        from shared.errors import AuthError

        gate = self._gate(SecurityPolicy(mode=SecurityMode.LAX, api_keys=["k1"]))

        with pytest.raises(AuthError) as exc_info:
            gate.evaluate(self._request(key="wrong"))
        assert exc_info.value.http_status == 403

    def test_strict_missing_key(self):
        from shared.errors import AuthError

        gate = self._gate(SecurityPolicy(mode=SecurityMode.STRICT, api_keys=["k1"]))

        with pytest.raises(AuthError) as exc_info:
            gate.evaluate(self._request())
        assert exc_info.value.http_status == 401

    def test_strict_valid_key(self):
        from mcp_server.auth import Admission

        gate = self._gate(SecurityPolicy(mode=SecurityMode.STRICT, api_keys=["k1", "k2"]))

        assert gate.evaluate(self._request(key="k2")) == Admission.CREDENTIALS

    def test_strict_disallowed_address(self):
        from shared.errors import AuthError

        gate = self._gate(SecurityPolicy(mode=SecurityMode.STRICT, api_keys=["k1"]))

        with pytest.raises(AuthError) as exc_info:
            gate.evaluate(self._request(key="k1", peer="10.1.2.3"))
        assert exc_info.value.http_status == 403
        assert "10.1.2.3" in exc_info.value.message

    def test_relaxed_skips_address_check(self):
        from mcp_server.auth import Admission
        from shared.errors import AuthError

        gate = self._gate(SecurityPolicy(mode=SecurityMode.RELAXED, api_keys=["k1"]))

        assert gate.evaluate(self._request(key="k1", peer="10.1.2.3")) == Admission.CREDENTIALS
        with pytest.raises(AuthError):
            gate.evaluate(self._request(peer="10.1.2.3"))

    def test_forwarded_for(self):
        from mcp_server.auth import Admission
        from shared.errors import AuthError

        policy = SecurityPolicy(mode=SecurityMode.STRICT, api_keys=["k1"], allowed_ips=["192.168.0.0/16"])
        forwarded = {"X-Forwarded-For": "192.168.4.2, 10.0.0.1"}

        assert self._gate(policy).evaluate(
            self._request(key="k1", peer="10.0.0.1", headers=forwarded)
        ) == Admission.CREDENTIALS

        with pytest.raises(AuthError):
            self._gate(policy, trust_forwarded_for=False).evaluate(
                self._request(key="k1", peer="10.0.0.1", headers=forwarded)
            )

    def test_relay_nonce_is_single_use(self):
        from mcp_server.auth import Admission
        from shared.errors import AuthError

        gate = self._gate(SecurityPolicy(mode=SecurityMode.STRICT, api_keys=["k1"]))
        nonce = gate.nonces.issue("req-1")
        body = json.dumps({"request_id": "req-1", "result": 1}).encode()

        request = self._request(path="/vscode-response", key=nonce, peer="10.9.9.9", body=body)
        assert gate.evaluate(request) == Admission.NONCE

        with pytest.raises(AuthError) as exc_info:
            gate.evaluate(request)
        assert exc_info.value.http_status == 401

    def test_relay_without_token(self):
        from mcp_server.auth import Admission
        from shared.errors import AuthError

        body = json.dumps({"request_id": "req-1"}).encode()

        lax = self._gate(SecurityPolicy(mode=SecurityMode.LAX))
        assert lax.evaluate(self._request(path="/vscode-response", body=body)) == Admission.LAX

        strict = self._gate(SecurityPolicy(mode=SecurityMode.STRICT, api_keys=["k1"]))
        with pytest.raises(AuthError) as exc_info:
            strict.evaluate(self._request(path="/vscode-response", body=body))
        assert exc_info.value.http_status == 401

    def test_non_ascii_key_rejected(self):
        from shared.errors import AuthError

        for mode in (SecurityMode.STRICT, SecurityMode.LAX):
            gate = self._gate(SecurityPolicy(mode=mode, api_keys=["k1"]))
            with pytest.raises(AuthError) as exc_info:
                gate.evaluate(self._request(key="caf\u00e9"))
            assert exc_info.value.http_status == 403

    def test_non_ascii_relay_token_rejected(self):
        from shared.errors import AuthError

        gate = self._gate(SecurityPolicy(mode=SecurityMode.STRICT, api_keys=["k1"]))
        gate.nonces.issue("req-1")
        body = json.dumps({"request_id": "req-1"}).encode()

        with pytest.raises(AuthError) as exc_info:
            gate.evaluate(self._request(path="/vscode-response", key="caf\u00e9", body=body))
        assert exc_info.value.http_status == 401
        assert "req-1" not in gate.nonces

    def test_forwarded_for_ignored_by_default(self):
        from mcp_server.auth import SecurityGate
        from mcp_server.nonces import NonceStore
        from shared.errors import AuthError

        policy = SecurityPolicy(mode=SecurityMode.STRICT, api_keys=["k1"])
        gate = SecurityGate(policy, NonceStore())

        with pytest.raises(AuthError) as exc_info:
            gate.evaluate(
                self._request(key="k1", peer="203.0.113.5", headers={"X-Forwarded-For": "127.0.0.1"})
            )
        assert exc_info.value.http_status == 403

    def test_ip_patterns(self):
        from mcp_server.auth import ip_matches

        assert ip_matches("127.0.0.1", "127.0.0.1")
        assert ip_matches("10.0.0.7", "10.0.0.0/24")
        assert not ip_matches("10.0.1.7", "10.0.0.0/24")
        assert ip_matches("10.0.0.7", "10.0.0.*")
        assert not ip_matches("not-an-ip", "10.0.0.0/24")

    def test_extract_bearer(self):
        from mcp_server.auth import extract_bearer

        assert extract_bearer(self._request(headers={"authorization": "Bearer abc"})) == "abc"
        assert extract_bearer(self._request(headers={"Authorization": "abc"})) == "abc"
        assert extract_bearer(self._request()) is None


class TestNonceStore:
    """Tests for single-use nonces."""

    def test_consume_once(self):
        from mcp_server.nonces import NonceStore

        store = NonceStore()
        nonce = store.issue("r1")

        assert len(nonce) == 32
        assert store.consume("r1", nonce)
        assert not store.consume("r1", nonce)

    def test_wrong_nonce_burns_entry(self):
        from mcp_server.nonces import NonceStore

        store = NonceStore()
        nonce = store.issue("r1")

        assert not store.consume("r1", "wrong")
        assert not store.consume("r1", nonce)

    def test_non_ascii_nonce(self):
        from mcp_server.nonces import NonceStore

        store = NonceStore()
        nonce = store.issue("r1")

        assert not store.consume("r1", "caf\u00e9")
        assert not store.consume("r1", nonce)

    def test_expired_nonce(self):
        from mcp_server.nonces import NonceStore

        store = NonceStore(ttl=0.01)
        nonce = store.issue("r1")
        time.sleep(0.05)

        assert not store.consume("r1", nonce)

    def test_cleanup_expired(self):
        from mcp_server.nonces import NonceStore

        store = NonceStore(ttl=0.01)
        store.issue("r1")
        store.issue("r2")
        time.sleep(0.05)

        assert store.cleanup_expired() == 2
        assert len(store) == 0

    def test_concurrent_consume(self):
        from mcp_server.nonces import NonceStore

        store = NonceStore()
        nonce = store.issue("r1")
        results = []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            results.append(store.consume("r1", nonce))

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1


class TestCorrelator:
    """Tests for request/response correlation."""

    @pytest.mark.asyncio
    async def test_delivery_before_deadline(self):
        from mcp_server.correlator import Correlator

        correlator = Correlator()
        request_id, pending = correlator.begin_wait(timeout=1.0)

        asyncio.get_running_loop().call_later(
            0.01, correlator.deliver, request_id, {"value": 42}
        )
        reply = await correlator.wait(pending)

        assert reply.ok
        assert reply.result == {"value": 42}
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_timeout(self):
        from mcp_server.correlator import Correlator
        from shared.errors import CorrelationTimeout

        correlator = Correlator()
        request_id, pending = correlator.begin_wait(timeout=0.1)

        start = time.monotonic()
        with pytest.raises(CorrelationTimeout) as exc_info:
            await correlator.wait(pending)
        elapsed = time.monotonic() - start

        assert elapsed >= 0.09
        assert exc_info.value.request_id == request_id
        assert request_id not in correlator

    @pytest.mark.asyncio
    async def test_late_delivery_is_ignored(self):
        from mcp_server.correlator import Correlator
        from shared.errors import CorrelationTimeout

        correlator = Correlator()
        request_id, pending = correlator.begin_wait(timeout=0.05)

        with pytest.raises(CorrelationTimeout):
            await correlator.wait(pending)

        assert correlator.deliver(request_id, "late") is False
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_waits_do_not_cross(self):
        from mcp_server.correlator import Correlator
        from shared.errors import CorrelationTimeout

        correlator = Correlator()
        id_a, wait_a = correlator.begin_wait(timeout=1.0)
        id_b, wait_b = correlator.begin_wait(timeout=0.1)

        assert id_a != id_b
        assert correlator.deliver(id_a, "for a")

        reply = await correlator.wait(wait_a)
        assert reply.result == "for a"
        assert not wait_b.resolved
        with pytest.raises(CorrelationTimeout):
            await correlator.wait(wait_b)

    @pytest.mark.asyncio
    async def test_only_first_delivery_counts(self):
        from mcp_server.correlator import Correlator

        correlator = Correlator()
        request_id, pending = correlator.begin_wait(timeout=1.0)

        assert correlator.deliver(request_id, "first")
        assert not correlator.deliver(request_id, "second")

        reply = await correlator.wait(pending)
        assert reply.result == "first"

    @pytest.mark.asyncio
    async def test_error_delivery(self):
        from mcp_server.correlator import Correlator

        correlator = Correlator()
        request_id, pending = correlator.begin_wait(timeout=1.0)
        correlator.deliver(request_id, error={"message": "nope"})

        reply = await correlator.wait(pending)
        assert not reply.ok
        assert "nope" in reply.error

    @pytest.mark.asyncio
    async def test_delivery_from_another_thread(self):
        from mcp_server.correlator import Correlator

        correlator = Correlator()
        request_id, pending = correlator.begin_wait(timeout=2.0)

        thread = threading.Thread(target=correlator.deliver, args=(request_id, "threaded"))
        thread.start()
        reply = await correlator.wait(pending)
        thread.join()

        assert reply.result == "threaded"

    def test_unknown_id(self):
        from mcp_server.correlator import Correlator

        assert Correlator().deliver("never-registered", "x") is False

    @pytest.mark.asyncio
    async def test_invalid_timeout(self):
        from mcp_server.correlator import Correlator

        with pytest.raises(ValueError):
            Correlator().begin_wait(timeout=0)

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        from mcp_server.correlator import Correlator

        correlator = Correlator()
        _, pending = correlator.begin_wait(timeout=5.0)
        correlator.begin_wait(timeout=5.0)

        assert correlator.cancel_all() == 2
        with pytest.raises(asyncio.CancelledError):
            await correlator.wait(pending)


class TestRelay:
    """Tests for the relay handler."""

    def test_missing_request_id(self):
        from mcp_server.correlator import Correlator
        from mcp_server.relay import handle_relay

        status, payload = handle_relay(json.dumps({"result": 1}).encode(), Correlator())

        assert status == 400
        assert payload == {"error": "Missing request_id"}

    def test_invalid_json(self):
        from mcp_server.correlator import Correlator
        from mcp_server.relay import handle_relay

        status, payload = handle_relay(b"not json", Correlator())

        assert status == 400

    def test_unknown_id_is_acknowledged(self):
        from mcp_server.correlator import Correlator
        from mcp_server.relay import handle_relay

        status, payload = handle_relay(json.dumps({"request_id": "gone"}).encode(), Correlator())

        assert status == 200
        assert payload == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_delivers_to_waiter(self):
        from mcp_server.correlator import Correlator
        from mcp_server.relay import handle_relay

        correlator = Correlator()
        request_id, pending = correlator.begin_wait(timeout=1.0)

        status, _ = handle_relay(
            json.dumps({"request_id": request_id, "result": [1, 2]}).encode(), correlator
        )
        reply = await correlator.wait(pending)

        assert status == 200
        assert reply.result == [1, 2]


class TestAuditLogger:
    """Tests for audit logging."""

    def test_sensitive_data_redaction(self):
        from mcp_server.audit import AuditLogger

        audit = AuditLogger(enabled=False)
        entry = audit.create_entry(
            tool_name="execute_editor_command",
            arguments={"command": "x", "nonce": "abc", "nested": {"api_key": "k"}},
            status=ToolCallStatus.SUCCESS,
            rpc_id=4,
        )

        assert entry.arguments["command"] == "x"
        assert entry.arguments["nonce"] == "[REDACTED]"
        assert entry.arguments["nested"]["api_key"] == "[REDACTED]"
        assert entry.rpc_id == 4

    @pytest.mark.asyncio
    async def test_entries_written_as_jsonl(self, tmp_path):
        from mcp_server.audit import AuditLogger

        path = tmp_path / "logs" / "audit.log"
        audit = AuditLogger(log_path=str(path), enabled=True, buffer_size=10)
        tool = make_tool("ping", tool_id="core.ping", toolset="core")

        await audit.log(audit.create_entry("ping", {}, ToolCallStatus.SUCCESS, tool=tool))
        assert audit.buffered == 1

        await audit.flush()
        lines = path.read_text().splitlines()

        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["tool_id"] == "core.ping"
        assert record["status"] == "success"

    def test_long_and_nested_arguments(self):
        from mcp_server.audit import MAX_ARGUMENT_CHARS, redact

        redacted = redact({"code": "x" * (MAX_ARGUMENT_CHARS + 10), "args": [{"token": "t"}]})

        assert redacted["code"].endswith("[10 chars]")
        assert redacted["args"] == [{"token": "[REDACTED]"}]
