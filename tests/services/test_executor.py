"""Tests for authenticated request execution and the single-retry protocol.

Covers:
- Bearer attachment and success passthrough
- Retry-once on 401/403 and on marked 400 responses
- Both 400 handling policies
- Concurrent requests rejected with the same stale token
- Unrecoverable failures carrying status and body
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from oidc_client.models.errors import (
    ConfigError,
    ExecutionError,
    ExecutionErrorKind,
    ProtocolError,
    ProtocolErrorKind,
)
from oidc_client.models.options import ClientOptions
from oidc_client.models.requests import RequestSpec
from oidc_client.models.tokens import AccountIdentity, TokenSet, TokenType
from oidc_client.services.executor import (
    AnyBadRequestPolicy,
    AuthenticatedRequestExecutor,
    InvalidTokenMarkerPolicy,
)
from oidc_client.services.lifecycle import TokenLifecycleManager
from oidc_client.services.protocol import OIDCProtocolClient
from oidc_client.store.memory import InMemoryTokenStore

RESOURCE_URL = "https://api.example.com/rs/"
USERINFO_URL = "https://auth.example.com/oauth2/userinfo"


class RecordingServer:
    """Resource server stub answering from a list of canned responses."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    @property
    def tokens_seen(self) -> list[str]:
        return [r.headers["Authorization"] for r in self.requests]


class BaseExecutorTest:
    def setup_method(self):
        # Arrange
        self.store = InMemoryTokenStore()
        self.protocol = AsyncMock(spec=OIDCProtocolClient)
        self.lifecycle = TokenLifecycleManager(
            self.store, self.protocol, "https://auth.example.com/token"
        )
        self.account = AccountIdentity(name="alice", type="com.example.oidc")
        self.options = ClientOptions(
            client_id="client", client_secret="secret", redirect_url="https://cb"
        )
        self.request = RequestSpec("GET", RESOURCE_URL)

    def make_executor(self, server: RecordingServer, policy=None):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(server))
        return AuthenticatedRequestExecutor(
            self.lifecycle,
            policy=policy,
            http_client=http_client,
            userinfo_endpoint=USERINFO_URL,
        )


class TestExecute(BaseExecutorTest):
    """Test the retry contract of execute()."""

    async def test_success_attaches_bearer_token(self):
        # Arrange
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )
        server = RecordingServer(httpx.Response(200, json={"ok": True}))
        executor = self.make_executor(server)

        # Act
        response = await executor.execute(self.request, self.account, self.options)

        # Assert
        assert response.status_code == 200
        assert server.tokens_seen == ["Bearer A1"]
        self.protocol.refresh_tokens.assert_not_awaited()

    async def test_caller_authorization_header_is_replaced(self):
        # Arrange
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )
        server = RecordingServer(httpx.Response(204))
        executor = self.make_executor(server)
        request = RequestSpec(
            "POST",
            RESOURCE_URL,
            headers={"authorization": "Basic xyz", "X-Trace": "1"},
            json={"a": 1},
        )

        # Act
        await executor.execute(request, self.account, self.options)

        # Assert
        sent = server.requests[0]
        assert sent.method == "POST"
        assert sent.headers["Authorization"] == "Bearer A1"
        assert sent.headers["X-Trace"] == "1"
        assert sent.content == b'{"a":1}' or sent.content == b'{"a": 1}'

    async def test_stale_token_is_refreshed_and_retried(self):
        # Arrange
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )
        self.protocol.refresh_tokens.return_value = TokenSet(access_token="A2")
        server = RecordingServer(
            httpx.Response(401, text="token expired"),
            httpx.Response(200, json={"sub": "alice"}),
        )
        executor = self.make_executor(server)

        # Act
        response = await executor.execute(self.request, self.account, self.options)

        # Assert
        assert response.status_code == 200
        assert server.tokens_seen == ["Bearer A1", "Bearer A2"]
        self.protocol.refresh_tokens.assert_awaited_once()
        assert self.store.get(self.account, TokenType.ACCESS) == "A2"
        assert self.store.get(self.account, TokenType.REFRESH) == "R1"

    async def test_persistent_401_retries_exactly_once(self):
        # Arrange
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )
        self.protocol.refresh_tokens.return_value = TokenSet(access_token="A2")
        server = RecordingServer(httpx.Response(401, text="revoked client"))
        executor = self.make_executor(server)

        invalidations = []
        original_invalidate = self.lifecycle.invalidate

        def track_invalidate(account, token_type, token=None):
            invalidations.append((account, token_type))
            original_invalidate(account, token_type, token)

        self.lifecycle.invalidate = track_invalidate

        # Act & Assert
        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(self.request, self.account, self.options)

        assert exc_info.value.kind is ExecutionErrorKind.UNRECOVERABLE
        assert exc_info.value.status == 401
        assert exc_info.value.message == "Unauthorized"
        assert exc_info.value.body == "revoked client"
        assert str(exc_info.value) == "401 Unauthorized revoked client"
        assert len(server.requests) == 2
        assert invalidations == [(self.account, TokenType.ACCESS)]

    async def test_403_is_retried(self):
        # Arrange
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )
        self.protocol.refresh_tokens.return_value = TokenSet(access_token="A2")
        server = RecordingServer(httpx.Response(403), httpx.Response(200))
        executor = self.make_executor(server)

        # Act
        response = await executor.execute(self.request, self.account, self.options)

        # Assert
        assert response.status_code == 200
        assert len(server.requests) == 2

    async def test_server_error_is_not_retried(self):
        # Arrange
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )
        server = RecordingServer(httpx.Response(500, text="boom"))
        executor = self.make_executor(server)

        # Act & Assert
        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(self.request, self.account, self.options)

        assert exc_info.value.status == 500
        assert exc_info.value.body == "boom"
        assert len(server.requests) == 1
        assert self.store.get(self.account, TokenType.ACCESS) == "A1"

    async def test_empty_error_body_is_reported(self):
        # Arrange
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )
        server = RecordingServer(httpx.Response(404))
        executor = self.make_executor(server)

        # Act & Assert
        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(self.request, self.account, self.options)
        assert exc_info.value.body == "empty body"

    async def test_no_tokens_fails_with_reauth_required_before_sending(self):
        # Arrange
        server = RecordingServer(httpx.Response(200))
        executor = self.make_executor(server)

        # Act & Assert
        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(self.request, self.account, self.options)

        assert exc_info.value.kind is ExecutionErrorKind.REAUTH_REQUIRED
        assert exc_info.value.requires_reauthorization
        assert server.requests == []

    async def test_rejected_refresh_during_retry_requires_reauth(self):
        # Arrange
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )
        self.protocol.refresh_tokens.side_effect = ProtocolError(
            ProtocolErrorKind.INVALID_GRANT, "expired", status=400
        )
        server = RecordingServer(httpx.Response(401))
        executor = self.make_executor(server)

        # Act & Assert
        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(self.request, self.account, self.options)

        assert exc_info.value.kind is ExecutionErrorKind.REAUTH_REQUIRED
        assert len(server.requests) == 1

    async def test_network_failure_during_refresh_propagates(self):
        # Arrange
        self.store.set(self.account, TokenType.REFRESH, "R1")
        self.protocol.refresh_tokens.side_effect = ProtocolError(
            ProtocolErrorKind.NETWORK, "unreachable"
        )
        server = RecordingServer(httpx.Response(200))
        executor = self.make_executor(server)

        # Act & Assert
        with pytest.raises(ProtocolError) as exc_info:
            await executor.execute(self.request, self.account, self.options)
        assert exc_info.value.is_network

    async def test_transport_failure_is_network_error(self):
        # Arrange
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )

        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(unreachable))
        executor = AuthenticatedRequestExecutor(self.lifecycle, http_client=http_client)

        # Act & Assert
        with pytest.raises(ProtocolError) as exc_info:
            await executor.execute(self.request, self.account, self.options)
        assert exc_info.value.kind is ProtocolErrorKind.NETWORK


class StaleTokenServer:
    """Accepts only A2 and rejects A1 in a fixed interleaving.

    The first A1 request is held until a second one arrives, so both callers
    send the stale token. The second is only rejected once the first retry
    succeeded, so its 401 arrives when the fresh token is already stored.
    """

    def __init__(self):
        self.tokens_seen: list[str] = []
        self.both_sent = asyncio.Event()
        self.fresh_token_served = asyncio.Event()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        token = request.headers["Authorization"].removeprefix("Bearer ")
        self.tokens_seen.append(token)

        if token == "A2":
            self.fresh_token_served.set()
            return httpx.Response(200, json={"ok": True})

        if self.tokens_seen.count("A1") == 1:
            await self.both_sent.wait()
        else:
            self.both_sent.set()
            await self.fresh_token_served.wait()
        return httpx.Response(401, text="token expired")


class TestConcurrentExecute(BaseExecutorTest):
    """Requests for one account racing on the same stale token."""

    async def test_late_rejection_keeps_fresh_token(self):
        # Arrange
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )
        self.protocol.refresh_tokens.side_effect = [
            TokenSet(access_token="A2"),
            TokenSet(access_token="A3"),
        ]
        server = StaleTokenServer()
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(server))
        executor = AuthenticatedRequestExecutor(self.lifecycle, http_client=http_client)

        # Act
        responses = await asyncio.gather(
            executor.execute(self.request, self.account, self.options),
            executor.execute(self.request, self.account, self.options),
        )

        # Assert
        assert [r.status_code for r in responses] == [200, 200]
        assert sorted(server.tokens_seen) == ["A1", "A1", "A2", "A2"]
        self.protocol.refresh_tokens.assert_awaited_once()
        assert self.store.get(self.account, TokenType.ACCESS) == "A2"

    async def test_stale_rejection_does_not_clear_replacement(self):
        # Arrange
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A2", TokenType.REFRESH: "R1"}
        )

        # Act
        self.lifecycle.invalidate(self.account, TokenType.ACCESS, "A1")

        # Assert
        assert self.store.get(self.account, TokenType.ACCESS) == "A2"

class TestBadRequestPolicies(BaseExecutorTest):
    """Both historical 400 handling variants, each tested explicitly."""

    def setup_method(self):
        super().setup_method()
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )
        self.protocol.refresh_tokens.return_value = TokenSet(access_token="A2")

    @pytest.mark.parametrize(
        "body",
        ['{"error": "invalid_grant"}', "Access Token not valid"],
    )
    async def test_marker_policy_retries_marked_400(self, body):
        # Arrange
        server = RecordingServer(httpx.Response(400, text=body), httpx.Response(200))
        executor = self.make_executor(server, InvalidTokenMarkerPolicy())

        # Act
        response = await executor.execute(self.request, self.account, self.options)

        # Assert
        assert response.status_code == 200
        assert server.tokens_seen == ["Bearer A1", "Bearer A2"]

    async def test_marker_policy_does_not_retry_plain_400(self):
        # Arrange
        server = RecordingServer(
            httpx.Response(400, text="missing parameter"), httpx.Response(200)
        )
        executor = self.make_executor(server, InvalidTokenMarkerPolicy())

        # Act & Assert
        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(self.request, self.account, self.options)

        assert exc_info.value.status == 400
        assert len(server.requests) == 1
        self.protocol.refresh_tokens.assert_not_awaited()

    async def test_marker_policy_accepts_custom_markers(self):
        # Arrange
        server = RecordingServer(
            httpx.Response(400, text="token_revoked"), httpx.Response(200)
        )
        executor = self.make_executor(
            server, InvalidTokenMarkerPolicy(markers=("token_revoked",))
        )

        # Act
        response = await executor.execute(self.request, self.account, self.options)

        # Assert
        assert response.status_code == 200

    async def test_any_bad_request_policy_retries_plain_400(self):
        # Arrange
        server = RecordingServer(
            httpx.Response(400, text="missing parameter"), httpx.Response(200)
        )
        executor = self.make_executor(server, AnyBadRequestPolicy())

        # Act
        response = await executor.execute(self.request, self.account, self.options)

        # Assert
        assert response.status_code == 200
        assert len(server.requests) == 2

    def test_policies_agree_outside_400(self):
        marker, any_400 = InvalidTokenMarkerPolicy(), AnyBadRequestPolicy()
        for status, expected in [(401, True), (403, True), (404, False), (500, False)]:
            response = httpx.Response(status)
            assert marker.is_auth_failure(response) is expected
            assert any_400.is_auth_failure(response) is expected


class TestJsonHelpers(BaseExecutorTest):
    """Test get_json and fetch_user_info."""

    def setup_method(self):
        super().setup_method()
        self.store.set_many(
            self.account, {TokenType.ACCESS: "A1", TokenType.REFRESH: "R1"}
        )

    async def test_fetch_user_info_returns_claims(self):
        # Arrange
        server = RecordingServer(
            httpx.Response(200, json={"sub": "alice", "name": "Alice"})
        )
        executor = self.make_executor(server)

        # Act
        claims = await executor.fetch_user_info(self.account, self.options)

        # Assert
        assert claims == {"sub": "alice", "name": "Alice"}
        assert str(server.requests[0].url) == USERINFO_URL
        assert server.requests[0].headers["Accept"] == "application/json"

    async def test_get_json_rejects_non_object(self):
        # Arrange
        server = RecordingServer(httpx.Response(200, json=["a", "b"]))
        executor = self.make_executor(server)

        # Act & Assert
        with pytest.raises(ProtocolError) as exc_info:
            await executor.get_json(RESOURCE_URL, self.account, self.options)
        assert exc_info.value.kind is ProtocolErrorKind.MALFORMED

    async def test_get_json_rejects_invalid_json(self):
        # Arrange
        server = RecordingServer(httpx.Response(200, text="not json"))
        executor = self.make_executor(server)

        # Act & Assert
        with pytest.raises(ProtocolError) as exc_info:
            await executor.get_json(RESOURCE_URL, self.account, self.options)
        assert exc_info.value.kind is ProtocolErrorKind.MALFORMED

    async def test_fetch_user_info_without_endpoint_is_config_error(self):
        # Arrange
        executor = AuthenticatedRequestExecutor(self.lifecycle)

        # Act & Assert
        with pytest.raises(ConfigError):
            await executor.fetch_user_info(self.account, self.options)
