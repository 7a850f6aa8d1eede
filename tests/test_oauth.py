"""OAuth bridge tests against a mocked provider (httpx.MockTransport)."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from thanawy.service.auth import AuthService
from thanawy.service.errors import NotFoundError
from thanawy.service.oauth import (
    GoogleProvider,
    OAuthBridge,
    OAuthError,
    safe_redirect_path,
    states_match,
)
from thanawy.service.security_log import SecurityEventType
from thanawy.service.two_factor import generate_totp_secret
from thanawy.storage.models import OAUTH_PASSWORD_ALGO


class FakeProvider:
    """Records requests and answers like Google/Facebook/GitHub would."""

    def __init__(self, profile=None, emails=None, token_status=200):
        self.requests = []
        self.profile = profile or {
            "id": "g-123",
            "email": "oauth@example.com",
            "name": "OAuth User",
            "verified_email": True,
        }
        self.emails = emails or []
        self.token_status = token_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/token") or path.endswith("/access_token"):
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "provider-token"})
        if path.endswith("/user/emails"):
            return httpx.Response(200, json=self.emails)
        return httpx.Response(200, json=self.profile)


@pytest.fixture
def oauth_settings(settings):
    return settings.model_copy(
        update={
            "oauth_google_client_id": "google-id",
            "oauth_google_client_secret": "google-secret",
            "oauth_facebook_client_id": "fb-id",
            "oauth_facebook_client_secret": "fb-secret",
            "oauth_github_client_id": "gh-id",
            "oauth_github_client_secret": "gh-secret",
            "app_base_url": "https://app.example.com",
        }
    )


def _bridge(store, settings, provider: FakeProvider) -> OAuthBridge:
    return OAuthBridge(
        AuthService(store, None, settings), transport=httpx.MockTransport(provider)
    )


class TestHelpers:
    @pytest.mark.parametrize(
        "path, expected",
        [
            ("/dashboard", "/dashboard"),
            ("/a?b=c", "/a?b=c"),
            ("//evil.example.com", None),
            ("https://evil.example.com", None),
            ("/\\evil.example.com", None),
            ("", None),
            (None, None),
        ],
    )
    def test_safe_redirect_path(self, path, expected):
        assert safe_redirect_path(path) == expected

    def test_states_match(self):
        assert states_match("abc", "abc")
        assert not states_match("abc", "abd")
        assert not states_match(None, "abc")
        assert not states_match("abc", None)

    def test_unknown_error_code_becomes_server_error(self):
        assert OAuthError("Robert'); DROP TABLE").code == "server_error"
        assert OAuthError("access_denied").message.startswith("Sign-in was cancelled")

    @pytest.mark.parametrize(
        "data, verified",
        [
            ({"sub": "1", "email": "a@example.com", "email_verified": True}, True),
            ({"id": "1", "email": "a@example.com", "verified_email": False}, False),
            ({"id": "1", "email": "a@example.com"}, None),
        ],
    )
    def test_profile_email_verification(self, data, verified):
        profile = GoogleProvider("id", "secret").parse_profile(data)

        assert profile.provider_uid == "1"
        assert profile.email_verified is verified


class TestInitiate:
    def test_google_authorization_url(self, memory_store, oauth_settings):
        bridge = _bridge(memory_store, oauth_settings, FakeProvider())

        start = bridge.initiate("google", "/courses")

        url = urlparse(start.authorization_url)
        params = parse_qs(url.query)
        assert url.netloc == "accounts.google.com"
        assert params["state"] == [start.state]
        assert params["client_id"] == ["google-id"]
        assert params["redirect_uri"] == ["https://app.example.com/auth/google/callback"]
        assert params["access_type"] == ["offline"]
        assert start.redirect_path == "/courses"
        assert len(start.state) >= 32

    def test_states_are_unique(self, memory_store, oauth_settings):
        bridge = _bridge(memory_store, oauth_settings, FakeProvider())
        assert bridge.initiate("github").state != bridge.initiate("github").state

    def test_unsafe_redirect_dropped(self, memory_store, oauth_settings):
        bridge = _bridge(memory_store, oauth_settings, FakeProvider())
        assert bridge.initiate("google", "https://evil.example.com").redirect_path is None

    def test_unconfigured_provider(self, memory_store, settings):
        bridge = _bridge(memory_store, settings, FakeProvider())

        with pytest.raises(OAuthError) as excinfo:
            bridge.initiate("google")
        assert excinfo.value.code == "oauth_not_configured"

    def test_unknown_provider(self, memory_store, oauth_settings):
        bridge = _bridge(memory_store, oauth_settings, FakeProvider())

        with pytest.raises(NotFoundError):
            bridge.initiate("myspace")


class TestCallback:
    async def test_state_mismatch_makes_no_request(self, memory_store, oauth_settings):
        provider = FakeProvider()
        bridge = _bridge(memory_store, oauth_settings, provider)

        with pytest.raises(OAuthError) as excinfo:
            await bridge.callback("google", code="abc", state="forged", stored_state="real")

        assert excinfo.value.code == "invalid_state"
        assert provider.requests == []
        assert memory_store.get_user_by_email("oauth@example.com") is None

    async def test_provider_error_forwarded(self, memory_store, oauth_settings):
        bridge = _bridge(memory_store, oauth_settings, FakeProvider())

        with pytest.raises(OAuthError) as excinfo:
            await bridge.callback(
                "google", code=None, state="s", stored_state="s", error="access_denied"
            )
        assert excinfo.value.code == "access_denied"

    async def test_missing_code(self, memory_store, oauth_settings):
        bridge = _bridge(memory_store, oauth_settings, FakeProvider())

        with pytest.raises(OAuthError) as excinfo:
            await bridge.callback("google", code=None, state="s", stored_state="s")
        assert excinfo.value.code == "no_code"

    async def test_new_google_user(self, memory_store, oauth_settings):
        provider = FakeProvider()
        bridge = _bridge(memory_store, oauth_settings, provider)

        result = await bridge.callback(
            "google", code="abc", state="s", stored_state="s", user_agent="pytest", ip="198.51.100.4"
        )

        assert result.created
        assert result.user.email == "oauth@example.com"
        assert result.user.email_verified
        assert result.session.meta["login_method"] == "oauth"
        assert memory_store.get_user_by_provider("google", "g-123").id == result.user.id
        assert memory_store.get_password_record(result.user.id)[1] == OAUTH_PASSWORD_ALGO
        token_request = provider.requests[0]
        assert token_request.method == "POST"
        assert b"code=abc" in token_request.content
        assert provider.requests[1].headers["Authorization"] == "Bearer provider-token"
        logs, _ = memory_store.list_security_logs(
            result.user.id, event_type=SecurityEventType.LOGIN_SUCCESS.value
        )
        assert logs[0].metadata["method"] == "oauth"

    async def test_existing_email_is_linked_not_duplicated(self, memory_store, oauth_settings):
        existing = memory_store.create_user("oauth@example.com")
        bridge = _bridge(memory_store, oauth_settings, FakeProvider())

        result = await bridge.callback("google", code="abc", state="s", stored_state="s")

        assert not result.created
        assert result.user.id == existing.id
        assert memory_store.get_user_by_provider("google", "g-123").id == existing.id

    async def test_returning_user_matched_by_provider_id(self, memory_store, oauth_settings):
        bridge = _bridge(memory_store, oauth_settings, FakeProvider())
        first = await bridge.callback("google", code="abc", state="s", stored_state="s")

        renamed = FakeProvider(profile={"id": "g-123", "email": "renamed@example.com"})
        second = await _bridge(memory_store, oauth_settings, renamed).callback(
            "google", code="def", state="t", stored_state="t"
        )

        assert second.user.id == first.user.id
        assert second.session.id != first.session.id

    async def test_facebook_uses_graph_api(self, memory_store, oauth_settings):
        provider = FakeProvider(profile={"id": "fb-9", "email": "fb@example.com", "name": "FB"})
        bridge = _bridge(memory_store, oauth_settings, provider)

        result = await bridge.callback("facebook", code="abc", state="s", stored_state="s")

        assert result.user.email == "fb@example.com"
        token_request, profile_request = provider.requests
        assert token_request.method == "GET"
        assert token_request.url.host == "graph.facebook.com"
        assert profile_request.url.params["fields"] == "id,name,email"

    async def test_github_private_email_fallback(self, memory_store, oauth_settings):
        provider = FakeProvider(
            profile={"id": 42, "login": "octo", "email": None},
            emails=[
                {"email": "secondary@example.com", "primary": False, "verified": True},
                {"email": "octo@example.com", "primary": True, "verified": True},
            ],
        )
        bridge = _bridge(memory_store, oauth_settings, provider)

        result = await bridge.callback("github", code="abc", state="s", stored_state="s")

        assert result.user.email == "octo@example.com"
        assert result.user.name == "octo"
        assert result.user.email_verified
        assert memory_store.get_user_by_provider("github", "42") is not None

    async def test_missing_email_rejected(self, memory_store, oauth_settings):
        provider = FakeProvider(profile={"id": "g-1", "email": None})
        bridge = _bridge(memory_store, oauth_settings, provider)

        with pytest.raises(OAuthError) as excinfo:
            await bridge.callback("google", code="abc", state="s", stored_state="s")
        assert excinfo.value.code == "user_info_error"

    async def test_token_exchange_failure(self, memory_store, oauth_settings):
        bridge = _bridge(memory_store, oauth_settings, FakeProvider(token_status=400))

        with pytest.raises(OAuthError) as excinfo:
            await bridge.callback("google", code="abc", state="s", stored_state="s")
        assert excinfo.value.code == "token_error"

    async def test_oauth_user_cannot_password_login(self, memory_store, oauth_settings):
        bridge = _bridge(memory_store, oauth_settings, FakeProvider())
        result = await bridge.callback("google", code="abc", state="s", stored_state="s")

        auth = AuthService(memory_store, None, oauth_settings)
        assert auth.verify_password(result.user.id, "anything") is False
        stored_hash = memory_store.get_password_record(result.user.id)[0]
        assert auth.verify_password(result.user.id, stored_hash) is False

    async def test_two_factor_account_gets_challenge_not_tokens(self, memory_store, oauth_settings):
        bridge = _bridge(memory_store, oauth_settings, FakeProvider())
        first = await bridge.callback("google", code="abc", state="s", stored_state="s")
        memory_store.set_user_mfa_secret(first.user.id, generate_totp_secret(), enabled=True)

        second = await bridge.callback(
            "google", code="def", state="t", stored_state="t", ip="198.51.100.4"
        )

        assert second.requires_two_factor
        assert second.session is None and second.tokens is None
        assert second.challenge.user_id == first.user.id
        assert memory_store.get_login_challenge(second.challenge.id) is not None
        assert [s.id for s in memory_store.list_sessions(first.user.id)] == [first.session.id]
        requested, _ = memory_store.list_security_logs(
            first.user.id, event_type=SecurityEventType.TWO_FACTOR_REQUESTED.value
        )
        assert requested[0].metadata["method"] == "oauth"
        assert requested[0].metadata["provider"] == "google"
        assert requested[0].metadata["login_attempt_id"] == second.challenge.id

    async def test_unverified_email_not_linked_to_existing_account(
        self, memory_store, oauth_settings
    ):
        memory_store.create_user("oauth@example.com")
        provider = FakeProvider(
            profile={"id": "g-666", "email": "oauth@example.com", "verified_email": False}
        )
        bridge = _bridge(memory_store, oauth_settings, provider)

        with pytest.raises(OAuthError) as excinfo:
            await bridge.callback("google", code="abc", state="s", stored_state="s")

        assert excinfo.value.code == "email_not_verified"
        assert memory_store.get_user_by_provider("google", "g-666") is None

    async def test_unverified_email_new_account_stays_unverified(
        self, memory_store, oauth_settings
    ):
        provider = FakeProvider(
            profile={"id": "g-7", "email": "fresh@example.com", "verified_email": False}
        )
        bridge = _bridge(memory_store, oauth_settings, provider)

        result = await bridge.callback("google", code="abc", state="s", stored_state="s")

        assert result.created
        assert result.user.email_verified is False
