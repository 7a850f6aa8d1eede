from __future__ import annotations

import base64
import hmac
import os
import re
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import urlencode

import httpx

from thanawy.logging import get_logger
from thanawy.service.errors import NotFoundError
from thanawy.service.tokens import TokenPair
from thanawy.storage.models import OAUTH_PASSWORD_ALGO, LoginChallenge, Session, User

if TYPE_CHECKING:
    from thanawy.service.auth import AuthService

logger = get_logger(__name__)

ERROR_MESSAGES = {
    "access_denied": "Sign-in was cancelled. Please try again.",
    "invalid_request": "The sign-in request was invalid. Please try again.",
    "unauthorized_client": "This application is not authorised with the provider.",
    "temporarily_unavailable": "The provider is temporarily unavailable. Please try again later.",
    "invalid_state": "Security check failed. Please try again.",
    "no_code": "No authorisation code was received from the provider.",
    "oauth_not_configured": "This sign-in provider is not configured.",
    "token_error": "Could not obtain an access token from the provider.",
    "user_info_error": "Could not read your profile (an e-mail address is required).",
    "email_not_verified": "Your e-mail address is not verified with this provider.",
    "server_error": "Something went wrong while signing you in. Please try again.",
}

_ERROR_CODE_RE = re.compile(r"^[a-z_]{1,64}$")


class OAuthError(Exception):
    """A callback step failed; ``code`` ends up in the login redirect."""

    def __init__(self, code: str, message: Optional[str] = None) -> None:
        if not _ERROR_CODE_RE.match(code or ""):
            code = "server_error"
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, ERROR_MESSAGES["server_error"])
        super().__init__(f"{code}: {self.message}")


@dataclass
class OAuthProfile:
    provider_uid: str
    email: Optional[str]
    name: Optional[str] = None
    # None when the provider does not report verification
    email_verified: Optional[bool] = None


@dataclass
class OAuthStart:
    authorization_url: str
    state: str
    redirect_path: Optional[str]


@dataclass
class OAuthResult:
    user: User
    created: bool
    session: Optional[Session] = None
    tokens: Optional[TokenPair] = None
    challenge: Optional[LoginChallenge] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.challenge is not None


def safe_redirect_path(path: Optional[str]) -> Optional[str]:
    """Accept only same-origin absolute paths."""
    if not path or not isinstance(path, str):
        return None
    if not path.startswith("/") or path.startswith("//") or "\\" in path:
        return None
    return path


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def states_match(returned: Optional[str], stored: Optional[str]) -> bool:
    if not returned or not stored:
        return False
    return hmac.compare_digest(returned.encode(), stored.encode())


class OAuthProvider:
    """One provider's authorize/token/profile endpoints."""

    name = ""
    auth_url = ""
    token_url = ""
    userinfo_url = ""
    scopes: tuple[str, ...] = ()
    extra_auth_params: dict[str, str] = {}

    def __init__(self, client_id: str, client_secret: str) -> None:
        self.client_id = client_id
        self.client_secret = client_secret

    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            **self.extra_auth_params,
        }
        return f"{self.auth_url}?{urlencode(params)}"

    def _token_params(self, code: str, redirect_uri: str) -> dict[str, str]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }

    async def _request_token(
        self, client: httpx.AsyncClient, code: str, redirect_uri: str
    ) -> httpx.Response:
        return await client.post(
            self.token_url,
            data=self._token_params(code, redirect_uri),
            headers={"Accept": "application/json"},
        )

    async def exchange_code(
        self, client: httpx.AsyncClient, code: str, redirect_uri: str
    ) -> str:
        try:
            response = await self._request_token(client, code, redirect_uri)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_token_exchange_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise OAuthError("token_error") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_token_exchange_failed", provider=self.name, error=str(exc))
            raise OAuthError("token_error") from exc
        if not isinstance(payload, dict) or payload.get("error"):
            logger.error(
                "oauth_token_error_response",
                provider=self.name,
                error=payload.get("error") if isinstance(payload, dict) else None,
            )
            raise OAuthError("token_error")
        access_token = payload.get("access_token")
        if not access_token:
            raise OAuthError("token_error")
        return str(access_token)

    async def _get_json(
        self, client: httpx.AsyncClient, url: str, **kwargs: Any
    ) -> Any:
        try:
            response = await client.get(url, **kwargs)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_userinfo_failed", provider=self.name, error=str(exc))
            raise OAuthError("user_info_error") from exc

    async def fetch_profile(
        self, client: httpx.AsyncClient, access_token: str
    ) -> OAuthProfile:
        data = await self._get_json(
            client,
            self.userinfo_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not isinstance(data, dict):
            raise OAuthError("user_info_error")
        return self.parse_profile(data)

    def parse_profile(self, data: dict) -> OAuthProfile:
        uid = data.get("id") or data.get("sub")
        if not uid:
            raise OAuthError("user_info_error")
        # OIDC userinfo says email_verified, Google's v2 userinfo says verified_email
        verified = data.get("email_verified", data.get("verified_email"))
        return OAuthProfile(
            provider_uid=str(uid),
            email=data.get("email"),
            name=data.get("name"),
            email_verified=None if verified is None else bool(verified),
        )


class GoogleProvider(OAuthProvider):
    name = "google"
    auth_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"
    scopes = ("openid", "email", "profile")
    extra_auth_params = {"access_type": "offline", "prompt": "consent"}


class FacebookProvider(OAuthProvider):
    name = "facebook"
    auth_url = "https://www.facebook.com/v18.0/dialog/oauth"
    token_url = "https://graph.facebook.com/v18.0/oauth/access_token"
    userinfo_url = "https://graph.facebook.com/v18.0/me"
    scopes = ("email", "public_profile")

    async def _request_token(
        self, client: httpx.AsyncClient, code: str, redirect_uri: str
    ) -> httpx.Response:
        params = self._token_params(code, redirect_uri)
        params.pop("grant_type")
        return await client.get(self.token_url, params=params)

    async def fetch_profile(
        self, client: httpx.AsyncClient, access_token: str
    ) -> OAuthProfile:
        data = await self._get_json(
            client,
            self.userinfo_url,
            params={"fields": "id,name,email", "access_token": access_token},
        )
        if not isinstance(data, dict):
            raise OAuthError("user_info_error")
        return self.parse_profile(data)


class GitHubProvider(OAuthProvider):
    name = "github"
    auth_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    userinfo_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"
    scopes = ("read:user", "user:email")

    async def fetch_profile(
        self, client: httpx.AsyncClient, access_token: str
    ) -> OAuthProfile:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }
        data = await self._get_json(client, self.userinfo_url, headers=headers)
        if not isinstance(data, dict):
            raise OAuthError("user_info_error")
        profile = self.parse_profile(data)
        profile.name = data.get("name") or data.get("login")
        if not profile.email:
            # Private addresses only show up on the emails endpoint
            emails = await self._get_json(client, self.emails_url, headers=headers)
            if isinstance(emails, list):
                profile.email = next(
                    (
                        e.get("email")
                        for e in emails
                        if isinstance(e, dict) and e.get("primary") and e.get("verified")
                    ),
                    None,
                )
                if profile.email:
                    profile.email_verified = True
        return profile


PROVIDERS: dict[str, type[OAuthProvider]] = {
    GoogleProvider.name: GoogleProvider,
    FacebookProvider.name: FacebookProvider,
    GitHubProvider.name: GitHubProvider,
}


class OAuthBridge:
    """Third-party sign-in that ends in the same session/token pair as password login.

    The provider round-trip counts as the first factor only; accounts with
    two-factor enabled are handed a login challenge through ``AuthService``.
    """

    def __init__(
        self,
        auth: "AuthService",
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.auth = auth
        self.store = auth.store
        self.settings = auth.settings
        self.transport = transport

    def _provider_class(self, provider: str) -> type[OAuthProvider]:
        try:
            return PROVIDERS[provider]
        except KeyError:
            raise NotFoundError("unknown sign-in provider", detail={"provider": provider})

    def _configured(self, provider: str) -> Optional[OAuthProvider]:
        provider_cls = self._provider_class(provider)
        client_id, client_secret = self.settings.oauth_credentials(provider)
        if not client_id or not client_secret:
            return None
        return provider_cls(client_id, client_secret)

    def redirect_uri(self, provider: str) -> str:
        base = (self.settings.oauth_redirect_base_url or self.settings.app_base_url).rstrip("/")
        return f"{base}/auth/{provider}/callback"

    def initiate(self, provider: str, redirect_path: Optional[str] = None) -> OAuthStart:
        impl = self._configured(provider)
        if impl is None:
            logger.warning("oauth_not_configured", provider=provider)
            raise OAuthError("oauth_not_configured")
        state = generate_state()
        return OAuthStart(
            authorization_url=impl.get_auth_url(state, self.redirect_uri(provider)),
            state=state,
            redirect_path=safe_redirect_path(redirect_path),
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.oauth_http_timeout_seconds,
            follow_redirects=False,
            transport=self.transport,
        )

    async def callback(
        self,
        provider: str,
        *,
        code: Optional[str],
        state: Optional[str],
        stored_state: Optional[str],
        error: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> OAuthResult:
        """Finish a provider round-trip or raise ``OAuthError`` with a redirect code.

        The state comparison happens before any request leaves the process.
        """
        self._provider_class(provider)
        if error:
            logger.warning("oauth_provider_error", provider=provider, error=error)
            raise OAuthError(error if _ERROR_CODE_RE.match(error) else "server_error")
        if not states_match(state, stored_state):
            logger.warning("oauth_invalid_state", provider=provider)
            raise OAuthError("invalid_state")
        if not code:
            raise OAuthError("no_code")
        impl = self._configured(provider)
        if impl is None:
            raise OAuthError("oauth_not_configured")

        try:
            async with self._client() as client:
                access_token = await impl.exchange_code(
                    client, code, self.redirect_uri(provider)
                )
                profile = await impl.fetch_profile(client, access_token)
            if not profile.email:
                logger.error("oauth_identity_missing_email", provider=provider)
                raise OAuthError("user_info_error")
            user, created = self._resolve_user(provider, profile)
        except OAuthError:
            raise
        except Exception as exc:
            logger.error(
                "oauth_callback_failed",
                provider=provider,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise OAuthError("server_error") from exc

        sign_in = self.auth.begin_sign_in(
            user,
            user_agent=user_agent,
            ip=ip,
            method="oauth",
            metadata={"provider": provider, "new_user": created},
        )
        logger.info(
            "oauth_login_success",
            provider=provider,
            user_id=user.id,
            created=created,
            two_factor_pending=sign_in.requires_two_factor,
        )
        return OAuthResult(
            user=sign_in.user,
            created=created,
            session=sign_in.session,
            tokens=sign_in.tokens,
            challenge=sign_in.challenge,
        )

    def _resolve_user(self, provider: str, profile: OAuthProfile) -> tuple[User, bool]:
        user = self.store.get_user_by_provider(provider, profile.provider_uid)
        created = False
        if not user:
            user = self.store.get_user_by_email(profile.email)
            if user and profile.email_verified is False:
                # Unconfirmed addresses never attach to an existing account
                logger.warning(
                    "oauth_unverified_email_link_refused", provider=provider, user_id=user.id
                )
                raise OAuthError("email_not_verified")
        if not user:
            user = self.store.create_user(
                profile.email,
                profile.name,
                email_verified=profile.email_verified is not False,
                meta={"signup_provider": provider},
            )
            # Unusable hash: this account can never pass password login
            unusable_secret = base64.urlsafe_b64encode(os.urandom(24)).decode()
            self.store.save_password(user.id, unusable_secret, OAUTH_PASSWORD_ALGO)
            created = True
        self.store.link_user_auth_provider(user.id, provider, profile.provider_uid)
        return user, created
