"""
OAuth token lifecycle with single-flight refresh.

States:
    UNAUTHENTICATED -> AUTHENTICATED -> REFRESHING -> AUTHENTICATED
                                                   \\-> FAILED (terminal until login)

Only one refresh is ever in flight per TokenManager. The first caller that
finds the token expired installs a Future in the in-flight slot and performs
the network refresh; every concurrent caller blocks on that Future.
"""

import json
import threading
from collections.abc import Callable
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from restbridge.errors import AuthenticationFailedError
from restbridge.models import Credential
from restbridge.token_store import TokenStore, TokenStoreError

logger = structlog.get_logger(__name__)

DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

Refresher = Callable[[Credential], Credential]
ReAuthenticator = Callable[[], Credential]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    FAILED = "failed"


class OAuthRefresher:
    """
    Refresh-token grant (RFC 6749 section 6) against an OAuth token endpoint.

    Example:
        refresher = OAuthRefresher(client_id="...", client_secret="...")
        new_credential = refresher(old_credential)
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_uri: str = DEFAULT_TOKEN_URI,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
        now: Callable[[], datetime] = _utcnow,
    ):
        if not client_id or not client_secret:
            raise ValueError("client_id and client_secret are required for token refresh")

        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri
        self._client = http_client or httpx.Client(timeout=timeout)
        self._now = now

    def __call__(self, credential: Credential) -> Credential:
        if not credential.refresh_token:
            raise AuthenticationFailedError("Credential has no refresh token")

        response = self._client.post(
            self.token_uri,
            data={
                "grant_type": "refresh_token",
                "refresh_token": credential.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            headers={"Accept": "application/json"},
        )

        if response.status_code >= 400:
            raise AuthenticationFailedError(
                f"Token refresh rejected: {_oauth_error_message(response)}",
                status_code=response.status_code,
                response_body=response.text[:500],
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationFailedError(f"Invalid token response: {e}") from e

        if "access_token" not in data:
            raise AuthenticationFailedError("No access token in token response")

        return Credential.from_token_response(data, now=self._now(), previous=credential)

    def close(self) -> None:
        self._client.close()


def _oauth_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict):
        return data.get("error_description") or data.get("error") or response.reason_phrase
    return response.reason_phrase


class TokenManager:
    """
    Owns the credential and hands out bearer tokens.

    Construct once at startup, pass it to every component that makes calls,
    and close() it on shutdown so the latest credential is persisted.

    Example:
        manager = TokenManager(FileTokenStore(), refresher=OAuthRefresher(...))
        token = manager.get_access_token()  # refreshes if needed
        ...
        manager.close()
    """

    def __init__(
        self,
        store: TokenStore,
        refresher: Refresher | None = None,
        reauthenticate: ReAuthenticator | None = None,
        safety_margin: timedelta = timedelta(seconds=60),
        now: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize token manager.

        Args:
            store: Where the credential is loaded from and persisted to
            refresher: Performs the network refresh of an expiring credential
            reauthenticate: Obtains a brand new credential (e.g. service account)
            safety_margin: Refresh this long before the token actually expires
            now: Clock (injectable for tests)
        """
        self._store = store
        self._refresher = refresher
        self._reauthenticate = reauthenticate
        self.safety_margin = safety_margin
        self._now = now

        self._lock = threading.Lock()
        self._inflight: Future | None = None
        self._credential: Credential | None = None
        self._state = AuthState.UNAUTHENTICATED
        self._failure: AuthenticationFailedError | None = None
        self._stale_token: str | None = None

        self.refresh_count = 0

        self._log = logger.bind(component="token_manager")
        self._load()

    def _load(self) -> None:
        try:
            credential = self._store.load()
        except Exception as e:
            self._log.warning("Failed to load credential, starting unauthenticated", error=str(e))
            return

        if credential is not None:
            self._credential = credential
            self._state = AuthState.AUTHENTICATED
            self._log.info("Loaded credential", expires_at=credential.expires_at)

    @property
    def state(self) -> AuthState:
        with self._lock:
            return self._state

    def _needs_renewal(self, credential: Credential) -> bool:
        if credential.access_token == self._stale_token:
            return True
        return credential.expires_within(self.safety_margin, self._now())

    def get_access_token(self) -> str:
        """
        Return a valid bearer token, refreshing it at most once concurrently.

        Raises:
            AuthenticationFailedError: not logged in, or the refresh failed
        """
        with self._lock:
            if self._state is AuthState.FAILED:
                raise AuthenticationFailedError(
                    f"Authentication previously failed: {self._failure.message}"
                )

            credential = self._credential
            if credential is not None and not self._needs_renewal(credential):
                return credential.access_token

            if credential is None and self._reauthenticate is None:
                raise AuthenticationFailedError(
                    "Not authenticated. Run 'restbridge auth login' first."
                )

            future = self._inflight
            leader = future is None
            if leader:
                future = Future()
                self._inflight = future
                self._state = AuthState.REFRESHING

        if not leader:
            return future.result()

        return self._refresh(credential, future)

    def _refresh(self, credential: Credential | None, future: Future) -> str:
        """Leader side of the single-flight refresh."""
        self._log.info("Refreshing access token")
        try:
            new_credential = self._renew(credential)
        except Exception as e:
            error = e if isinstance(e, AuthenticationFailedError) else AuthenticationFailedError(
                f"Token refresh failed: {e}"
            )
            with self._lock:
                self._state = AuthState.FAILED
                self._failure = error
                self._inflight = None
            future.set_exception(error)
            self._log.error("Token refresh failed", error=str(e))
            if error is e:
                raise
            raise error from e
        except BaseException:
            with self._lock:
                self._inflight = None
                self._state = (
                    AuthState.AUTHENTICATED if credential is not None else AuthState.UNAUTHENTICATED
                )
            future.set_exception(AuthenticationFailedError("Token refresh interrupted"))
            raise

        self._persist(new_credential)

        with self._lock:
            self._credential = new_credential
            self._state = AuthState.AUTHENTICATED
            self._failure = None
            self._stale_token = None
            self._inflight = None
        future.set_result(new_credential.access_token)

        self._log.info("Access token refreshed", expires_at=new_credential.expires_at)
        return new_credential.access_token

    def _renew(self, credential: Credential | None) -> Credential:
        if credential is not None and credential.can_refresh and self._refresher is not None:
            self.refresh_count += 1
            return self._refresher(credential)
        if self._reauthenticate is not None:
            self.refresh_count += 1
            return self._reauthenticate()
        raise AuthenticationFailedError(
            "Access token expired and cannot be refreshed. Run 'restbridge auth login'."
        )

    def _persist(self, credential: Credential) -> None:
        try:
            self._store.save(credential)
        except TokenStoreError as e:
            self._log.warning("Failed to persist credential", error=str(e))

    def invalidate(self, access_token: str) -> None:
        """Mark a token the server rejected so the next call renews it."""
        with self._lock:
            if self._credential is not None and self._credential.access_token == access_token:
                self._stale_token = access_token
                self._log.info("Access token rejected by server, will refresh")

    def login(self, credential: Credential) -> None:
        """Install a credential obtained by an external login flow."""
        self._persist(credential)
        with self._lock:
            self._credential = credential
            self._state = AuthState.AUTHENTICATED
            self._failure = None
            self._stale_token = None
        self._log.info("Logged in", scopes=sorted(credential.scopes))

    def reauthenticate(self) -> None:
        """Run the configured re-authentication capability and log in with its result."""
        if self._reauthenticate is None:
            raise AuthenticationFailedError("No re-authentication flow configured")
        self.login(self._reauthenticate())

    def logout(self) -> None:
        """Forget the credential, in memory and in the store."""
        self._store.clear()
        with self._lock:
            self._credential = None
            self._state = AuthState.UNAUTHENTICATED
            self._failure = None
            self._stale_token = None

    def close(self) -> None:
        """Flush the latest credential to the store."""
        with self._lock:
            credential = self._credential
        if credential is not None:
            self._persist(credential)

    def status(self) -> dict[str, Any]:
        with self._lock:
            credential = self._credential
            state = self._state
        return {
            "state": state.value,
            "authenticated": state in (AuthState.AUTHENTICATED, AuthState.REFRESHING),
            "expires_at": credential.expires_at.isoformat() if credential and credential.expires_at else None,
            "scopes": sorted(credential.scopes) if credential else [],
            "has_refresh_token": bool(credential and credential.refresh_token),
        }


def load_credential_file(
    path: str | Path,
    now: datetime | None = None,
) -> tuple[Credential, dict[str, str]]:
    """
    Read a credential for `auth login`.

    Accepts a token response dump ({"access_token", "expires_in", ...}) or an
    authorized-user file ({"client_id", "client_secret", "refresh_token"}).
    A file with only a refresh token yields an already-expired credential so
    the first call refreshes it.

    Returns:
        (credential, client settings found in the file)
    """
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise AuthenticationFailedError(f"Failed to read credential file {path}: {e}") from e

    if not isinstance(data, dict):
        raise AuthenticationFailedError(f"Credential file {path} must contain a JSON object")

    client = {key: data[key] for key in ("client_id", "client_secret", "token_uri") if data.get(key)}
    now = now or _utcnow()

    access_token = data.get("access_token") or data.get("token")
    refresh_token = data.get("refresh_token")
    if not access_token and not refresh_token:
        raise AuthenticationFailedError("Credential file has neither an access token nor a refresh token")

    if not access_token:
        access_token, expires_at = "", now
    elif data.get("expires_in") is not None:
        expires_at = now + timedelta(seconds=int(data["expires_in"]))
    else:
        expires_at = data.get("expires_at") or data.get("expiry")

    scopes = data.get("scope") or data.get("scopes") or []
    if isinstance(scopes, str):
        scopes = scopes.split()

    try:
        credential = Credential.model_validate({
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": expires_at,
            "scopes": set(scopes),
            "token_type": data.get("token_type", "Bearer"),
        })
    except ValidationError as e:
        raise AuthenticationFailedError(f"Invalid credential file {path}: {e}") from e

    return credential, client
