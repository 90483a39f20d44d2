"""OAuth credential management for the Google Calendar MCP server."""

from __future__ import annotations

import asyncio
import json
import sys
import webbrowser
from dataclasses import dataclass, field
from datetime import timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from loguru import logger

from . import config
from .callback_server import CallbackListener
from .crypto import CryptoEngine, resolve_encryption_key
from .oauth_handler import (
    CredentialConfigurationError,
    ExchangeResult,
    OAuthHandler,
    ensure_file_exists,
    ttl_from_expiry,
)
from .session import AuthSession
from .token_store import CredentialStore, StoredTokens

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

__all__ = [
    "AuthSettings",
    "AuthenticationRequiredError",
    "AuthorizationTimeoutError",
    "CredentialConfigurationError",
    "FlowStartError",
    "GoogleOAuthManager",
    "RefreshUnavailableError",
    "build_oauth_manager",
]


class AuthenticationRequiredError(RuntimeError):
    """Raised when the user must complete the OAuth flow before continuing."""


class RefreshUnavailableError(AuthenticationRequiredError):
    """Raised when a refresh is needed but no refresh token is stored."""


class AuthorizationTimeoutError(RuntimeError):
    """Raised when no token arrives before the authorization window closes."""


class FlowStartError(RuntimeError):
    """Raised when the callback listener or authorization URL cannot be set up."""


class CodeExchanger(Protocol):
    def generate_auth_url(
        self, identity: str, redirect_uri: str, manual: bool = False
    ) -> tuple[str, str]: ...

    async def exchange_code_for_tokens(self, code: str, state: str) -> ExchangeResult: ...


class Listener(Protocol):
    @property
    def redirect_uri(self) -> str: ...

    async def start(self) -> bool: ...

    async def stop(self) -> None: ...


@dataclass(slots=True)
class AuthSettings:
    """Everything the OAuth manager needs; defaults come from :mod:`config`."""

    client_secret: Path = config.DEFAULT_CREDENTIALS_PATH
    config_dir: Path = config.CONFIG_DIR
    scopes: list[str] = field(default_factory=lambda: list(config.CALENDAR_SCOPES))
    host: str = config.AUTH_HOST
    port: int = config.AUTH_REDIRECT_PORT
    manual: bool = config.USE_MANUAL_AUTH
    poll_interval: float = config.AUTH_POLL_INTERVAL
    timeout: float = config.AUTH_TIMEOUT
    identity: str = config.DEFAULT_IDENTITY
    encryption_key: str | None = config.TOKEN_ENCRYPTION_KEY

    @property
    def tokens_file(self) -> Path:
        return self.config_dir / config.TOKENS_FILE.name

    @property
    def encryption_key_file(self) -> Path:
        return self.config_dir / config.ENCRYPTION_KEY_FILE.name


def _read_code_from_stdin() -> str:
    print(
        "\nAfter authorizing, please enter the authorization code shown by Google: ",
        end="",
        file=sys.stderr,
        flush=True,
    )
    return sys.stdin.readline()


def _open_browser(url: str) -> None:
    try:
        if webbrowser.open(url):
            logger.info("Opening browser for authorization...")
            return
    except webbrowser.Error as exc:
        logger.warning(f"Failed to open browser automatically: {exc}")
    logger.info(f"Please open this URL manually: {url}")


class GoogleOAuthManager:
    """
    Hands out authorized Google credentials and runs the OAuth flow on demand.

    At most one authorization session is current. Calling
    :meth:`initiate_authorization` while another session is pending cancels
    that session's timers and stops its callback listener before the new
    flow starts; the superseded caller's await is never settled.
    """

    def __init__(
        self,
        settings: AuthSettings,
        store: CredentialStore,
        handler: CodeExchanger,
        listener: Listener,
        *,
        read_code: Callable[[], str] = _read_code_from_stdin,
        open_browser: Callable[[str], None] = _open_browser,
    ) -> None:
        self._settings = settings
        self._store = store
        self._handler = handler
        self._listener = listener
        self._read_code = read_code
        self._open_browser = open_browser
        self._credentials: Credentials | None = None
        self._current_session: AuthSession[Credentials] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._load_saved_tokens()

    @property
    def store(self) -> CredentialStore:
        return self._store

    @property
    def current_session(self) -> AuthSession[Credentials] | None:
        return self._current_session

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials

    def _build_credentials(self, tokens: StoredTokens) -> Credentials:
        client = self._client_info()
        credentials = Credentials(
            token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_uri=client.get("token_uri", GOOGLE_TOKEN_URI),
            client_id=client.get("client_id"),
            client_secret=client.get("client_secret"),
            scopes=self._settings.scopes,
        )
        if tokens.access_token and tokens.access_expires_at:
            # google-auth compares against naive UTC datetimes.
            credentials.expiry = tokens.access_expires_at.astimezone(timezone.utc).replace(
                tzinfo=None
            )
        return credentials

    def _client_info(self) -> dict[str, Any]:
        path = self._settings.client_secret
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(f"Could not read OAuth client file {path}: {exc}")
            return {}
        return data.get("installed") or data.get("web") or {}

    def _load_saved_tokens(self) -> None:
        tokens = self._store.get_tokens()
        if not tokens.access_token and not tokens.refresh_token:
            logger.debug("No saved tokens found, authentication will be required")
            return

        self._credentials = self._build_credentials(tokens)
        if tokens.access_token and tokens.refresh_token:
            logger.info("Loaded saved tokens from file")
        elif tokens.refresh_token:
            logger.info(
                "Loaded refresh token from file (access token expired, will refresh on next request)"
            )
        else:
            logger.info("Loaded access token from file (no refresh token)")

    def clear_tokens(self) -> None:
        """Forget every stored and in-memory credential."""
        self._store.remove_tokens()
        self._credentials = None
        logger.info("Cleared all tokens and credentials")

    def has_stored_credentials(self) -> bool:
        tokens = self._store.get_tokens()
        return bool(tokens.access_token or tokens.refresh_token)

    async def get_credentials(self) -> Credentials:
        """
        Return credentials with a valid access token, refreshing when needed.

        Raises:
            AuthenticationRequiredError: If no usable token exists or the
                refresh token was rejected.
        """
        creds = self._credentials
        if creds is not None and creds.token:
            if creds.expiry is None or creds.expired:
                logger.info("Token expired, refreshing...")
                await self._refresh()
            return self._credentials

        if creds is not None and creds.refresh_token:
            logger.info("No access token, but refresh token available. Refreshing...")
            await self._refresh()
            return self._credentials

        raise AuthenticationRequiredError(
            "Authentication required. Please use the authenticate tool to authenticate."
        )

    async def _refresh(self) -> None:
        creds = self._credentials
        if creds is None or not creds.refresh_token:
            logger.warning("No refresh token available")
            self._credentials = None
            raise RefreshUnavailableError(
                "No refresh token available. Please use the authenticate tool to re-authenticate."
            )

        try:
            await asyncio.to_thread(creds.refresh, Request())
        except GoogleAuthError as exc:
            logger.error(f"Failed to refresh token: {exc}")
            self._credentials = None
            raise AuthenticationRequiredError(
                "Stored Google OAuth token can no longer be refreshed. "
                "Please use the authenticate tool to re-authenticate."
            ) from exc

        if creds.token:
            self._store.store_tokens(
                access_token=creds.token,
                access_ttl=ttl_from_expiry(creds.expiry),
            )
            logger.info("Successfully refreshed and stored access token")

    async def initiate_authorization(self) -> Credentials:
        """
        Start a new authorization session and wait for its credentials.

        Raises:
            AuthorizationTimeoutError: If no token arrives within the timeout.
            FlowStartError: If the listener or authorization URL fails.
        """
        previous = self._current_session
        session: AuthSession[Credentials] = AuthSession()
        self._current_session = session

        waiter: asyncio.Future[Credentials] = asyncio.get_running_loop().create_future()
        session.add_waiter(waiter)
        self._spawn(self._start_auth_flow(session, previous))
        return await waiter

    def _spawn(self, coro) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _finish(self, session: AuthSession[Credentials]) -> None:
        if self._current_session is session:
            self._current_session = None

    async def _start_auth_flow(
        self,
        session: AuthSession[Credentials],
        previous: AuthSession[Credentials] | None,
    ) -> None:
        if previous is not None:
            logger.info("Cancelling previous authentication session")
            previous.cancel()
            await self._listener.stop()

        if session.cancelled:
            return

        if self._settings.manual:
            logger.info("Using manual authentication flow")
            try:
                credentials = await self._handle_manual_auth()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Error in manual authentication: {exc}")
                if not session.cancelled:
                    session.reject_all(exc)
                    self._finish(session)
                return
            if not session.cancelled:
                session.resolve_all(credentials)
                self._finish(session)
            return

        try:
            await self._listener.start()
            auth_url, _state = self._handler.generate_auth_url(
                self._settings.identity, self._listener.redirect_uri
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error in authorization: {exc}")
            if session.cancelled:
                return
            await self._listener.stop()
            error = FlowStartError(f"Could not start authorization: {exc}")
            error.__cause__ = exc
            session.reject_all(error)
            self._finish(session)
            return

        if session.cancelled:
            return

        logger.info(f"Please authorize this app by visiting this URL: {auth_url}")
        self._open_browser(auth_url)

        session.set_poll_task(self._spawn(self._poll_for_tokens(session)))
        session.set_timeout_task(self._spawn(self._expire_after_timeout(session)))

    async def _poll_for_tokens(self, session: AuthSession[Credentials]) -> None:
        while not session.cancelled:
            await asyncio.sleep(self._settings.poll_interval)
            if session.cancelled:
                return

            try:
                tokens = self._store.get_tokens()
                if not tokens.access_token:
                    continue
                credentials = self._build_credentials(tokens)
            except Exception:
                logger.exception("Error polling for tokens")
                continue

            if tokens.refresh_token:
                logger.info("Using stored refresh token for authentication")
            else:
                logger.warning("No refresh token available, proceeding with access token only")

            # The port must be free before the caller can start another session.
            await self._listener.stop()
            if session.cancelled:
                return
            self._credentials = credentials
            session.resolve_all(credentials)
            self._finish(session)
            return

    async def _expire_after_timeout(self, session: AuthSession[Credentials]) -> None:
        await asyncio.sleep(self._settings.timeout)
        if session.cancelled:
            return

        await self._listener.stop()
        if session.cancelled:
            return
        minutes = self._settings.timeout / 60
        session.reject_all(
            AuthorizationTimeoutError(f"Authorization timed out after {minutes:g} minutes")
        )
        self._finish(session)

    async def _handle_manual_auth(self) -> Credentials:
        auth_url, state = self._handler.generate_auth_url(
            self._settings.identity, self._listener.redirect_uri, manual=True
        )
        logger.info(f"Please authorize this app by visiting this URL: {auth_url}")
        self._open_browser(auth_url)

        code = (await asyncio.to_thread(self._read_code)).strip()
        if not code:
            raise FlowStartError("No authorization code provided")

        result = await self._handler.exchange_code_for_tokens(code, state)
        if not result.success:
            raise FlowStartError(result.message)
        logger.info("Manual authentication successful")

        tokens = self._store.get_tokens()
        if not tokens.access_token:
            raise AuthenticationRequiredError("Failed to obtain access token")
        if not tokens.refresh_token:
            logger.warning("No refresh token available, proceeding with access token only")
        self._credentials = self._build_credentials(tokens)
        return self._credentials

    async def shutdown(self) -> None:
        """Cancel any pending session and release the listener and background tasks."""
        if self._current_session is not None:
            self._current_session.cancel()
            self._current_session = None
        await self._listener.stop()

        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._store.shutdown()


def build_oauth_manager(settings: AuthSettings | None = None) -> GoogleOAuthManager:
    """Wire the crypto engine, token store, code exchanger and listener together."""
    settings = settings or AuthSettings()
    settings.config_dir.mkdir(parents=True, exist_ok=True)

    key = resolve_encryption_key(settings.encryption_key_file, settings.encryption_key)
    store = CredentialStore(
        settings.tokens_file,
        CryptoEngine(key),
        identity=settings.identity,
    )
    handler = OAuthHandler(settings.client_secret, settings.scopes, store)
    listener = CallbackListener(handler, settings.host, settings.port)
    return GoogleOAuthManager(settings, store, handler, listener)


def check_client_secret(settings: AuthSettings) -> None:
    """Fail fast with a clear message when the OAuth client file is absent."""
    ensure_file_exists(settings.client_secret, CredentialConfigurationError)
