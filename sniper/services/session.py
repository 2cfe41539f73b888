"""Lifecycle owner of the single authenticated automation context.

States move ``NO_SESSION -> VALIDATING -> VALID | EXPIRED | INVALID``;
``EXPIRED -> REFRESHING -> VALID | NO_SESSION``; and
``INVALID | NO_SESSION -> FULL_AUTHENTICATING -> VALID | FAILED``. All
establishment runs under one lock, so concurrent callers wait for the flow
already in progress instead of starting their own.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

import httpx
from opentelemetry import trace
from pydantic import ValidationError

from sniper.core import metrics
from sniper.core.errors import DecryptionError, PermanentError, SessionError, UnsupportedEnvelopeVersionError
from sniper.core.protection import BreakerOptions, BreakerRegistry, RetryPolicy, network_retry_policy, protect
from sniper.schemas.session import (
    DEFAULT_IDENTITY,
    AuthTokens,
    CapturedSignIn,
    Identity,
    IdentityPool,
    RefreshResponse,
    SessionRecord,
    SessionTokens,
)
from sniper.services.browser import AutomationContext, ContextLauncher
from sniper.services.collaborators import ChallengeSolver, LoginCapabilities, LoginFlow, OneTimeCodeRetriever
from sniper.services.secrets import EnvelopeStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SIGN_IN_STORAGE_KEY = "signInUserSession"
REFRESH_BREAKER = "session-refresh"
CHALLENGE_BREAKER = "challenge-solver"
MAILBOX_BREAKER = "mailbox"


class SessionState(str, Enum):
    NO_SESSION = "NO_SESSION"
    VALIDATING = "VALIDATING"
    VALID = "VALID"
    EXPIRED = "EXPIRED"
    INVALID = "INVALID"
    REFRESHING = "REFRESHING"
    FULL_AUTHENTICATING = "FULL_AUTHENTICATING"
    FAILED = "FAILED"


def load_identity_pool(path: str | Path) -> list[Identity]:
    pool_path = Path(path)
    if not pool_path.exists():
        logger.info("identity pool not found, using default identity path=%s", pool_path)
        return [DEFAULT_IDENTITY]

    pool = IdentityPool.model_validate_json(pool_path.read_text(encoding="utf-8"))
    if not pool.identities:
        logger.warning("identity pool is empty, using default identity path=%s", pool_path)
        return [DEFAULT_IDENTITY]
    logger.info("loaded identity pool count=%s", len(pool.identities))
    return list(pool.identities)


class SessionAuthority:
    def __init__(
        self,
        *,
        envelopes: EnvelopeStore,
        launcher: ContextLauncher,
        login_flow: LoginFlow,
        challenge_solver: ChallengeSolver,
        code_retriever: OneTimeCodeRetriever,
        breakers: BreakerRegistry,
        session_path: str | Path,
        refresh_url: str,
        account_url: str,
        identities: list[Identity] | None = None,
        login_marker: str = "/login",
        challenge_timeout_seconds: float = 180.0,
        one_time_code_window_seconds: int = 300,
        refresh_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.envelopes = envelopes
        self.launcher = launcher
        self.login_flow = login_flow
        self.session_path = Path(session_path)
        self.refresh_url = refresh_url
        self.account_url = account_url
        self.identities = list(identities or [DEFAULT_IDENTITY])
        self.login_marker = login_marker
        self.one_time_code_window_seconds = one_time_code_window_seconds
        self._rng = rng or random.Random()
        self._clock = clock
        self._http = http_client or httpx.AsyncClient(timeout=30.0)
        self._owns_http = http_client is None

        self._state = SessionState.NO_SESSION
        self._context: AutomationContext | None = None
        self._record: SessionRecord | None = None
        self._force_refresh = False
        self._lock = asyncio.Lock()

        self._refresh = protect(
            self._post_refresh,
            breaker=breakers.get(REFRESH_BREAKER),
            policy=refresh_policy or network_retry_policy(),
            context="session.refresh",
        )
        self._solve_challenge = protect(
            challenge_solver.solve_challenge,
            breaker=breakers.get(
                CHALLENGE_BREAKER,
                BreakerOptions(
                    failure_threshold=3,
                    reset_timeout_seconds=120.0,
                    timeout_seconds=challenge_timeout_seconds,
                    volume_threshold=3,
                ),
            ),
            policy=RetryPolicy(retries=0),
            context="session.solve_challenge",
        )
        self._retrieve_code = protect(
            code_retriever.retrieve_one_time_code,
            breaker=breakers.get(
                MAILBOX_BREAKER,
                BreakerOptions(failure_threshold=3, reset_timeout_seconds=120.0, timeout_seconds=60.0, volume_threshold=3),
            ),
            policy=RetryPolicy(retries=2, min_delay=2.0, max_delay=10.0),
            context="session.retrieve_one_time_code",
        )

    @property
    def state(self) -> SessionState:
        return self._state

    async def get_authenticated_context(self) -> AutomationContext:
        if self._is_usable():
            return self._context  # type: ignore[return-value]

        async with self._lock:
            if self._is_usable():
                return self._context  # type: ignore[return-value]
            with tracer.start_as_current_span("session.establish") as span:
                await self._establish()
                span.set_attribute("session.state", self._state.value)
            if self._context is None:
                raise SessionError("session established without an automation context")
            return self._context

    def get_auth_tokens(self) -> AuthTokens:
        if self._state is not SessionState.VALID or self._record is None:
            raise SessionError("no valid session available")
        if self._record.tokens.is_expired(self._clock()):
            self._state = SessionState.EXPIRED
            raise SessionError("session tokens have expired")
        return AuthTokens(access_token=self._record.tokens.access_token, id_token=self._record.tokens.id_token)

    def invalidate(self) -> None:
        logger.warning("session invalidated; next use will refresh or re-authenticate")
        self._force_refresh = True
        self._state = SessionState.INVALID

    async def close(self) -> None:
        async with self._lock:
            await self._teardown()
            self._record = None
            self._state = SessionState.NO_SESSION
            if self._owns_http:
                await self._http.aclose()

    def _is_usable(self) -> bool:
        return (
            self._state is SessionState.VALID
            and self._context is not None
            and self._record is not None
            and not self._record.tokens.is_expired(self._clock())
        )

    async def _establish(self) -> None:
        try:
            record = await self._load_record()
            if record is not None:
                if await self._resume(record):
                    return
            await self._full_authenticate()
        except SessionError:
            raise
        except Exception as exc:
            self._state = SessionState.FAILED
            metrics.session_errors.add(1, {"error_type": type(exc).__name__})
            await self._teardown()
            raise SessionError(f"session establishment failed: {exc}") from exc

    async def _resume(self, record: SessionRecord) -> bool:
        expired = self._force_refresh or record.tokens.is_expired(self._clock())
        self._force_refresh = False

        if not expired:
            self._state = SessionState.VALIDATING
            if await self._validate(record):
                self._record = record
                self._state = SessionState.VALID
                logger.info("using existing valid session identity=%s", record.identity.id)
                return True
            self._state = SessionState.INVALID
            return False

        self._state = SessionState.EXPIRED
        logger.info("session expired, attempting token refresh")
        refreshed = await self._try_refresh(record)
        if refreshed is None:
            self._state = SessionState.NO_SESSION
            return False

        try:
            context = await self._replace_context(refreshed.identity)
            await context.add_cookies(refreshed.cookies)
        except Exception as exc:  # noqa: BLE001
            logger.warning("failed to open context for refreshed session: %s", exc)
            self._state = SessionState.NO_SESSION
            return False

        self._record = refreshed
        self._state = SessionState.VALID
        logger.info("token refresh successful")
        return True

    async def _load_record(self) -> SessionRecord | None:
        try:
            raw = await self.envelopes.load_decrypted(self.session_path)
        except UnsupportedEnvelopeVersionError as exc:
            self._state = SessionState.FAILED
            raise SessionError(f"session file uses an unsupported format: {exc}") from exc
        except DecryptionError as exc:
            logger.error("stored session is unreadable, falling back to full login: %s", exc)
            metrics.session_errors.add(1, {"error_type": "corrupt_session"})
            return None

        if raw is None:
            return None
        try:
            return SessionRecord.model_validate(raw)
        except ValidationError as exc:
            logger.error("stored session has an unexpected shape, falling back to full login: %s", exc)
            metrics.session_errors.add(1, {"error_type": "corrupt_session"})
            return None

    async def _validate(self, record: SessionRecord) -> bool:
        try:
            context = await self._replace_context(record.identity)
            await context.add_cookies(record.cookies)
            navigation = await context.goto(self.account_url)
        except Exception as exc:  # noqa: BLE001
            logger.error("session validation error: %s", exc)
            return False

        if self.login_marker in navigation.url or navigation.status in {401, 403}:
            logger.info("session validation failed, redirected to login url=%s", navigation.url)
            return False
        return True

    async def _try_refresh(self, record: SessionRecord) -> SessionRecord | None:
        if not record.tokens.refresh_token:
            logger.info("stored session has no refresh token")
            return None

        self._state = SessionState.REFRESHING
        metrics.session_refreshes.add(1, {"refresh_type": "token"})
        try:
            response = await self._refresh(record.tokens)
            now = self._clock()
            tokens = SessionTokens(
                access_token=response.access_token,
                refresh_token=record.tokens.refresh_token,
                id_token=response.id_token or record.tokens.id_token,
                expires_at=now + response.expires_in,
            )
            refreshed = record.model_copy(
                update={"tokens": tokens, "captured_at": datetime.fromtimestamp(now, tz=timezone.utc)}
            )
            await self._persist(refreshed)
            return refreshed
        except Exception as exc:  # noqa: BLE001
            logger.error("token refresh failed: %s", exc)
            metrics.session_errors.add(1, {"error_type": "refresh_failed"})
            return None

    async def _post_refresh(self, tokens: SessionTokens) -> RefreshResponse:
        response = await self._http.post(
            self.refresh_url,
            json={"refreshToken": tokens.refresh_token},
            headers={"Authorization": f"Bearer {tokens.access_token}"},
        )
        response.raise_for_status()
        try:
            return RefreshResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise PermanentError("refresh response did not contain an access token") from exc

    async def _full_authenticate(self) -> None:
        self._state = SessionState.FULL_AUTHENTICATING
        metrics.session_refreshes.add(1, {"refresh_type": "full_login"})
        identity = self._select_identity()

        with tracer.start_as_current_span("session.full_authenticate") as span:
            span.set_attribute("session.identity", identity.id)
            try:
                context = await self._replace_context(identity)
                await self.login_flow.run(
                    context,
                    LoginCapabilities(
                        solve_challenge=self._solve_challenge,
                        retrieve_one_time_code=self._retrieve_code,
                        one_time_code_window_seconds=self.one_time_code_window_seconds,
                    ),
                )
                record = await self._capture(context)
                await self._persist(record)
            except Exception as exc:
                self._state = SessionState.FAILED
                metrics.session_errors.add(1, {"error_type": "login_failed"})
                await self._teardown()
                logger.error("full login failed: %s", exc)
                raise SessionError(f"full authentication failed: {exc}") from exc

        self._record = record
        self._state = SessionState.VALID
        logger.info("full login completed identity=%s", identity.id)

    async def _capture(self, context: AutomationContext) -> SessionRecord:
        raw = await context.read_local_storage(SIGN_IN_STORAGE_KEY)
        if not raw:
            raise SessionError("no sign-in session found in local storage after login")
        try:
            captured = CapturedSignIn.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            raise SessionError("sign-in session in local storage is malformed") from exc

        return SessionRecord(
            tokens=SessionTokens(
                access_token=captured.access_token,
                refresh_token=captured.refresh_token,
                id_token=captured.id_token,
                expires_at=self._clock() + captured.expires_in,
            ),
            cookies=await context.cookies(),
            identity=context.identity,
        )

    async def _persist(self, record: SessionRecord) -> None:
        await self.envelopes.save_encrypted(record.to_storage(), self.session_path)

    def _select_identity(self) -> Identity:
        identity = self._rng.choice(self.identities)
        metrics.identity_rotations.add(1)
        logger.info("selected identity for full login identity=%s", identity.id)
        return identity

    async def _replace_context(self, identity: Identity) -> AutomationContext:
        await self._teardown()
        self._context = await self.launcher.launch(identity)
        return self._context

    async def _teardown(self) -> None:
        context = self._context
        self._context = None
        if context is None:
            return
        try:
            await context.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("failed to close automation context: %s", exc)
