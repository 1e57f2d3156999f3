from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum

from .errors import AuthError, TokenError
from .models import AuxClaims, Credential
from .storage import CredentialStore

LOGGER = logging.getLogger("vidauth")


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


class RefreshSchedule:
    """One cancellable delayed call. ``reset`` always replaces the previous timer."""

    def __init__(self, callback, *, sleep=asyncio.sleep) -> None:
        self._callback = callback
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self._delay: float | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def delay(self) -> float | None:
        return self._delay if self.active else None

    def reset(self, delay: float) -> None:
        self.cancel()
        self._delay = max(0.0, delay)
        self._task = asyncio.get_running_loop().create_task(self._run(self._delay))

    def cancel(self) -> None:
        task, self._task = self._task, None
        self._delay = None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self, delay: float) -> None:
        await self._sleep(delay)
        # Detach before firing so the callback may reset the schedule.
        if self._task is asyncio.current_task():
            self._task = None
            self._delay = None
        try:
            await self._callback()
        except AuthError as error:
            LOGGER.warning("Automatic token refresh failed: %s", error)


class RefreshTicket:
    def __init__(self, task: asyncio.Task, started_at: float) -> None:
        self.task = task
        self.started_at = started_at
        self.waiters = 0

    async def wait(self) -> Credential:
        self.waiters += 1
        # A cancelled waiter must not cancel the refresh other waiters share.
        return await asyncio.shield(self.task)


class SessionManager:
    """Owns the process-wide credential and its lifecycle.

    Construct one per process, call ``bootstrap()`` on start and ``dispose()``
    on shutdown, and inject it wherever a bearer token is needed. All methods
    must run on the event loop that owns the session.

    Refreshes are single-flight: while a ``RefreshTicket`` is outstanding every
    ``refresh()`` caller awaits that ticket. A failed refresh logs the session
    out and the failure reaches every waiter.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        refresh_fn,
        logout_fn,
        token_lifetime_seconds: float = 300,
        refresh_ratio: float = 0.9,
        freshness_seconds: float = 240,
        clock=time.time,
        sleep=asyncio.sleep,
    ) -> None:
        self._store = store
        self._refresh_fn = refresh_fn
        self._logout_fn = logout_fn
        self.refresh_interval = token_lifetime_seconds * refresh_ratio
        self.freshness_seconds = freshness_seconds
        self._clock = clock

        self._state = SessionState.UNAUTHENTICATED
        self._credential: Credential | None = None
        self._ticket: RefreshTicket | None = None
        self._schedule = RefreshSchedule(self.refresh, sleep=sleep)
        # Bumped whenever the local session is cleared; stale refreshes compare it.
        self._epoch = 0
        self._background: set[asyncio.Task] = set()

    # -- state -----------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def access_token(self) -> str | None:
        if self._credential is None:
            return None
        return self._credential.access_token

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED and self._credential is not None

    @property
    def refresh_in_flight(self) -> bool:
        return self._ticket is not None

    @property
    def schedule(self) -> RefreshSchedule:
        return self._schedule

    def mark_authenticating(self) -> None:
        if self._credential is None:
            self._state = SessionState.AUTHENTICATING

    def abandon_login(self) -> None:
        if self._state is SessionState.AUTHENTICATING:
            self._state = SessionState.UNAUTHENTICATED

    # -- credential lifecycle --------------------------------------------------

    def set_credential(self, access_token: str, aux_claims: AuxClaims | None = None) -> Credential:
        credential = Credential(
            access_token=access_token,
            issued_at=self._clock(),
            aux_claims=aux_claims or AuxClaims(),
        )
        self._credential = credential
        self._state = SessionState.AUTHENTICATED
        self._store.save(credential)
        self.schedule_refresh()
        return credential

    def schedule_refresh(self) -> None:
        if self._credential is None:
            self._schedule.cancel()
            return
        age = self._credential.age(self._clock())
        self._schedule.reset(self.refresh_interval - age)
        LOGGER.debug("Token refresh scheduled in %.0fs", self.refresh_interval - age)

    async def refresh(self) -> Credential:
        ticket = self._ticket
        if ticket is None:
            task = asyncio.get_running_loop().create_task(self._perform_refresh())
            ticket = RefreshTicket(task, started_at=self._clock())
            task.add_done_callback(self._release_ticket)
            self._ticket = ticket
        return await ticket.wait()

    def _release_ticket(self, task: asyncio.Task) -> None:
        if self._ticket is not None and self._ticket.task is task:
            self._ticket = None
        if not task.cancelled():
            # Waiters see the outcome through shield; this marks it retrieved.
            task.exception()

    async def _perform_refresh(self) -> Credential:
        epoch = self._epoch
        previous_state = self._state
        self._state = SessionState.REFRESHING

        try:
            token = await self._refresh_fn()
        except asyncio.CancelledError:
            if epoch == self._epoch:
                self._state = previous_state
            raise
        except Exception as error:
            LOGGER.warning("Token refresh failed: %s", error)
            if epoch == self._epoch:
                # Waiters learn of the failure now; the provider hears about it later.
                self.invalidate()
                self._start_background(self._notify_provider_logout())
            if isinstance(error, TokenError):
                raise
            raise TokenError(f"Token refresh failed: {error}") from error

        if epoch != self._epoch:
            raise TokenError("Session ended while the token refresh was in flight.")

        previous = self._credential.aux_claims if self._credential else AuxClaims()
        credential = self.set_credential(token.access_token, previous.merged(token.aux_claims))
        LOGGER.info("Access token refreshed")
        return credential

    def invalidate(self) -> None:
        """Drop the local session without contacting the identity provider."""
        self._epoch += 1
        self._schedule.cancel()
        self._credential = None
        self._state = SessionState.UNAUTHENTICATED
        self._store.clear()
        LOGGER.info("Local session cleared")

    async def logout(self) -> None:
        self.invalidate()
        await self._notify_provider_logout()

    async def _notify_provider_logout(self) -> None:
        try:
            await self._logout_fn()
        except Exception as error:
            LOGGER.warning("Identity provider logout failed; local session already cleared: %s", error)

    def _start_background(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- process lifecycle -----------------------------------------------------

    async def bootstrap(self) -> bool:
        try:
            stored = self._store.load()
        except (RuntimeError, ValueError) as error:
            LOGGER.warning("Discarding unreadable stored credential: %s", error)
            self._store.clear()
            stored = None

        if stored is None:
            self._state = SessionState.UNAUTHENTICATED
            return False

        self._credential = stored
        if stored.age(self._clock()) < self.freshness_seconds:
            self._state = SessionState.AUTHENTICATED
            self.schedule_refresh()
            LOGGER.info("Restored recent access token from storage")
            return True

        LOGGER.info("Stored access token is stale; attempting refresh")
        try:
            await self.refresh()
        except AuthError as error:
            LOGGER.info("Silent login failed: %s", error)
            return False
        return True

    async def dispose(self) -> None:
        self._schedule.cancel()
        ticket = self._ticket
        if ticket is not None and not ticket.task.done():
            ticket.task.cancel()
            await asyncio.gather(ticket.task, return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
