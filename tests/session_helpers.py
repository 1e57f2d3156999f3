import asyncio

from vidauth.errors import TokenError
from vidauth.pkce import TokenResponse
from vidauth.session import SessionManager
from vidauth.storage import MemoryCredentialStore


class BlockingSleep:
    """Stands in for asyncio.sleep; records delays and blocks until cancelled."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self.pending = 0

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.pending += 1
        try:
            await asyncio.Event().wait()
        finally:
            self.pending -= 1


class RefreshRecorder:
    def __init__(self, tokens: list[str] | None = None, *, fail: bool = False, **claims) -> None:
        self.tokens = tokens or ["refreshed-token"]
        self.fail = fail
        self.claims = claims
        self.calls = 0
        self.started = asyncio.Event()

    async def __call__(self) -> TokenResponse:
        self.calls += 1
        self.started.set()
        # Give concurrent callers a chance to pile up on the same ticket.
        await asyncio.sleep(0.01)
        if self.fail:
            raise TokenError("Token refresh failed with status 401: invalid_grant", status_code=401)
        token = self.tokens[min(self.calls, len(self.tokens)) - 1]
        return TokenResponse(access_token=token, **self.claims)


class LogoutRecorder:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0

    async def __call__(self) -> None:
        self.calls += 1
        if self.error is not None:
            raise self.error


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def build_session(
    *,
    store=None,
    refresh_fn=None,
    logout_fn=None,
    clock=None,
    sleep=None,
    **kwargs,
):
    store = store if store is not None else MemoryCredentialStore()
    refresh_fn = refresh_fn or RefreshRecorder()
    logout_fn = logout_fn or LogoutRecorder()
    session = SessionManager(
        store,
        refresh_fn=refresh_fn,
        logout_fn=logout_fn,
        clock=clock or FakeClock(),
        sleep=sleep or BlockingSleep(),
        **kwargs,
    )
    return session, store, refresh_fn, logout_fn
