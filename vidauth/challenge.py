from __future__ import annotations

import logging
import time

import httpx

from . import pkce
from .errors import AuthFlowError, MissingVerifier, ProviderError, StateMismatch
from .models import PKCEChallenge, PKCEFlowState
from .storage import FlowStateStore

LOGGER = logging.getLogger("vidauth")


class PKCEChallengeManager:
    """Runs the browser half of the Authorization Code + PKCE flow.

    Each login attempt persists one ``PKCEFlowState``. The state is single-use:
    ``consume_callback`` removes it before doing anything else, so a replayed
    or failed callback always finds nothing left behind.
    """

    def __init__(
        self,
        config: pkce.ProviderConfig,
        flow_store: FlowStateStore,
        *,
        client: httpx.AsyncClient | None = None,
        flow_ttl_seconds: int = 600,
        exchange_code_fn=pkce.exchange_code,
        clock=time.time,
    ) -> None:
        self.config = config
        self.flow_store = flow_store
        self.flow_ttl_seconds = flow_ttl_seconds
        self._client = client
        self._exchange_code_fn = exchange_code_fn
        self._clock = clock

    def generate_challenge(self) -> PKCEChallenge:
        verifier = pkce.generate_code_verifier()
        return PKCEChallenge(
            code_verifier=verifier,
            code_challenge=pkce.generate_code_challenge(verifier),
            state=pkce.generate_state(),
        )

    def build_authorization_url(self) -> str:
        challenge = self.generate_challenge()
        self.flow_store.save(
            PKCEFlowState(
                code_verifier=challenge.code_verifier,
                state=challenge.state,
                created_at=self._clock(),
            )
        )
        LOGGER.info("Starting authorization flow for client %s", self.config.client_id)
        return pkce.build_authorization_url(
            self.config,
            state=challenge.state,
            code_challenge=challenge.code_challenge,
        )

    async def consume_callback(
        self,
        code: str | None,
        state: str | None,
        *,
        error: str | None = None,
        error_description: str | None = None,
    ) -> pkce.TokenResponse:
        try:
            flow = self.flow_store.pop()
        except (RuntimeError, ValueError) as read_error:
            # The store has already dropped the unreadable record.
            LOGGER.warning("Discarding unreadable flow state: %s", read_error)
            flow = None

        if error:
            raise ProviderError(error, error_description)
        if flow is None or not flow.code_verifier:
            raise MissingVerifier()
        if self._clock() - flow.created_at > self.flow_ttl_seconds:
            raise MissingVerifier("Code verifier expired; start the login again.")
        if state != flow.state:
            raise StateMismatch()
        if not code:
            raise AuthFlowError("Missing authorization code.")

        return await self._exchange_code_fn(
            self.config,
            code,
            flow.code_verifier,
            client=self._client,
        )
