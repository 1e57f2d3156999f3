from __future__ import annotations

from .challenge import PKCEChallengeManager
from .models import Credential
from .session import SessionManager
from .urls import parse_callback_params


class LoginFlow:
    def __init__(self, challenges: PKCEChallengeManager, session: SessionManager) -> None:
        self.challenges = challenges
        self.session = session

    def start(self) -> str:
        url = self.challenges.build_authorization_url()
        self.session.mark_authenticating()
        return url

    async def complete(
        self,
        code: str | None,
        state: str | None,
        *,
        error: str | None = None,
        error_description: str | None = None,
    ) -> Credential:
        try:
            token = await self.challenges.consume_callback(
                code,
                state,
                error=error,
                error_description=error_description,
            )
        except Exception:
            self.session.abandon_login()
            raise
        return self.session.set_credential(token.access_token, token.aux_claims)

    async def complete_from_url(self, url: str) -> Credential:
        params = parse_callback_params(url)
        return await self.complete(
            params["code"],
            params["state"],
            error=params["error"],
            error_description=params["error_description"],
        )
