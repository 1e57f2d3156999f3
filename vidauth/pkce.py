from __future__ import annotations

import base64
import hashlib
import secrets
import string
import urllib.parse
from dataclasses import dataclass

import httpx

from .errors import TokenError
from .models import AuxClaims

UNRESERVED_CHARACTERS = string.ascii_letters + string.digits + "-._~"
CODE_VERIFIER_LENGTH = 128


@dataclass
class ProviderConfig:
    api_base_url: str = "http://localhost:8080"
    client_id: str = "public-client"
    redirect_uri: str = "http://localhost:8765/callback"
    scope: str = "openid profile"
    authorization_endpoint: str = "/oauth2/authorize"
    token_endpoint: str = "/oauth2/token"
    logout_endpoint: str = "/oauth2/logout"

    def url_for(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.api_base_url.rstrip('/')}{endpoint}"

    @property
    def token_url(self) -> str:
        return self.url_for(self.token_endpoint)

    @property
    def logout_url(self) -> str:
        return self.url_for(self.logout_endpoint)


@dataclass
class TokenResponse:
    access_token: str
    id_token: str | None = None
    user_info: dict | None = None
    user_id: str | None = None

    @property
    def aux_claims(self) -> AuxClaims:
        return AuxClaims(user_id=self.user_id, id_token=self.id_token, user_info=self.user_info)

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenResponse":
        if not isinstance(payload, dict):
            raise TokenError("Token response must be a JSON object.")

        access_token = payload.get("access_token")
        id_token = payload.get("id_token")
        user_info = payload.get("user_info")
        user_id = payload.get("user_id")

        if not isinstance(access_token, str) or not access_token:
            raise TokenError("Token response missing access_token.")
        if id_token is not None and not isinstance(id_token, str):
            raise TokenError("Token response id_token must be a string.")
        if user_info is not None and not isinstance(user_info, dict):
            raise TokenError("Token response user_info must be an object.")
        if user_id is not None:
            user_id = str(user_id)

        return cls(
            access_token=access_token,
            id_token=id_token,
            user_info=user_info,
            user_id=user_id,
        )


def generate_code_verifier(length: int = CODE_VERIFIER_LENGTH) -> str:
    if not 43 <= length <= 128:
        raise ValueError("PKCE code verifier length must be between 43 and 128.")
    return "".join(secrets.choice(UNRESERVED_CHARACTERS) for _ in range(length))


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    return secrets.token_urlsafe(24)


def build_authorization_url(config: ProviderConfig, state: str, code_challenge: str) -> str:
    query = {
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "scope": config.scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{config.url_for(config.authorization_endpoint)}?{urllib.parse.urlencode(query)}"


async def _token_request(
    config: ProviderConfig,
    payload: dict[str, str],
    *,
    action: str,
    client: httpx.AsyncClient | None = None,
) -> TokenResponse:
    own_client = client is None
    http_client = client or httpx.AsyncClient()

    try:
        response = await http_client.post(config.token_url, data=payload)
        response.raise_for_status()
        body = response.json()
    except httpx.HTTPStatusError as error:
        raise TokenError(
            f"Token {action} failed with status {error.response.status_code}: "
            f"{error.response.text}",
            status_code=error.response.status_code,
        ) from error
    except httpx.TransportError as error:
        raise TokenError(f"Token {action} failed: {error}") from error
    except ValueError as error:
        raise TokenError(f"Token {action} returned invalid JSON.") from error
    finally:
        if own_client:
            await http_client.aclose()

    return TokenResponse.from_payload(body)


async def exchange_code(
    config: ProviderConfig,
    code: str,
    code_verifier: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> TokenResponse:
    return await _token_request(
        config,
        {
            "grant_type": "authorization_code",
            "client_id": config.client_id,
            "code": code,
            "redirect_uri": config.redirect_uri,
            "code_verifier": code_verifier,
        },
        action="exchange",
        client=client,
    )


async def refresh_access_token(
    config: ProviderConfig,
    *,
    client: httpx.AsyncClient | None = None,
) -> TokenResponse:
    # The refresh credential travels as an HTTP-only cookie in the client's jar.
    return await _token_request(
        config,
        {
            "grant_type": "refresh_token",
            "client_id": config.client_id,
        },
        action="refresh",
        client=client,
    )


async def revoke_session(
    config: ProviderConfig,
    *,
    client: httpx.AsyncClient | None = None,
) -> None:
    own_client = client is None
    http_client = client or httpx.AsyncClient()

    try:
        response = await http_client.post(config.logout_url)
        response.raise_for_status()
    except httpx.HTTPStatusError as error:
        raise TokenError(
            f"Logout failed with status {error.response.status_code}.",
            status_code=error.response.status_code,
        ) from error
    except httpx.TransportError as error:
        raise TokenError(f"Logout failed: {error}") from error
    finally:
        if own_client:
            await http_client.aclose()
