import string
import urllib.parse

import pytest

from vidauth.errors import TokenError
from vidauth.pkce import (
    TokenResponse,
    build_authorization_url,
    exchange_code,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
    refresh_access_token,
    revoke_session,
)

TOKEN_URL = "http://localhost:8080/oauth2/token"
LOGOUT_URL = "http://localhost:8080/oauth2/logout"


def _form(request) -> dict[str, str]:
    return dict(urllib.parse.parse_qsl(request.content.decode()))


def test_code_verifier_length() -> None:
    assert len(generate_code_verifier()) >= 128


def test_code_verifier_uses_unreserved_alphabet() -> None:
    allowed = set(string.ascii_letters + string.digits + "-._~")

    for _ in range(20):
        assert set(generate_code_verifier()) <= allowed


def test_code_verifiers_are_unique() -> None:
    assert generate_code_verifier() != generate_code_verifier()


def test_code_verifier_rejects_out_of_range_length() -> None:
    with pytest.raises(ValueError):
        generate_code_verifier(42)


def test_code_challenge_is_s256() -> None:
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

    assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_code_challenge_has_no_padding() -> None:
    for _ in range(20):
        challenge = generate_code_challenge(generate_code_verifier())
        assert "=" not in challenge
        assert len(challenge) == 43


def test_state_is_random() -> None:
    assert generate_state() != generate_state()


def test_build_authorization_url_contains_required_params(provider_config) -> None:
    url = build_authorization_url(provider_config, state="state123", code_challenge="challenge123")

    parsed = urllib.parse.urlparse(url)
    query = urllib.parse.parse_qs(parsed.query)

    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "http://localhost:8080/oauth2/authorize"
    assert query["response_type"] == ["code"]
    assert query["client_id"] == ["public-client"]
    assert query["redirect_uri"] == ["http://localhost:8765/callback"]
    assert query["scope"] == ["openid profile"]
    assert query["state"] == ["state123"]
    assert query["code_challenge"] == ["challenge123"]
    assert query["code_challenge_method"] == ["S256"]


@pytest.mark.asyncio
async def test_exchange_code_success(httpx_mock, provider_config) -> None:
    httpx_mock.add_response(
        url=TOKEN_URL,
        method="POST",
        json={
            "access_token": "access-1",
            "id_token": "id-1",
            "user_id": 42,
            "user_info": {"sub": "42", "name": "Ada"},
        },
    )

    token = await exchange_code(provider_config, "code123", "verifier123")

    assert token.access_token == "access-1"
    assert token.id_token == "id-1"
    assert token.user_id == "42"
    assert token.user_info == {"sub": "42", "name": "Ada"}

    form = _form(httpx_mock.get_request())
    assert form == {
        "grant_type": "authorization_code",
        "client_id": "public-client",
        "code": "code123",
        "redirect_uri": "http://localhost:8765/callback",
        "code_verifier": "verifier123",
    }


@pytest.mark.asyncio
async def test_exchange_code_error(httpx_mock, provider_config) -> None:
    httpx_mock.add_response(url=TOKEN_URL, method="POST", status_code=400, text="invalid_grant")

    with pytest.raises(TokenError, match="Token exchange failed") as error:
        await exchange_code(provider_config, "bad-code", "verifier123")

    assert error.value.status_code == 400


@pytest.mark.asyncio
async def test_refresh_sends_only_client_id(httpx_mock, provider_config) -> None:
    httpx_mock.add_response(url=TOKEN_URL, method="POST", json={"access_token": "access-2"})

    token = await refresh_access_token(provider_config)

    assert token.access_token == "access-2"
    assert token.id_token is None
    assert _form(httpx_mock.get_request()) == {
        "grant_type": "refresh_token",
        "client_id": "public-client",
    }


@pytest.mark.asyncio
async def test_refresh_error(httpx_mock, provider_config) -> None:
    httpx_mock.add_response(url=TOKEN_URL, method="POST", status_code=401, text="expired")

    with pytest.raises(TokenError, match="Token refresh failed"):
        await refresh_access_token(provider_config)


@pytest.mark.asyncio
async def test_refresh_missing_access_token(httpx_mock, provider_config) -> None:
    httpx_mock.add_response(url=TOKEN_URL, method="POST", json={"id_token": "only"})

    with pytest.raises(TokenError, match="missing access_token"):
        await refresh_access_token(provider_config)


@pytest.mark.asyncio
async def test_revoke_session_posts_to_logout(httpx_mock, provider_config) -> None:
    httpx_mock.add_response(url=LOGOUT_URL, method="POST", status_code=200)

    await revoke_session(provider_config)

    assert httpx_mock.get_request().method == "POST"


@pytest.mark.asyncio
async def test_revoke_session_error(httpx_mock, provider_config) -> None:
    httpx_mock.add_response(url=LOGOUT_URL, method="POST", status_code=503)

    with pytest.raises(TokenError, match="Logout failed"):
        await revoke_session(provider_config)


def test_token_response_rejects_non_object() -> None:
    with pytest.raises(TokenError):
        TokenResponse.from_payload(["access_token"])


def test_token_response_aux_claims() -> None:
    token = TokenResponse.from_payload({"access_token": "a", "user_id": "u-1"})

    assert token.aux_claims.user_id == "u-1"
    assert token.aux_claims.id_token is None
