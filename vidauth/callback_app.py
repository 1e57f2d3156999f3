from __future__ import annotations

import logging

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .errors import AuthFlowError, TokenError
from .login import LoginFlow

LOGGER = logging.getLogger("vidauth")


def _error(code: str, description: str, status_code: int) -> Response:
    return JSONResponse(
        {"error": code, "error_description": description},
        status_code=status_code,
    )


def create_callback_app(login: LoginFlow, *, path: str = "/callback", on_complete=None) -> Starlette:
    """ASGI app that receives the provider redirect for a loopback redirect URI.

    ``on_complete`` is called with the new credential (or ``None`` on failure)
    once a callback has been handled, so a caller can stop serving.
    """

    async def callback_route(request: Request) -> Response:
        params = request.query_params
        try:
            credential = await login.complete(
                params.get("code"),
                params.get("state"),
                error=params.get("error"),
                error_description=params.get("error_description"),
            )
        except AuthFlowError as error:
            LOGGER.warning("Authorization callback rejected: %s", error)
            if on_complete is not None:
                on_complete(None)
            return _error(type(error).__name__, str(error), 400)
        except TokenError as error:
            LOGGER.warning("Authorization code exchange failed: %s", error)
            if on_complete is not None:
                on_complete(None)
            return _error("token_exchange_failed", str(error), 502)
        except Exception:
            LOGGER.exception("Authorization callback failed")
            if on_complete is not None:
                on_complete(None)
            return _error("server_error", "The login could not be completed.", 500)

        LOGGER.info("Authorization callback completed")
        if on_complete is not None:
            on_complete(credential)
        return JSONResponse(
            {
                "status": "authenticated",
                "user_id": credential.aux_claims.user_id,
            }
        )

    async def health_route(request: Request) -> Response:
        del request
        return JSONResponse({"status": "ok", "session": login.session.state.value})

    return Starlette(
        routes=[
            Route(path, callback_route, methods=["GET"]),
            Route("/health", health_route, methods=["GET"]),
        ]
    )
