from __future__ import annotations

import urllib.parse

CALLBACK_PARAMS = ("code", "state", "error", "error_description")


def is_loopback_redirect_uri(uri: str) -> bool:
    parsed = urllib.parse.urlparse(uri)
    if parsed.scheme != "http":
        return False
    if parsed.hostname not in {"localhost", "127.0.0.1"}:
        return False
    if not parsed.port:
        return False
    return bool(parsed.path)


def callback_bind_address(redirect_uri: str) -> tuple[str, int, str]:
    if not is_loopback_redirect_uri(redirect_uri):
        raise RuntimeError(
            "Redirect URI must be a loopback http URL with an explicit port and path "
            "(for example: http://localhost:8765/callback)."
        )
    parsed = urllib.parse.urlparse(redirect_uri)
    return parsed.hostname or "localhost", parsed.port or 0, parsed.path


def parse_callback_params(url: str) -> dict[str, str | None]:
    parsed = urllib.parse.urlparse(url)
    query = urllib.parse.parse_qs(parsed.query, keep_blank_values=True)
    return {name: query[name][0] if name in query else None for name in CALLBACK_PARAMS}
