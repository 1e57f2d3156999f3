from __future__ import annotations

import argparse
import asyncio
import contextlib
import functools
import json
import signal
import sys
from dataclasses import dataclass

import httpx
import uvicorn

from vidauth import pkce
from vidauth.callback_app import create_callback_app
from vidauth.challenge import PKCEChallengeManager
from vidauth.login import LoginFlow
from vidauth.session import SessionManager
from vidauth.storage import FileCredentialStore, FileFlowStateStore
from vidauth.urls import callback_bind_address
from vidup.constants import APP_VERSION, LOGGER
from vidup.env import Settings, load_env, load_settings, setup_logging, validate_env
from vidup.errors import AuthenticationFailed, ValidationError, VidupError
from vidup.http import AuthenticatedRequestClient, build_http_client, log_request, log_response
from vidup.upload import UploadOrchestrator, UploadState, VideoFile, VideoMetadata
from vidup.videos import VideoCatalog


@dataclass
class Services:
    settings: Settings
    provider_client: httpx.AsyncClient
    api_client: httpx.AsyncClient
    session: SessionManager
    challenges: PKCEChallengeManager
    login: LoginFlow
    requests: AuthenticatedRequestClient
    uploads: UploadOrchestrator
    videos: VideoCatalog

    async def aclose(self) -> None:
        await self.session.dispose()
        await self.api_client.aclose()
        await self.provider_client.aclose()


def create_services(settings: Settings | None = None, *, debug: bool = False) -> Services:
    settings = settings or load_settings()
    provider = settings.provider

    # One client for the identity provider so its cookie jar carries the refresh cookie.
    provider_client = httpx.AsyncClient(
        timeout=settings.timeout,
        event_hooks={"request": [log_request], "response": [log_response]} if debug else {},
    )
    session = SessionManager(
        FileCredentialStore(settings.credentials_path),
        refresh_fn=functools.partial(pkce.refresh_access_token, provider, client=provider_client),
        logout_fn=functools.partial(pkce.revoke_session, provider, client=provider_client),
        token_lifetime_seconds=settings.token_lifetime_seconds,
        freshness_seconds=settings.token_freshness_seconds,
    )
    challenges = PKCEChallengeManager(
        provider,
        FileFlowStateStore(settings.flow_state_path),
        client=provider_client,
    )
    api_client = build_http_client(
        settings.api_base_url,
        timeout=settings.timeout,
        max_retries=settings.max_retries,
        debug=debug,
    )
    requests = AuthenticatedRequestClient(session, api_client)
    return Services(
        settings=settings,
        provider_client=provider_client,
        api_client=api_client,
        session=session,
        challenges=challenges,
        login=LoginFlow(challenges, session),
        requests=requests,
        uploads=UploadOrchestrator(requests),
        videos=VideoCatalog(requests),
    )


async def run_login(services: Services) -> int:
    if await services.session.bootstrap():
        print("Already logged in.")
        return 0

    host, port, path = callback_bind_address(services.settings.provider.redirect_uri)
    finished = asyncio.Event()
    outcome: dict = {}

    def on_complete(credential) -> None:
        outcome["credential"] = credential
        finished.set()

    app = create_callback_app(services.login, path=path, on_complete=on_complete)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))

    print("Open this URL in your browser to log in:")
    print(services.login.start())

    serve_task = asyncio.create_task(server.serve())
    wait_task = asyncio.create_task(finished.wait())
    await asyncio.wait({serve_task, wait_task}, return_when=asyncio.FIRST_COMPLETED)
    server.should_exit = True
    wait_task.cancel()
    await asyncio.gather(serve_task, wait_task, return_exceptions=True)

    credential = outcome.get("credential")
    if credential is None:
        print("Login failed.", file=sys.stderr)
        return 1
    print(f"Logged in (user: {credential.aux_claims.user_id or 'unknown'}).")
    return 0


async def run_upload(services: Services, path: str, title: str, description: str) -> int:
    if not await services.session.bootstrap():
        print("Not logged in. Run `login` first.", file=sys.stderr)
        return 1

    loop = asyncio.get_running_loop()
    uploads = services.uploads

    def on_upload_id(upload_id: str) -> None:
        print(f"Upload id: {upload_id} (Ctrl-C to cancel)")
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, uploads.cancel, upload_id)

    def on_progress(percent: int) -> None:
        print(f"Overall progress: {percent}%")

    def on_chunk_progress(part_number: int, percent: int, chunk_count: int) -> None:
        if percent == 100:
            print(f"Part {part_number}/{chunk_count} sent")

    try:
        result = await uploads.upload_video(
            VideoFile.from_path(path),
            VideoMetadata(title=title, description=description),
            on_progress,
            on_chunk_progress,
            on_upload_id,
        )
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)

    if result.state is UploadState.ABORTED:
        print("Upload cancelled.")
        return 130
    print(json.dumps(result.resource, indent=2))
    return 0


async def run_status(services: Services, upload_id: str) -> int:
    if not await services.session.bootstrap():
        print("Not logged in. Run `login` first.", file=sys.stderr)
        return 1
    print(json.dumps(await services.uploads.status(upload_id), indent=2))
    return 0


async def run_videos(services: Services) -> int:
    if not await services.session.bootstrap():
        print("Not logged in. Run `login` first.", file=sys.stderr)
        return 1
    print(json.dumps(await services.videos.list_user_videos(), indent=2))
    return 0


async def run_logout(services: Services) -> int:
    await services.session.logout()
    print("Logged out.")
    return 0


SESSION_NOTE = (
    "The refresh cookie issued at login is kept in memory only. Later commands "
    "reuse the stored access token while it is younger than VIDUP_TOKEN_FRESHNESS "
    "seconds; after that, run `login` again."
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vidup",
        description="Video upload client.",
        epilog=SESSION_NOTE,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("login", help="Log in through the browser.", epilog=SESSION_NOTE)
    commands.add_parser("logout", help="Log out and clear the stored credential.")
    commands.add_parser("videos", help="List your uploaded videos.")

    upload = commands.add_parser("upload", help="Upload a video file.")
    upload.add_argument("path")
    upload.add_argument("--title", required=True)
    upload.add_argument("--description", default="")

    status = commands.add_parser("status", help="Show progress of a multipart upload.")
    status.add_argument("upload_id")
    return parser


async def run(args: argparse.Namespace, *, debug: bool) -> int:
    services = create_services(debug=debug)
    try:
        if args.command == "login":
            return await run_login(services)
        if args.command == "logout":
            return await run_logout(services)
        if args.command == "upload":
            return await run_upload(services, args.path, args.title, args.description)
        if args.command == "status":
            return await run_status(services, args.upload_id)
        return await run_videos(services)
    except ValidationError as error:
        print(f"Invalid upload: {error}", file=sys.stderr)
        return 2
    except OSError as error:
        print(f"Error: {error}", file=sys.stderr)
        return 2
    except AuthenticationFailed as error:
        print(f"{error} Run `login` again.", file=sys.stderr)
        return 1
    except VidupError as error:
        LOGGER.debug("Command failed", exc_info=True)
        suffix = " You can retry." if error.retryable else ""
        print(f"Request failed: {error}{suffix}", file=sys.stderr)
        return 1
    finally:
        await services.aclose()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_env()
    debug_enabled = setup_logging()
    validate_env()
    return asyncio.run(run(args, debug=debug_enabled))


if __name__ == "__main__":
    sys.exit(main())
