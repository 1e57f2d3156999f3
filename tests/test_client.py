import pytest

import client
from vidup.env import load_settings


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv("VIDUP_CREDENTIALS_PATH", str(tmp_path / "credentials.json"))
    monkeypatch.setenv("VIDUP_FLOW_STATE_PATH", str(tmp_path / "flow.json"))
    monkeypatch.delenv("VIDUP_API_BASE_URL", raising=False)
    return load_settings()


def test_parser_upload_arguments() -> None:
    args = client.build_parser().parse_args(["upload", "clip.mp4", "--title", "Clip"])

    assert args.command == "upload"
    assert args.path == "clip.mp4"
    assert args.title == "Clip"
    assert args.description == ""


def test_parser_requires_command() -> None:
    with pytest.raises(SystemExit):
        client.build_parser().parse_args([])


def test_parser_upload_requires_title() -> None:
    with pytest.raises(SystemExit):
        client.build_parser().parse_args(["upload", "clip.mp4"])


@pytest.mark.asyncio
async def test_create_services_wires_one_session(settings) -> None:
    services = client.create_services(settings)

    assert services.login.session is services.session
    assert services.challenges.flow_store is not None
    assert services.api_client.base_url.host == "localhost"
    assert services.api_client.base_url.port == 8080
    assert services.session.refresh_interval == 270
    await services.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("command", ["videos", "status"])
async def test_commands_require_login(settings, command, capsys) -> None:
    services = client.create_services(settings)

    if command == "videos":
        code = await client.run_videos(services)
    else:
        code = await client.run_status(services, "upload-1")
    await services.aclose()

    assert code == 1
    assert "Not logged in" in capsys.readouterr().err


def test_help_explains_session_lifetime() -> None:
    help_text = " ".join(client.build_parser().format_help().split())

    assert "VIDUP_TOKEN_FRESHNESS" in help_text
    assert "run `login` again" in help_text
