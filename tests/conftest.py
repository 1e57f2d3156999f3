import pytest

from vidauth.pkce import ProviderConfig


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        api_base_url="http://localhost:8080",
        client_id="public-client",
        redirect_uri="http://localhost:8765/callback",
        scope="openid profile",
    )


@pytest.fixture
def make_video(tmp_path):
    def _make(size: int, name: str = "clip.mp4", mime_type: str | None = "video/mp4"):
        from vidup.upload import VideoFile

        path = tmp_path / name
        pattern = bytes(range(256))
        path.write_bytes((pattern * (size // len(pattern) + 1))[:size])
        return VideoFile.from_path(path, mime_type=mime_type)

    return _make
