import pytest

_CREDENTIAL_ENV = (
    "PRINTER_ADDR",
    "GITHUB_PAT",
    "BSKY_IDENTIFIER",
    "BSKY_PASSWORD",
    "TWITCH_OAUTH_TOKEN",
    "TWITCH_CLIENT_ID",
    "TWITCH_BROADCASTER_IDS",
    "NOTIFI_CONFIG_PATH",
)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring a real printer or live upstream services")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep a developer's real credentials out of unit tests."""
    for name in _CREDENTIAL_ENV:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def config_file(tmp_path):
    """Write a YAML config into a temporary directory and return its path."""

    def _write(text: str):
        path = tmp_path / "config.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    return _write
