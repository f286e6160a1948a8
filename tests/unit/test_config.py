from __future__ import annotations

import pytest

from notifi_printer.config import DEFAULT_TWITCH_CLIENT_ID, NotifiConfig, load_config


def test_missing_config_file_yields_empty_config(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"))

    assert config.raw == {}
    assert config.queue_capacity == 16
    assert config.enabled_sources == ["github", "bsky", "twitch"]


def test_env_placeholders_are_expanded(monkeypatch, config_file):
    monkeypatch.setenv("MY_PRINTER", "10.0.0.9:9100")
    path = config_file(
        """
printer:
  addr: ${MY_PRINTER}
  queue_capacity: 4
sources:
  github:
    token: ${UNSET_VARIABLE_FOR_TEST}
"""
    )

    config = load_config(str(path))

    assert config.printer_addr == "10.0.0.9:9100"
    assert config.queue_capacity == 4
    assert config.github_token == ""


def test_environment_overrides_file_values(monkeypatch, config_file):
    path = config_file(
        """
printer:
  addr: file-host:9100
sources:
  twitch:
    oauth_token: from-file
    broadcaster_ids: [111, "222"]
"""
    )
    monkeypatch.setenv("NOTIFI_CONFIG_PATH", str(path))
    monkeypatch.setenv("PRINTER_ADDR", "env-host:9100")
    monkeypatch.setenv("TWITCH_BROADCASTER_IDS", " 333, 444 ,333,, ")

    config = load_config()

    assert config.printer_addr == "env-host:9100"
    assert config.twitch_oauth_token == "from-file"
    assert config.twitch_broadcaster_ids == ["333", "444"]
    assert config.twitch_client_id == DEFAULT_TWITCH_CLIENT_ID


def test_file_broadcaster_ids_accept_numbers():
    config = NotifiConfig(raw={"sources": {"twitch": {"broadcaster_ids": [111, "222", 111]}}})

    assert config.twitch_broadcaster_ids == ["111", "222"]
    assert config.twitch_settings()["broadcaster_ids"] == ["111", "222"]


def test_validate_reports_missing_credentials_for_enabled_sources():
    config = NotifiConfig(raw={"sources": {"bsky": {"enabled": False}}})

    problems = config.validate()

    assert any("printer address" in p for p in problems)
    assert any("GITHUB_PAT" in p for p in problems)
    assert any("TWITCH_OAUTH_TOKEN" in p for p in problems)
    assert any("broadcaster ids" in p for p in problems)
    assert not any("BSKY" in p for p in problems)
    assert config.enabled_sources == ["github", "twitch"]


def test_validate_passes_with_complete_environment(monkeypatch):
    for name, value in {
        "PRINTER_ADDR": "printer.local",
        "GITHUB_PAT": "ghp_x",
        "BSKY_IDENTIFIER": "me.bsky.social",
        "BSKY_PASSWORD": "app-pass",
        "TWITCH_OAUTH_TOKEN": "oauth:abc",
        "TWITCH_BROADCASTER_IDS": "12345",
    }.items():
        monkeypatch.setenv(name, value)

    assert NotifiConfig(raw={}).validate() == []


def test_invalid_yaml_raises_value_error(config_file):
    path = config_file("printer: [unclosed\n")

    with pytest.raises(ValueError, match="invalid YAML"):
        load_config(str(path))


def test_non_mapping_config_is_rejected(config_file):
    path = config_file("- just\n- a list\n")

    with pytest.raises(ValueError, match="must parse to object"):
        load_config(str(path))


@pytest.mark.parametrize("addr", ["printer.local:notaport", "printer.local:70000", ":9100"])
def test_validate_rejects_unusable_printer_address(monkeypatch, addr):
    monkeypatch.setenv("PRINTER_ADDR", addr)
    config = NotifiConfig(raw={"sources": {name: {"enabled": False} for name in ("github", "bsky", "twitch")}})

    problems = config.validate()

    assert len(problems) == 1
    assert addr in problems[0]
