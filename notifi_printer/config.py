"""Notifi-printer configuration loading."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from notifi_printer.printer.dispatcher import parse_printer_addr

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Public client id of the Twitch TMI token generator (https://twitchapps.com/tmi/).
DEFAULT_TWITCH_CLIENT_ID = "q6batx0epp608isickayubi39itsckt"
SOURCE_NAMES = ("github", "bsky", "twitch")


def _expand_env(value: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        return os.getenv(match.group(1), "")

    return _ENV_PATTERN.sub(_replace, value)


def _expand_tree(node: Any) -> Any:
    if isinstance(node, dict):
        return {k: _expand_tree(v) for k, v in node.items()}
    if isinstance(node, list):
        return [_expand_tree(v) for v in node]
    if isinstance(node, str):
        return _expand_env(node)
    return node


def _env(name: str) -> str:
    return (os.getenv(name) or "").strip()


def _id_list(raw: Any) -> list[str]:
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = [str(item) for item in raw]
    else:
        return []
    ids: list[str] = []
    for item in items:
        cleaned = item.strip()
        if cleaned and cleaned not in ids:
            ids.append(cleaned)
    return ids


@dataclass(slots=True)
class NotifiConfig:
    raw: dict[str, Any]

    def _section(self, name: str) -> dict[str, Any]:
        section = self.raw.get(name)
        return section if isinstance(section, dict) else {}

    @property
    def printer_addr(self) -> str:
        return _env("PRINTER_ADDR") or str(self._section("printer").get("addr") or "").strip()

    @property
    def queue_capacity(self) -> int:
        return max(1, int(self._section("printer").get("queue_capacity", 16)))

    def source_config(self, name: str) -> dict[str, Any]:
        sources = self._section("sources")
        cfg = sources.get(name)
        return dict(cfg) if isinstance(cfg, dict) else {}

    def source_enabled(self, name: str) -> bool:
        return bool(self.source_config(name).get("enabled", True))

    @property
    def enabled_sources(self) -> list[str]:
        return [name for name in SOURCE_NAMES if self.source_enabled(name)]

    @property
    def github_token(self) -> str:
        return _env("GITHUB_PAT") or str(self.source_config("github").get("token") or "").strip()

    @property
    def bsky_identifier(self) -> str:
        return _env("BSKY_IDENTIFIER") or str(self.source_config("bsky").get("identifier") or "").strip()

    @property
    def bsky_password(self) -> str:
        return _env("BSKY_PASSWORD") or str(self.source_config("bsky").get("password") or "").strip()

    @property
    def twitch_oauth_token(self) -> str:
        return _env("TWITCH_OAUTH_TOKEN") or str(self.source_config("twitch").get("oauth_token") or "").strip()

    @property
    def twitch_client_id(self) -> str:
        return (
            _env("TWITCH_CLIENT_ID")
            or str(self.source_config("twitch").get("client_id") or "").strip()
            or DEFAULT_TWITCH_CLIENT_ID
        )

    @property
    def twitch_broadcaster_ids(self) -> list[str]:
        override = _env("TWITCH_BROADCASTER_IDS")
        if override:
            return _id_list(override)
        return _id_list(self.source_config("twitch").get("broadcaster_ids"))

    def github_settings(self) -> dict[str, Any]:
        return {**self.source_config("github"), "token": self.github_token}

    def bsky_settings(self) -> dict[str, Any]:
        return {
            **self.source_config("bsky"),
            "identifier": self.bsky_identifier,
            "password": self.bsky_password,
        }

    def twitch_settings(self) -> dict[str, Any]:
        return {
            **self.source_config("twitch"),
            "oauth_token": self.twitch_oauth_token,
            "client_id": self.twitch_client_id,
            "broadcaster_ids": self.twitch_broadcaster_ids,
        }

    def printer_problems(self) -> list[str]:
        if not self.printer_addr:
            return ["printer address missing (set PRINTER_ADDR or printer.addr)"]
        try:
            parse_printer_addr(self.printer_addr)
        except ValueError as exc:
            return [str(exc)]
        return []

    def validate(self) -> list[str]:
        problems = self.printer_problems()
        if self.source_enabled("github") and not self.github_token:
            problems.append("github enabled but GITHUB_PAT is not set")
        if self.source_enabled("bsky"):
            if not self.bsky_identifier:
                problems.append("bsky enabled but BSKY_IDENTIFIER is not set")
            if not self.bsky_password:
                problems.append("bsky enabled but BSKY_PASSWORD is not set")
        if self.source_enabled("twitch"):
            if not self.twitch_oauth_token:
                problems.append("twitch enabled but TWITCH_OAUTH_TOKEN is not set")
            if not self.twitch_broadcaster_ids:
                problems.append("twitch enabled but no broadcaster ids configured (TWITCH_BROADCASTER_IDS)")
        return problems


def load_config(config_path: str | None = None) -> NotifiConfig:
    path = Path(config_path or os.getenv("NOTIFI_CONFIG_PATH") or "config/config.yaml")
    if not path.exists():
        return NotifiConfig(raw={})
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid YAML in config file {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"config file must parse to object: {path}")
    return NotifiConfig(raw=_expand_tree(payload))
