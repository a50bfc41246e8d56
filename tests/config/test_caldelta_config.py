"""Tests for caldelta.toml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from caldelta.config import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_STALE_TIME_SECONDS,
    ConfigError,
    load_config,
    parse_config,
    resolve_env_vars,
)
from caldelta.models import ProviderId

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "caldelta.toml"
    path.write_text(content)
    return path


def _account(**overrides) -> dict:
    entry = {"id": "work", "provider": "google", "access_token": "tok"}
    entry.update(overrides)
    return entry


# ---------------------------------------------------------------------------
# resolve_env_vars
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_nested_values(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_TOKEN", "ya29")
        data = {"accounts": [{"access_token": "Bearer ${GOOGLE_TOKEN}", "n": 3}]}
        assert resolve_env_vars(data) == {"accounts": [{"access_token": "Bearer ya29", "n": 3}]}

    def test_missing_vars_reported_together(self, monkeypatch):
        monkeypatch.delenv("MISSING_A", raising=False)
        monkeypatch.delenv("MISSING_B", raising=False)
        with pytest.raises(ConfigError, match="MISSING_A, MISSING_B"):
            resolve_env_vars("${MISSING_A}/${MISSING_B}")

    def test_non_strings_pass_through(self):
        assert resolve_env_vars(None) is None
        assert resolve_env_vars(1.5) == 1.5
        assert resolve_env_vars(True) is True


# ---------------------------------------------------------------------------
# parse_config
# ---------------------------------------------------------------------------


class TestParseConfigDefaults:
    def test_empty_config(self):
        config = parse_config({})

        assert config.time_zone == "UTC"
        assert config.logging.level == "INFO"
        assert config.logging.format == "text"
        assert config.logging.log_root is None
        assert config.cache.stale_time_seconds == DEFAULT_STALE_TIME_SECONDS
        assert config.http.timeout_seconds == DEFAULT_HTTP_TIMEOUT_SECONDS
        assert config.accounts == []

    def test_sections(self):
        config = parse_config(
            {
                "caldelta": {
                    "time_zone": "Europe/Berlin",
                    "logging": {"level": "debug", "format": "JSON", "log_root": "logs"},
                    "cache": {"stale_time_seconds": 5},
                    "http": {"timeout_seconds": "2.5"},
                }
            }
        )

        assert config.time_zone == "Europe/Berlin"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.logging.log_root == "logs"
        assert config.cache.stale_time_seconds == 5.0
        assert config.http.timeout_seconds == 2.5


class TestParseConfigErrors:
    def test_invalid_time_zone(self):
        with pytest.raises(ConfigError, match="Invalid caldelta.time_zone"):
            parse_config({"caldelta": {"time_zone": "Mars/Olympus"}})

    def test_invalid_log_format(self):
        with pytest.raises(ConfigError, match="Expected 'text' or 'json'"):
            parse_config({"caldelta": {"logging": {"format": "xml"}}})

    @pytest.mark.parametrize("value", [0, -1])
    def test_non_positive_stale_time(self, value):
        with pytest.raises(ConfigError, match="Must be positive"):
            parse_config({"caldelta": {"cache": {"stale_time_seconds": value}}})

    def test_non_numeric_timeout(self):
        with pytest.raises(ConfigError, match="Must be a number"):
            parse_config({"caldelta": {"http": {"timeout_seconds": "soon"}}})

    def test_caldelta_not_a_table(self):
        with pytest.raises(ConfigError, match=r"\[caldelta\] must be a table"):
            parse_config({"caldelta": "nope"})


class TestAccounts:
    def test_static_token_account(self):
        config = parse_config({"accounts": [_account(provider=" Microsoft ", access_token=" t ")]})

        (account,) = config.accounts
        assert account.id == "work"
        assert account.provider is ProviderId.microsoft
        assert account.access_token == "t"
        assert account.oauth is None
        assert config.account("work") is account

    def test_oauth_account(self):
        entry = {
            "id": "work",
            "provider": "google",
            "oauth": {"client_id": "cid", "client_secret": "secret", "refresh_token": "rt"},
            "provider_account_id": "me@example.com",
        }

        (account,) = parse_config({"accounts": [entry]}).accounts

        assert account.oauth is not None
        assert account.oauth.refresh_token == "rt"
        assert account.provider_account_id == "me@example.com"

    def test_invalid_oauth_table(self):
        entry = _account(oauth={"client_id": "cid"})
        with pytest.raises(ConfigError, match=r"Invalid accounts\[0\].oauth"):
            parse_config({"accounts": [entry]})

    def test_needs_credentials(self):
        entry = _account()
        del entry["access_token"]
        with pytest.raises(ConfigError, match="needs either access_token"):
            parse_config({"accounts": [entry]})

    def test_unsupported_provider(self):
        with pytest.raises(ConfigError, match="Expected one of: google, microsoft"):
            parse_config({"accounts": [_account(provider="caldav")]})

    def test_blank_id(self):
        with pytest.raises(ConfigError, match=r"accounts\[0\].id"):
            parse_config({"accounts": [_account(id="  ")]})

    def test_duplicate_ids(self):
        with pytest.raises(ConfigError, match="Duplicate account id: 'work'"):
            parse_config({"accounts": [_account(), _account(provider="microsoft")]})

    def test_accounts_must_be_array(self):
        with pytest.raises(ConfigError, match="array of tables"):
            parse_config({"accounts": {"id": "work"}})

    def test_unknown_account_lookup(self):
        with pytest.raises(ConfigError, match="Unknown account: 'home'"):
            parse_config({"accounts": [_account()]}).account("home")


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_loads_file_with_env_vars(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WORK_TOKEN", "from-env")
        path = _write_toml(
            tmp_path,
            """
[caldelta]
time_zone = "America/New_York"

[[accounts]]
id = "work"
provider = "google"
access_token = "${WORK_TOKEN}"

[[accounts]]
id = "home"
provider = "microsoft"

[accounts.oauth]
client_id = "cid"
client_secret = "secret"
refresh_token = "rt"
""",
        )

        config = load_config(path)

        assert config.time_zone == "America/New_York"
        assert [a.id for a in config.accounts] == ["work", "home"]
        assert config.accounts[0].access_token == "from-env"
        assert config.accounts[1].oauth is not None

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(tmp_path / "absent.toml")

    def test_invalid_toml(self, tmp_path):
        path = _write_toml(tmp_path, "[caldelta\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)
