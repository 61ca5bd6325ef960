"""Unit tests for server configuration loading."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any

import pytest

from hilprobe_core.errors import ConfigError
from hilprobe_core.types.auth import FederatedRule, StaticToken

from hilprobe_server.config import (
    DriverConfig,
    ServerSettings,
    load_config,
    parse_config,
)

FULL_CONFIG = """
server:
  default_timeout: 15
  max_timeout: 120
  probe_retries: 2

driver:
  factory: "hilprobe_server.emulator:create_driver"
  kwargs:
    line_delay: 0.1

chips:
  - name: custom_m4
    ram: {start: 0x10000000, size: 0x8000}

auths:
  - token:
      token: "hunter2"
  - oidc:
      issuer: "https://token.actions.githubusercontent.com"
      audience: "hilprobe"
      rules:
        - claims:
            repository: "acme/firmware"
            ref: "refs/heads/*"
        - claims:
            repository_owner: "acme"

targets:
  - name: nucleo
    chip: stm32f429zi
    probe: "0483:374b:0671FF"
    default_timeout: 30
    speed: 4000
    connect_under_reset: true
  - name: pico
    chip: rp2040
    probe: "E6614103E7"
"""


def _minimal(**extra: Any) -> dict[str, Any]:
    data: dict[str, Any] = {"driver": {"factory": "hilprobe_server.emulator:create_driver"}}
    data.update(extra)
    return data


class TestServerSettings:
    def test_defaults(self) -> None:
        settings = ServerSettings()
        assert settings.default_timeout == 10.0
        assert settings.max_timeout == 60.0
        assert settings.probe_retries == 10
        assert settings.pass_marker == "HILPROBE:PASS"
        assert settings.fail_marker == "HILPROBE:FAIL"

    def test_clamp_timeout(self) -> None:
        settings = ServerSettings(max_timeout=20)
        assert settings.clamp_timeout(5) == 5
        assert settings.clamp_timeout(500) == 20

    @pytest.mark.parametrize(
        "kwargs,match",
        [
            ({"default_timeout": 0}, "default_timeout"),
            ({"default_timeout": 30, "max_timeout": 20}, "max_timeout"),
            ({"probe_retries": -1}, "probe_retries"),
            ({"retry_delay": -0.1}, "retry_delay"),
            ({"pass_marker": ""}, "non-empty"),
            ({"pass_marker": "X", "fail_marker": "X"}, "differ"),
            ({"jwks_ttl": 0}, "jwks_ttl"),
            ({"token_leeway": -1}, "token_leeway"),
        ],
    )
    def test_validation(self, kwargs: dict[str, Any], match: str) -> None:
        with pytest.raises(ValueError, match=match):
            ServerSettings(**kwargs)


class TestLoadConfig:
    def test_load_full_config(self) -> None:
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            f.write(FULL_CONFIG)
            path = f.name

        try:
            config = load_config(path)
        finally:
            Path(path).unlink()

        assert config.settings.default_timeout == 15.0
        assert config.settings.max_timeout == 120.0
        assert config.settings.probe_retries == 2
        assert config.driver == DriverConfig(
            factory="hilprobe_server.emulator:create_driver", kwargs={"line_delay": 0.1}
        )

        assert len(config.chips) == 1
        assert config.chips[0].ram_start == 0x1000_0000
        assert config.chips[0].ram_size == 0x8000

        assert len(config.auths) == 3
        token = config.auths[0]
        assert isinstance(token, StaticToken)
        assert token.secret == "hunter2"
        first, second = config.auths[1], config.auths[2]
        assert isinstance(first, FederatedRule) and isinstance(second, FederatedRule)
        assert first.issuer == "https://token.actions.githubusercontent.com"
        assert first.audience == "hilprobe"
        assert first.claim_matchers == {"repository": "acme/firmware", "ref": "refs/heads/*"}
        assert second.claim_matchers == {"repository_owner": "acme"}

        nucleo, pico = config.targets
        assert nucleo.name == "nucleo"
        assert nucleo.chip == "stm32f429zi"
        assert nucleo.probe_id == "0483:374b:0671FF"
        assert nucleo.default_timeout == 30
        assert nucleo.speed_khz == 4000
        assert nucleo.connect_under_reset
        assert not nucleo.power_reset
        assert pico.probe_id == "E6614103E7"
        assert pico.default_timeout is None

    def test_file_not_found(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/hilprobe.yaml")

    def test_invalid_yaml(self) -> None:
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            f.write("driver: [unclosed\n")
            path = f.name

        try:
            with pytest.raises(ConfigError, match="Invalid YAML"):
                load_config(path)
        finally:
            Path(path).unlink()


class TestParseConfig:
    def test_minimal(self) -> None:
        config = parse_config(_minimal())
        assert config.settings == ServerSettings()
        assert config.auths == ()
        assert config.targets == ()

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ConfigError, match="mapping"):
            parse_config(["driver"])

    def test_unknown_top_level_key(self) -> None:
        with pytest.raises(ConfigError, match="Unknown top-level"):
            parse_config(_minimal(instruments={}))

    def test_unknown_setting(self) -> None:
        with pytest.raises(ConfigError, match="server.timeout"):
            parse_config(_minimal(server={"timeout": 5}))

    def test_setting_wrong_type(self) -> None:
        with pytest.raises(ConfigError, match="must be a number"):
            parse_config(_minimal(server={"default_timeout": "ten"}))

    def test_integer_setting(self) -> None:
        with pytest.raises(ConfigError, match="must be an integer"):
            parse_config(_minimal(server={"probe_retries": 1.5}))

    def test_invalid_setting_value(self) -> None:
        with pytest.raises(ConfigError, match="Invalid server settings"):
            parse_config(_minimal(server={"default_timeout": -1}))

    def test_missing_driver_factory(self) -> None:
        with pytest.raises(ConfigError, match="driver.factory"):
            parse_config({"driver": {}})

    def test_driver_presence(self) -> None:
        data = {
            "driver": {
                "factory": "hilprobe_server.emulator:create_driver",
                "presence": "hilprobe_server.emulator:probe_present",
            }
        }
        config = parse_config(data)
        assert config.driver.presence == "hilprobe_server.emulator:probe_present"
        assert parse_config(_minimal()).driver.presence is None

    @pytest.mark.parametrize("presence", ["", 42])
    def test_invalid_driver_presence(self, presence: Any) -> None:
        data = _minimal()
        data["driver"]["presence"] = presence
        with pytest.raises(ConfigError, match="driver.presence"):
            parse_config(data)

    def test_invalid_chip(self) -> None:
        data = _minimal(chips=[{"name": "bad", "ram": {"start": 0, "size": 0}}])
        with pytest.raises(ConfigError, match=r"chips\[0\]"):
            parse_config(data)

    def test_auth_entry_needs_one_kind(self) -> None:
        data = _minimal(auths=[{"token": {"token": "a"}, "oidc": {}}])
        with pytest.raises(ConfigError, match="exactly one"):
            parse_config(data)

    def test_unknown_auth_kind(self) -> None:
        with pytest.raises(ConfigError, match="unknown auth kind 'ldap'"):
            parse_config(_minimal(auths=[{"ldap": {}}]))

    def test_empty_token(self) -> None:
        with pytest.raises(ConfigError, match=r"auths\[0\].token.token"):
            parse_config(_minimal(auths=[{"token": {"token": ""}}]))

    def test_oidc_without_rules(self) -> None:
        data = _minimal(auths=[{"oidc": {"issuer": "https://issuer.example", "rules": []}}])
        with pytest.raises(ConfigError, match="at least one rule"):
            parse_config(data)

    def test_oidc_non_string_claim(self) -> None:
        data = _minimal(
            auths=[{"oidc": {"issuer": "https://i.example", "rules": [{"claims": {"n": 3}}]}}]
        )
        with pytest.raises(ConfigError, match="claims.n"):
            parse_config(data)

    def test_oidc_without_audience(self) -> None:
        data = _minimal(
            auths=[{"oidc": {"issuer": "https://i.example", "rules": [{"claims": {}}]}}]
        )
        (rule,) = parse_config(data).auths
        assert isinstance(rule, FederatedRule)
        assert rule.audience is None
        assert rule.claim_matchers == {}

    def test_duplicate_target(self) -> None:
        target = {"name": "nucleo", "chip": "stm32f429zi", "probe": "SER1"}
        with pytest.raises(ConfigError, match="Duplicate target name"):
            parse_config(_minimal(targets=[target, dict(target)]))

    def test_target_missing_chip(self) -> None:
        with pytest.raises(ConfigError, match=r"targets\[0\].chip"):
            parse_config(_minimal(targets=[{"name": "nucleo", "probe": "SER1"}]))

    def test_target_bad_probe(self) -> None:
        data = _minimal(targets=[{"name": "n", "chip": "c", "probe": "zz:yy"}])
        with pytest.raises(ConfigError, match=r"targets\[0\].probe"):
            parse_config(data)

    def test_target_non_positive_timeout(self) -> None:
        data = _minimal(
            targets=[{"name": "n", "chip": "c", "probe": "SER1", "default_timeout": 0}]
        )
        with pytest.raises(ConfigError, match="default_timeout must be positive"):
            parse_config(data)
