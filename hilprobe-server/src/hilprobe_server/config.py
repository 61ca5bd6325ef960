"""YAML configuration loading for the hilprobe server.

This module loads the server configuration file into immutable dataclasses:
server settings, the probe driver factory, chip memory maps, authorization
rules and targets. Every structural problem is reported as a
:class:`~hilprobe_core.errors.ConfigError` naming the offending field.

Example YAML configuration:
    server:
      default_timeout: 10
      max_timeout: 60

    driver:
      factory: "hilprobe_server.emulator:create_driver"
      kwargs: {}
      presence: "hilprobe_server.emulator:probe_present"

    chips:
      - name: stm32h743zi
        ram: {start: 0x24000000, size: 0x80000}

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

    targets:
      - name: nucleo
        chip: stm32f429zi
        probe: "0483:374b:0671FF535155878281"
        default_timeout: 30
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from hilprobe_core.errors import ConfigError
from hilprobe_core.types.auth import AuthRule, FederatedRule, StaticToken
from hilprobe_core.types.target import ProbeSpecifier, Target

from hilprobe_server.chips import ChipSpec


@dataclass(frozen=True)
class ServerSettings:
    """Tunable server behaviour.

    Attributes:
        default_timeout: Execution timeout in seconds when nothing else sets one.
        max_timeout: Upper bound applied to every effective timeout.
        probe_retries: Extra attempts after a transient probe failure while uploading.
        retry_delay: Seconds between upload attempts.
        pass_marker: Output line content that ends a run as passed.
        fail_marker: Output line content that ends a run as failed.
        jwks_ttl: Seconds before an issuer's signing keys are refetched.
        jwks_min_refresh_interval: Minimum seconds between key fetches per issuer.
        token_leeway: Clock skew tolerance for token temporal claims, in seconds.
    """

    default_timeout: float = 10.0
    max_timeout: float = 60.0
    probe_retries: int = 10
    retry_delay: float = 0.3
    pass_marker: str = "HILPROBE:PASS"
    fail_marker: str = "HILPROBE:FAIL"
    jwks_ttl: float = 3600.0
    jwks_min_refresh_interval: float = 30.0
    token_leeway: float = 30.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        if self.max_timeout < self.default_timeout:
            raise ValueError("max_timeout must be at least default_timeout")
        if self.probe_retries < 0:
            raise ValueError("probe_retries must be non-negative")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be non-negative")
        if not self.pass_marker or not self.fail_marker:
            raise ValueError("pass_marker and fail_marker must be non-empty")
        if self.pass_marker == self.fail_marker:
            raise ValueError("pass_marker and fail_marker must differ")
        if self.jwks_ttl <= 0:
            raise ValueError("jwks_ttl must be positive")
        if self.jwks_min_refresh_interval < 0:
            raise ValueError("jwks_min_refresh_interval must be non-negative")
        if self.token_leeway < 0:
            raise ValueError("token_leeway must be non-negative")

    def clamp_timeout(self, timeout: float) -> float:
        """Limit a timeout to ``max_timeout``."""
        return min(timeout, self.max_timeout)


@dataclass(frozen=True)
class DriverConfig:
    """Probe driver factory selection.

    Attributes:
        factory: Factory path in "module:function" format.
        kwargs: Extra keyword arguments passed to the factory with each target.
        presence: Optional "module:function" path of a check reporting whether
            a target's probe is attached. Called with the target and ``kwargs``.
    """

    factory: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    presence: str | None = None


@dataclass(frozen=True)
class HilprobeConfig:
    """Complete server configuration.

    Attributes:
        settings: Server settings.
        driver: Probe driver factory.
        chips: Chip RAM maps extending the built-in catalogue.
        auths: Authorization rules in evaluation order.
        targets: Targets in configuration order.
    """

    settings: ServerSettings
    driver: DriverConfig
    chips: tuple[ChipSpec, ...] = ()
    auths: tuple[AuthRule, ...] = ()
    targets: tuple[Target, ...] = ()


_SETTING_TYPES: dict[str, type] = {f.name: float for f in fields(ServerSettings)}
_SETTING_TYPES.update(probe_retries=int, pass_marker=str, fail_marker=str)


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    return value


def _sequence(value: Any, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{where} must be a list")
    return value


def _string(value: Any, where: str) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Missing required field: {where}")
    return value


def _number(value: Any, where: str, kind: type = float) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where} must be a number")
    if kind is int and not isinstance(value, int):
        raise ConfigError(f"{where} must be an integer")
    return kind(value)


def _parse_settings(data: Any) -> ServerSettings:
    section = _mapping(data, "server")
    values: dict[str, Any] = {}
    for key, value in section.items():
        kind = _SETTING_TYPES.get(key)
        if kind is None:
            raise ConfigError(f"Unknown server setting: server.{key}")
        if kind is str:
            values[key] = _string(value, f"server.{key}")
        else:
            values[key] = _number(value, f"server.{key}", kind)
    try:
        return ServerSettings(**values)
    except ValueError as exc:
        raise ConfigError(f"Invalid server settings: {exc}") from exc


def _parse_driver(data: Any) -> DriverConfig:
    section = _mapping(data, "driver")
    factory = _string(section.get("factory"), "driver.factory")
    kwargs = _mapping(section.get("kwargs"), "driver.kwargs")
    presence = section.get("presence")
    if presence is not None:
        presence = _string(presence, "driver.presence")
    return DriverConfig(factory=factory, kwargs=dict(kwargs), presence=presence)


def _parse_chips(data: Any) -> tuple[ChipSpec, ...]:
    chips: list[ChipSpec] = []
    for i, entry in enumerate(_sequence(data, "chips")):
        where = f"chips[{i}]"
        entry = _mapping(entry, where)
        ram = _mapping(entry.get("ram"), f"{where}.ram")
        try:
            chips.append(
                ChipSpec(
                    name=_string(entry.get("name"), f"{where}.name"),
                    ram_start=_number(ram.get("start"), f"{where}.ram.start", int),
                    ram_size=_number(ram.get("size"), f"{where}.ram.size", int),
                )
            )
        except ValueError as exc:
            raise ConfigError(f"Invalid {where}: {exc}") from exc
    return tuple(chips)


def _parse_auths(data: Any) -> tuple[AuthRule, ...]:
    rules: list[AuthRule] = []
    for i, entry in enumerate(_sequence(data, "auths")):
        where = f"auths[{i}]"
        entry = _mapping(entry, where)
        if len(entry) != 1:
            raise ConfigError(f"{where} must have exactly one of: token, oidc")
        ((kind, body),) = entry.items()
        body = _mapping(body, f"{where}.{kind}")

        if kind == "token":
            rules.append(StaticToken(secret=_string(body.get("token"), f"{where}.token.token")))

        elif kind == "oidc":
            issuer = _string(body.get("issuer"), f"{where}.oidc.issuer")
            audience = body.get("audience")
            if audience is not None:
                audience = _string(audience, f"{where}.oidc.audience")
            oidc_rules = _sequence(body.get("rules"), f"{where}.oidc.rules")
            if not oidc_rules:
                raise ConfigError(f"{where}.oidc.rules must list at least one rule")
            for j, rule in enumerate(oidc_rules):
                rule_where = f"{where}.oidc.rules[{j}]"
                claims = _mapping(_mapping(rule, rule_where).get("claims"), f"{rule_where}.claims")
                matchers: dict[str, str] = {}
                for claim, pattern in claims.items():
                    matchers[str(claim)] = _string(pattern, f"{rule_where}.claims.{claim}")
                rules.append(
                    FederatedRule(issuer=issuer, claim_matchers=matchers, audience=audience)
                )

        else:
            raise ConfigError(f"{where}: unknown auth kind '{kind}'")
    return tuple(rules)


def _parse_targets(data: Any) -> tuple[Target, ...]:
    targets: list[Target] = []
    seen: set[str] = set()
    for i, entry in enumerate(_sequence(data, "targets")):
        where = f"targets[{i}]"
        entry = _mapping(entry, where)
        name = _string(entry.get("name"), f"{where}.name")
        if name in seen:
            raise ConfigError(f"Duplicate target name: '{name}'")
        seen.add(name)

        try:
            probe = ProbeSpecifier.parse(_string(entry.get("probe"), f"{where}.probe"))
        except ValueError as exc:
            raise ConfigError(f"{where}.probe: {exc}") from exc

        default_timeout = entry.get("default_timeout")
        if default_timeout is not None:
            default_timeout = _number(default_timeout, f"{where}.default_timeout")
            if default_timeout <= 0:
                raise ConfigError(f"{where}.default_timeout must be positive")
        speed = entry.get("speed")
        if speed is not None:
            speed = _number(speed, f"{where}.speed", int)

        targets.append(
            Target(
                name=name,
                chip=_string(entry.get("chip"), f"{where}.chip"),
                probe=probe,
                default_timeout=default_timeout,
                connect_under_reset=bool(entry.get("connect_under_reset", False)),
                speed_khz=speed,
                power_reset=bool(entry.get("power_reset", False)),
            )
        )
    return tuple(targets)


def parse_config(data: Any) -> HilprobeConfig:
    """Build a configuration from already-parsed YAML data.

    Args:
        data: The YAML document as Python objects.

    Returns:
        Parsed configuration.

    Raises:
        ConfigError: If the configuration is invalid.
    """
    if not isinstance(data, dict):
        raise ConfigError("Config must be a YAML mapping")
    unknown = set(data) - {"server", "driver", "chips", "auths", "targets"}
    if unknown:
        raise ConfigError(f"Unknown top-level config keys: {', '.join(sorted(unknown))}")

    return HilprobeConfig(
        settings=_parse_settings(data.get("server")),
        driver=_parse_driver(data.get("driver")),
        chips=_parse_chips(data.get("chips")),
        auths=_parse_auths(data.get("auths")),
        targets=_parse_targets(data.get("targets")),
    )


def load_config(path: str | Path) -> HilprobeConfig:
    """Load server configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Parsed configuration.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ConfigError: If the config is invalid or missing required fields.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    return parse_config(data)
