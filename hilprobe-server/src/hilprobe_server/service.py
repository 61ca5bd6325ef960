"""Server state assembled from configuration.

The configuration is loaded into an immutable :class:`ServerSnapshot`
(registry, auth engine, orchestrator and settings) that request handlers read
by reference. A reload builds a complete new snapshot and swaps the reference
in one assignment, so a request sees either the old configuration or the new
one, never a mixture.

State that must outlive a reload is owned by :class:`HilprobeService` itself:
the probe lock table (the hardware does not change with the config file) and
the issuer key cache.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from hilprobe_core.errors import ConfigError
from hilprobe_core.interfaces.probe import ProbePresenceCheck
from hilprobe_core.types.auth import Principal
from hilprobe_core.types.target import Target

from hilprobe_server.auth.engine import AuthEngine
from hilprobe_server.auth.keys import JwksCache
from hilprobe_server.chips import ChipCatalogue
from hilprobe_server.config import HilprobeConfig, ServerSettings, load_config
from hilprobe_server.loader import load_driver
from hilprobe_server.locks import ProbeLockTable
from hilprobe_server.models import TargetStatus
from hilprobe_server.orchestrator import ExecutionOrchestrator
from hilprobe_server.registry import TargetRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerSnapshot:
    """One consistent view of the server configuration.

    Attributes:
        config: The configuration the snapshot was built from.
        registry: Target lookup.
        auth: Credential evaluation.
        orchestrator: Job execution with this snapshot's settings and driver.
        presence: Probe presence check, if the driver provides one.
    """

    config: HilprobeConfig
    registry: TargetRegistry
    auth: AuthEngine
    orchestrator: ExecutionOrchestrator
    presence: ProbePresenceCheck | None = None

    @property
    def settings(self) -> ServerSettings:
        return self.config.settings


class HilprobeService:
    """Owns the current snapshot and the state shared across reloads.

    Args:
        config: Initial configuration.
        config_path: File to re-read on :meth:`reload`.
        http_client: Optional httpx client for issuer key discovery (for testing).

    Raises:
        ConfigError: If the configuration cannot be turned into a snapshot.
    """

    def __init__(
        self,
        config: HilprobeConfig,
        *,
        config_path: str | Path | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config_path = Path(config_path) if config_path is not None else None
        self._locks = ProbeLockTable()
        self._keys = JwksCache(
            ttl=config.settings.jwks_ttl,
            min_refresh_interval=config.settings.jwks_min_refresh_interval,
            client=http_client,
        )
        self._retired: list[ExecutionOrchestrator] = []
        self._snapshot = self._build(config)

    @classmethod
    def from_file(cls, path: str | Path, **kwargs: object) -> HilprobeService:
        """Load configuration from a YAML file and build the service."""
        return cls(load_config(path), config_path=path, **kwargs)  # type: ignore[arg-type]

    @property
    def snapshot(self) -> ServerSnapshot:
        """The current configuration snapshot."""
        return self._snapshot

    @property
    def locks(self) -> ProbeLockTable:
        return self._locks

    @property
    def keys(self) -> JwksCache:
        return self._keys

    async def start(self) -> None:
        """Start background work (issuer key refresh)."""
        self._keys.register(self._snapshot.auth.issuers)
        await self._keys.start()

    async def stop(self) -> None:
        """Cancel outstanding jobs and stop background work."""
        for orchestrator in [*self._retired, self._snapshot.orchestrator]:
            await orchestrator.shutdown()
        self._retired.clear()
        await self._keys.stop()

    def reload(self, config: HilprobeConfig | None = None) -> ServerSnapshot:
        """Replace the current snapshot.

        Jobs already accepted finish under the snapshot they started with.

        Args:
            config: New configuration; re-read from the config file if None.

        Returns:
            The new snapshot.

        Raises:
            ConfigError: If the configuration is invalid. The current snapshot
                stays in place.
        """
        if config is None:
            if self._config_path is None:
                raise ConfigError("No configuration file to reload from")
            config = load_config(self._config_path)

        snapshot = self._build(config)
        previous, self._snapshot = self._snapshot, snapshot

        self._retired = [o for o in self._retired if o.jobs]
        if previous.orchestrator.jobs:
            self._retired.append(previous.orchestrator)
        self._keys.register(snapshot.auth.issuers)
        logger.info(
            "Configuration reloaded: %d targets, %d auth rules",
            len(snapshot.registry),
            len(snapshot.auth.rules),
        )
        return snapshot

    async def authorize(self, credential: str) -> Principal:
        """Evaluate a credential against the current policy."""
        return await self._snapshot.auth.authorize(credential)

    def target_statuses(self) -> list[TargetStatus]:
        """Describe every target, without probe identifiers."""
        snapshot = self._snapshot
        return [
            TargetStatus(
                name=target.name,
                chip=target.chip,
                busy=self._locks.locked(target.probe_id),
                queued=self._locks.queue_depth(target.probe_id),
                up=self._probe_up(snapshot, target),
            )
            for target in snapshot.registry
        ]

    @staticmethod
    def _probe_up(snapshot: ServerSnapshot, target: Target) -> bool | None:
        if snapshot.presence is None:
            return None
        try:
            return bool(snapshot.presence(target, **snapshot.config.driver.kwargs))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning("Presence check for target '%s' failed: %s", target.name, exc)
            return False

    def _build(self, config: HilprobeConfig) -> ServerSnapshot:
        try:
            factory = load_driver(config.driver.factory)
        except (ValueError, ImportError, AttributeError, TypeError) as exc:
            raise ConfigError(f"Invalid driver.factory: {exc}") from exc
        presence: ProbePresenceCheck | None = None
        if config.driver.presence is not None:
            try:
                presence = load_driver(config.driver.presence)
            except (ValueError, ImportError, AttributeError, TypeError) as exc:
                raise ConfigError(f"Invalid driver.presence: {exc}") from exc

        registry = TargetRegistry(config.targets)
        chips = ChipCatalogue(config.chips)
        for target in registry:
            if target.chip not in chips:
                logger.warning(
                    "Target '%s': chip '%s' has no known RAM map; images will be flashed",
                    target.name,
                    target.chip,
                )
        if not config.auths:
            logger.warning("No auth rules configured; every authenticated request will be refused")

        orchestrator = ExecutionOrchestrator(
            factory,
            settings=config.settings,
            chips=chips,
            locks=self._locks,
            driver_kwargs=config.driver.kwargs,
        )
        auth = AuthEngine(config.auths, self._keys, leeway=config.settings.token_leeway)
        return ServerSnapshot(
            config=config,
            registry=registry,
            auth=auth,
            orchestrator=orchestrator,
            presence=presence,
        )
