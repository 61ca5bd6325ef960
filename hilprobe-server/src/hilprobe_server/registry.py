"""Logical target name to physical probe/chip lookup.

The registry is built once from configuration and never mutated. Lookups are
plain reads of an immutable mapping, safe from any number of concurrent
request handlers without locking. A configuration reload builds a new
registry and swaps it in as part of a new server snapshot.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

from hilprobe_core.errors import ConfigError, NotFoundError
from hilprobe_core.types.target import Target


class TargetRegistry:
    """Immutable mapping of target names to targets.

    Args:
        targets: Targets in configuration order.

    Raises:
        ConfigError: If two targets share a name.
    """

    def __init__(self, targets: Iterable[Target] = ()) -> None:
        entries: dict[str, Target] = {}
        for target in targets:
            if target.name in entries:
                raise ConfigError(f"Duplicate target name: '{target.name}'")
            entries[target.name] = target
        self._targets: Mapping[str, Target] = MappingProxyType(entries)

    def resolve(self, name: str) -> Target:
        """Look up a target by name.

        Args:
            name: Logical target name.

        Returns:
            The target.

        Raises:
            NotFoundError: If no target has that name.
        """
        try:
            return self._targets[name]
        except KeyError:
            raise NotFoundError(f"Target '{name}' not found") from None

    def names(self) -> list[str]:
        """Return target names in configuration order."""
        return list(self._targets)

    def targets(self) -> list[Target]:
        """Return all targets in configuration order."""
        return list(self._targets.values())

    def __contains__(self, name: object) -> bool:
        return name in self._targets

    def __iter__(self) -> Iterator[Target]:
        return iter(self._targets.values())

    def __len__(self) -> int:
        return len(self._targets)
