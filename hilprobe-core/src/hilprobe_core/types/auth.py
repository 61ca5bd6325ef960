"""Authorization rule and principal types.

The configured policy is an ordered tuple of :data:`AuthRule` values. Each rule
is an explicit variant carrying a ``kind`` tag; consumers dispatch on the
concrete class rather than probing attributes.

Classes:
    StaticToken: Shared secret compared in constant time.
    FederatedRule: Signed identity token from a trusted issuer plus claim matchers.
    Principal: The identity admitted by a rule.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, ClassVar, Mapping, Union


@dataclass(frozen=True)
class StaticToken:
    """Static bearer token rule.

    Attributes:
        secret: The shared secret. Never logged or serialized.
    """

    kind: ClassVar[str] = "token"

    secret: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("static token secret must be non-empty")


@dataclass(frozen=True)
class FederatedRule:
    """Federated identity rule validated against an external issuer.

    Attributes:
        issuer: Issuer URL; also the expected ``iss`` claim.
        claim_matchers: Claim name to expected value or glob pattern. All must match.
            Stored as a read-only copy.
        audience: Expected ``aud`` claim, or None to skip audience checking.
    """

    kind: ClassVar[str] = "oidc"

    issuer: str
    claim_matchers: Mapping[str, str] = field(default_factory=dict)
    audience: str | None = None

    def __post_init__(self) -> None:
        if not self.issuer:
            raise ValueError("federated rule issuer must be non-empty")
        object.__setattr__(self, "claim_matchers", MappingProxyType(dict(self.claim_matchers)))


AuthRule = Union[StaticToken, FederatedRule]
"""Tagged union of authorization rules."""


@dataclass(frozen=True)
class Principal:
    """Identity admitted by the auth engine.

    Attributes:
        rule_index: Position of the admitting rule in the configured policy.
        kind: Tag of the admitting rule ("token" or "oidc").
        subject: ``sub`` claim for federated identities, None for static tokens.
        claims: String claims of the federated token (empty for static tokens).
    """

    rule_index: int
    kind: str
    subject: str | None = None
    claims: Mapping[str, Any] = field(default_factory=dict)
