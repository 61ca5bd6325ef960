"""Credential evaluation against the configured authorization policy.

The policy is an ordered list of rules; a credential is accepted if any rule
admits it, and evaluation stops at the first rule that does. Credentials with
JWT structure (three dot-separated segments) are also tried as signed identity
tokens against federated rules; every credential is tried against static
tokens.

When no rule admits a credential, the reported reason is the most specific
one seen: EXPIRED beats INVALID beats NO_MATCH.
"""

from __future__ import annotations

import fnmatch
import hashlib
import hmac
import logging
from typing import Any, Mapping, Sequence

import jwt

from hilprobe_core.errors import AuthError, AuthFailure
from hilprobe_core.types.auth import AuthRule, FederatedRule, Principal, StaticToken

from hilprobe_server.auth.keys import JwksCache

logger = logging.getLogger(__name__)

ALLOWED_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"}
)


def looks_like_jwt(credential: str) -> bool:
    """Return True if the credential has three non-empty dot-separated segments."""
    parts = credential.split(".")
    return len(parts) == 3 and all(parts)


def token_matches(presented: str, secret: str) -> bool:
    """Compare a presented token with a configured secret in constant time.

    Both sides are hashed first so the comparison time depends on neither the
    secret's length nor the position of the first differing byte.
    """
    return hmac.compare_digest(
        hashlib.sha256(presented.encode("utf-8")).digest(),
        hashlib.sha256(secret.encode("utf-8")).digest(),
    )


def claims_match(claims: Mapping[str, Any], matchers: Mapping[str, str]) -> bool:
    """Check every matcher against the token claims.

    Only string claims can match. Matcher values are glob patterns matched
    case-sensitively, so a value without wildcards is an exact comparison.
    """
    for name, pattern in matchers.items():
        value = claims.get(name)
        if not isinstance(value, str) or not fnmatch.fnmatchcase(value, pattern):
            return False
    return True


class AuthEngine:
    """Evaluates credentials against an immutable rule list.

    Args:
        rules: Ordered authorization rules.
        keys: Issuer key cache used for federated rules. A private cache is
            created when omitted.
        leeway: Clock skew tolerance in seconds for temporal claims.
    """

    def __init__(
        self,
        rules: Sequence[AuthRule],
        keys: JwksCache | None = None,
        *,
        leeway: float = 30.0,
    ) -> None:
        self._rules: tuple[AuthRule, ...] = tuple(rules)
        self._keys = keys if keys is not None else JwksCache()
        self._leeway = leeway

    @property
    def rules(self) -> tuple[AuthRule, ...]:
        return self._rules

    @property
    def keys(self) -> JwksCache:
        return self._keys

    @property
    def issuers(self) -> tuple[str, ...]:
        """Distinct federated issuers in rule order."""
        seen: dict[str, None] = {}
        for rule in self._rules:
            if isinstance(rule, FederatedRule):
                seen.setdefault(rule.issuer, None)
        return tuple(seen)

    async def authorize(self, credential: str) -> Principal:
        """Admit or reject a credential.

        Args:
            credential: Bearer credential presented by the caller.

        Returns:
            The principal describing the first admitting rule.

        Raises:
            AuthError: If no rule admits the credential.
        """
        if not credential:
            raise AuthError(AuthFailure.INVALID, "empty credential")

        token = _UnverifiedToken.parse(credential)
        failures: set[AuthFailure] = set()

        for index, rule in enumerate(self._rules):
            if isinstance(rule, StaticToken):
                if token_matches(credential, rule.secret):
                    logger.info("Auth rule %s #%d succeeded", rule.kind, index)
                    return Principal(rule_index=index, kind=rule.kind)
                logger.info("Auth rule %s #%d failed: token mismatch", rule.kind, index)
                failures.add(AuthFailure.NO_MATCH)

            elif isinstance(rule, FederatedRule):
                if token is None:
                    logger.info("Auth rule %s #%d skipped: not a signed token", rule.kind, index)
                    failures.add(AuthFailure.NO_MATCH)
                    continue
                try:
                    claims = await self._verify(credential, token, rule)
                except AuthError as exc:
                    logger.info("Auth rule %s #%d failed: %s", rule.kind, index, exc)
                    failures.add(exc.reason)
                    continue
                if not claims_match(claims, rule.claim_matchers):
                    logger.info("Auth rule %s #%d failed: claims did not match", rule.kind, index)
                    failures.add(AuthFailure.NO_MATCH)
                    continue
                subject = claims.get("sub")
                logger.info("Auth rule %s #%d succeeded (sub=%s)", rule.kind, index, subject)
                return Principal(
                    rule_index=index,
                    kind=rule.kind,
                    subject=subject if isinstance(subject, str) else None,
                    claims={k: v for k, v in claims.items() if isinstance(v, str)},
                )

        for reason in (AuthFailure.EXPIRED, AuthFailure.INVALID):
            if reason in failures:
                raise AuthError(reason)
        raise AuthError(AuthFailure.NO_MATCH)

    async def _verify(
        self, credential: str, token: _UnverifiedToken, rule: FederatedRule
    ) -> dict[str, Any]:
        if token.malformed:
            raise AuthError(AuthFailure.INVALID, "malformed token")
        if token.issuer != rule.issuer:
            raise AuthError(AuthFailure.NO_MATCH, "issuer mismatch")
        if token.algorithm not in ALLOWED_ALGORITHMS:
            raise AuthError(AuthFailure.INVALID, f"algorithm {token.algorithm!r} not allowed")
        if not token.key_id:
            raise AuthError(AuthFailure.INVALID, "token header has no kid")

        key = await self._keys.get_key(rule.issuer, token.key_id)
        if key is None:
            raise AuthError(AuthFailure.INVALID, f"issuer has no key {token.key_id!r}")
        if key.algorithm is not None and key.algorithm != token.algorithm:
            raise AuthError(AuthFailure.INVALID, "token algorithm does not match key")

        try:
            return jwt.decode(
                credential,
                key.jwk.key,
                algorithms=[token.algorithm],
                issuer=rule.issuer,
                audience=rule.audience,
                leeway=self._leeway,
                options={"require": ["exp", "iss"], "verify_aud": rule.audience is not None},
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthError(AuthFailure.EXPIRED, "token expired") from exc
        except (jwt.InvalidIssuerError, jwt.InvalidAudienceError) as exc:
            raise AuthError(AuthFailure.NO_MATCH, str(exc)) from exc
        except jwt.PyJWTError as exc:
            raise AuthError(AuthFailure.INVALID, str(exc)) from exc


class _UnverifiedToken:
    """Header fields and issuer read from a token before verification."""

    def __init__(
        self,
        algorithm: str | None = None,
        key_id: str | None = None,
        issuer: str | None = None,
        malformed: bool = False,
    ) -> None:
        self.algorithm = algorithm
        self.key_id = key_id
        self.issuer = issuer
        self.malformed = malformed

    @classmethod
    def parse(cls, credential: str) -> _UnverifiedToken | None:
        if not looks_like_jwt(credential):
            return None
        try:
            header = jwt.get_unverified_header(credential)
            payload = jwt.decode(credential, options={"verify_signature": False})
        except jwt.PyJWTError:
            return cls(malformed=True)
        alg, kid, iss = header.get("alg"), header.get("kid"), payload.get("iss")
        return cls(
            algorithm=alg if isinstance(alg, str) else None,
            key_id=kid if isinstance(kid, str) else None,
            issuer=iss if isinstance(iss, str) else None,
        )
