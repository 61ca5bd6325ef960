"""Tests for authorization rule types."""

import pytest

from hilprobe_core.types.auth import FederatedRule, Principal, StaticToken


class TestStaticToken:
    def test_kind(self) -> None:
        assert StaticToken("s3cret").kind == "token"

    def test_secret_not_in_repr(self) -> None:
        assert "s3cret" not in repr(StaticToken("s3cret"))

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-empty"):
            StaticToken("")


class TestFederatedRule:
    def test_create(self) -> None:
        rule = FederatedRule(
            issuer="https://token.actions.githubusercontent.com",
            claim_matchers={"repository": "org/repo"},
        )
        assert rule.kind == "oidc"
        assert rule.audience is None
        assert rule.claim_matchers["repository"] == "org/repo"

    def test_empty_issuer_rejected(self) -> None:
        with pytest.raises(ValueError, match="issuer"):
            FederatedRule(issuer="")

    def test_claim_matchers_read_only(self) -> None:
        matchers = {"repository": "org/repo"}
        rule = FederatedRule(issuer="https://issuer.example", claim_matchers=matchers)
        with pytest.raises(TypeError):
            rule.claim_matchers["ref"] = "refs/heads/*"  # type: ignore[index]

        matchers["repository"] = "org/other"
        assert rule.claim_matchers == {"repository": "org/repo"}
        assert rule == FederatedRule(
            issuer="https://issuer.example", claim_matchers={"repository": "org/repo"}
        )


class TestPrincipal:
    def test_static_principal(self) -> None:
        principal = Principal(rule_index=0, kind="token")
        assert principal.subject is None
        assert principal.claims == {}
