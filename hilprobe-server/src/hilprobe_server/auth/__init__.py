"""Caller authorization: static tokens and federated identity tokens.

Modules:
    engine: AuthEngine, evaluating credentials against the ordered rule list.
    keys: JwksCache, the per-issuer signing-key cache.
"""

from hilprobe_server.auth.engine import AuthEngine
from hilprobe_server.auth.keys import JwksCache, SigningKey

__all__ = [
    "AuthEngine",
    "JwksCache",
    "SigningKey",
]
