import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Mapping, Optional

from .errors import Unauthenticated


class IdentityProvider(ABC):
    """Turns a bearer credential into a stable member id."""

    @abstractmethod
    def verify_token(self, token: str) -> str:
        ...


class StaticTokenIdentityProvider(IdentityProvider):
    def __init__(self, tokens: Optional[Mapping[str, str]] = None):
        self._tokens = dict(tokens or {})

    def add(self, token: str, member_id: str) -> None:
        self._tokens[token] = member_id

    def verify_token(self, token: str) -> str:
        member_id = self._tokens.get(token)
        if not member_id:
            raise Unauthenticated("invalid token")
        return member_id


class HmacTokenIdentityProvider(IdentityProvider):
    """Tokens of the form ``<member_id>.<hex hmac-sha256(member_id)>``."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("HMAC identity provider needs a secret")
        self._key = secret.encode("utf-8")

    def sign(self, member_id: str) -> str:
        digest = hmac.new(self._key, member_id.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{member_id}.{digest}"

    def verify_token(self, token: str) -> str:
        member_id, sep, digest = token.rpartition(".")
        if not sep or not member_id:
            raise Unauthenticated("malformed token")
        expected = hmac.new(self._key, member_id.encode("utf-8"), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, digest):
            raise Unauthenticated("invalid token")
        return member_id


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthenticated("missing bearer token")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise Unauthenticated("missing bearer token")
    return token
