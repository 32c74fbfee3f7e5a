# tokenward/core/tokens.py
"""
Signed, self-contained session tokens.

Access and refresh tokens are HMAC-signed JWTs sharing one key. The payload
carries a ``token_type`` tag that decodes into one of two typed claim sets,
so callers never poke at loose dictionaries. Decoding is CPU only: it proves
authenticity and freshness, while "is this refresh token still honored" is
answered by the session store.
"""
import json
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from jose import jwt, jws
from jose.exceptions import JWSError
from jose.utils import base64url_decode, base64url_encode
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .config import TokenConfig
from .exceptions import BadSignature, MalformedToken, TokenExpired


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


# Claims an access token may carry besides the registered ones
ACCESS_CLAIM_FIELDS = ("email", "mobile_number", "name")


class AccessClaims(BaseModel):
    model_config = ConfigDict(frozen=True)

    token_type: Literal["access"]
    sub: str
    email: Optional[str] = None
    mobile_number: Optional[str] = None
    name: Optional[str] = None
    iss: str
    iat: int
    exp: int


class RefreshClaims(BaseModel):
    """No PII: a refresh token is a long-lived bearer credential."""

    model_config = ConfigDict(frozen=True)

    token_type: Literal["refresh"]
    sub: str
    jti: str
    iss: str
    iat: int
    exp: int


TokenClaims = Annotated[Union[AccessClaims, RefreshClaims], Field(discriminator="token_type")]
_claims_adapter: TypeAdapter[Union[AccessClaims, RefreshClaims]] = TypeAdapter(TokenClaims)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    def __init__(self, config: TokenConfig):
        self.config = config

    def ttl_for(self, kind: TokenKind) -> timedelta:
        return self.config.access_ttl if kind is TokenKind.ACCESS else self.config.refresh_ttl

    def issue(
        self,
        kind: TokenKind,
        subject: str,
        claims: Optional[Mapping[str, Any]] = None,
        ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> str:
        now = now or _utcnow()
        ttl = self.ttl_for(kind) if ttl is None else ttl
        to_encode: dict[str, Any] = {
            "iss": self.config.issuer,
            "sub": subject,
            "token_type": kind.value,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        if kind is TokenKind.ACCESS:
            extra = dict(claims or {})
            unknown = set(extra) - set(ACCESS_CLAIM_FIELDS)
            if unknown:
                raise ValueError(f"Unsupported access token claims: {sorted(unknown)}")
            for field in ACCESS_CLAIM_FIELDS:
                to_encode[field] = extra.get(field)
        else:
            # Keeps two refresh tokens minted in the same second distinct
            to_encode["jti"] = uuid.uuid4().hex
        return jwt.encode(to_encode, self.config.secret_key, algorithm=self.config.algorithm)

    def decode(self, token: str, now: Optional[datetime] = None) -> Union[AccessClaims, RefreshClaims]:
        """
        Verify and decode a token.

        Raises MalformedToken when the token is not a structurally valid JWS or
        its payload is not a known claim set, BadSignature when the signature
        does not match the signing input, TokenExpired once ``exp`` (plus the
        configured leeway) has passed.
        """
        if not isinstance(token, str) or not token:
            raise MalformedToken()
        segments = token.split(".")
        if len(segments) != 3 or not all(segments):
            raise MalformedToken()

        # Signature before payload parsing: any altered byte of the signing input,
        # including one that breaks its base64 encoding, is a signature failure
        try:
            payload = jws.verify(token, self.config.secret_key, algorithms=[self.config.algorithm])
        except JWSError:
            raise BadSignature()

        # Unused trailing bits of the signature segment must be zero, so the token
        # string has exactly one valid spelling
        signature = segments[2].encode("utf-8")
        if base64url_encode(base64url_decode(signature)) != signature:
            raise BadSignature()

        try:
            data = json.loads(payload)
        except (ValueError, UnicodeDecodeError):
            raise MalformedToken()
        if not isinstance(data, dict):
            raise MalformedToken()
        try:
            claims = _claims_adapter.validate_python(data)
        except ValidationError:
            raise MalformedToken()
        if claims.iss != self.config.issuer:
            raise MalformedToken("Unexpected token issuer")

        now = now or _utcnow()
        if claims.exp + self.config.leeway.total_seconds() <= now.timestamp():
            raise TokenExpired()
        return claims
