from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

from heimdall.logging import get_logger
from heimdall.service.clock import Clock, SystemClock
from heimdall.service.errors import AuthenticationError, InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"

_HEADER = {"alg": "HS256", "typ": "JWT"}

REVOCATION_KEY_PREFIX = "blacklist:"
SESSION_KEY_PREFIX = "session:"


def revocation_key(token_id: str) -> str:
    return f"{REVOCATION_KEY_PREFIX}{token_id}"


def session_key(user_id: str, token_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{user_id}:{token_id}"


def parse_auth_header(header: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not header:
        raise AuthenticationError("authorization header is empty")
    scheme, sep, token = header.partition(" ")
    if not sep or scheme != "Bearer":
        raise AuthenticationError("invalid authorization header format")
    if not token:
        raise AuthenticationError("token is empty")
    return token


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


@dataclass(frozen=True)
class Claims:
    sub: str
    username: str
    role: str
    jti: str
    iss: str
    iat: int
    nbf: int
    exp: int
    token_type: str = TOKEN_TYPE_ACCESS
    aud: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.sub

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Claims":
        try:
            return cls(
                sub=str(payload["sub"]),
                username=str(payload.get("username", "")),
                role=str(payload.get("role", "")),
                jti=str(payload["jti"]),
                iss=str(payload.get("iss", "")),
                iat=int(payload["iat"]),
                nbf=int(payload.get("nbf", payload["iat"])),
                exp=int(payload["exp"]),
                token_type=str(payload.get("token_type", TOKEN_TYPE_ACCESS)),
                aud=payload.get("aud"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError("invalid", "token claims are invalid") from exc

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sub": self.sub,
            "username": self.username,
            "role": self.role,
            "jti": self.jti,
            "iss": self.iss,
            "iat": self.iat,
            "nbf": self.nbf,
            "exp": self.exp,
            "token_type": self.token_type,
        }
        if self.aud:
            payload["aud"] = self.aud
        return payload


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    access_jti: str
    refresh_jti: str
    token_type: str = "Bearer"


class TokenManager:
    """Issues and validates HS256 bearer tokens."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        audience: Optional[str] = None,
        leeway: timedelta = timedelta(0),
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        if refresh_ttl < access_ttl:
            raise ValueError("refresh lifetime must not be shorter than access lifetime")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.audience = audience
        self.leeway = leeway
        self.clock = clock or SystemClock()

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode("utf-8"), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode(self, claims: Claims) -> str:
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _claims(self, user_id: str, username: str, role: str, token_type: str, ttl: timedelta) -> Claims:
        now = int(self.clock.now().timestamp())
        return Claims(
            sub=user_id,
            username=username,
            role=role,
            jti=secrets.token_hex(16),
            iss=self.issuer,
            iat=now,
            nbf=now,
            exp=now + int(ttl.total_seconds()),
            token_type=token_type,
            aud=self.audience,
        )

    def issue(self, user_id: str, username: str, role: str) -> TokenPair:
        if not user_id or not username or not role:
            raise ValueError("user_id, username and role are required to issue tokens")
        access = self._claims(user_id, username, role, TOKEN_TYPE_ACCESS, self.access_ttl)
        refresh = self._claims(user_id, username, role, TOKEN_TYPE_REFRESH, self.refresh_ttl)
        return TokenPair(
            access_token=self._encode(access),
            refresh_token=self._encode(refresh),
            expires_at=access.expires_at,
            access_jti=access.jti,
            refresh_jti=refresh.jti,
        )

    @staticmethod
    def validate_format(token: str) -> bool:
        parts = token.split(".")
        return len(parts) == 3 and all(parts)

    def _split(self, token: str) -> tuple[str, str, str, Dict[str, Any]]:
        if not token or not self.validate_format(token):
            raise InvalidTokenError("malformed", "token is malformed")
        header_b64, payload_b64, sig_b64 = token.split(".")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidTokenError("malformed", "token is malformed") from exc
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed", "token is malformed")
        return header_b64, payload_b64, sig_b64, payload

    def validate(
        self,
        token: str,
        *,
        token_type: Optional[str] = TOKEN_TYPE_ACCESS,
        allow_expired: bool = False,
    ) -> Claims:
        """Verify signature and claims, returning the decoded ``Claims``.

        Raises ``TokenExpiredError`` for an expired token and ``InvalidTokenError``
        (with ``kind`` malformed, not_yet_valid, bad_signature or invalid) for
        everything else. ``allow_expired`` skips only the expiry check.
        """
        if not token or not self.validate_format(token):
            raise InvalidTokenError("malformed", "token is malformed")
        header_b64, payload_b64, sig_b64 = token.split(".")
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidTokenError("malformed", "token is malformed") from exc
        if not isinstance(header, dict):
            raise InvalidTokenError("malformed", "token is malformed")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidTokenError("invalid", "unexpected signing method")

        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogateescape")):
            raise InvalidTokenError("bad_signature", "token signature is invalid")

        _, _, _, payload = self._split(token)
        claims = Claims.from_payload(payload)
        if claims.iss != self.issuer:
            raise InvalidTokenError("invalid", "token issuer is invalid")
        if self.audience and claims.aud != self.audience:
            raise InvalidTokenError("invalid", "token audience is invalid")

        now = self.clock.now().timestamp()
        leeway = self.leeway.total_seconds()
        if not allow_expired and now >= claims.exp + leeway:
            raise TokenExpiredError()
        if now + leeway < claims.nbf:
            raise InvalidTokenError("not_yet_valid", "token is not valid yet")
        if token_type and claims.token_type != token_type:
            raise InvalidTokenError("invalid", f"expected {token_type} token")
        return claims

    def refresh(self, refresh_token: str) -> tuple[Claims, TokenPair]:
        """Validate a refresh token and mint a new pair for the same subject."""
        claims = self.validate(refresh_token, token_type=TOKEN_TYPE_REFRESH)
        return claims, self.issue(claims.sub, claims.username, claims.role)

    def introspect(self, token: str) -> Claims:
        """Decode claims without checking signature or time.

        Only for diagnostics and for reading identifiers out of expired tokens;
        never use the result to authorize a request.
        """
        _, _, _, payload = self._split(token)
        return Claims.from_payload(payload)

    def remaining_lifetime(self, token: Union[str, Claims]) -> timedelta:
        claims = token if isinstance(token, Claims) else self.validate(
            token, token_type=None, allow_expired=True
        )
        remaining = claims.expires_at - self.clock.now()
        if remaining <= timedelta(0):
            raise TokenExpiredError()
        return remaining

    def token_age(self, token: str) -> timedelta:
        return self.clock.now() - self.introspect(token).issued_at

    def is_recently_issued(self, token: str, window: timedelta) -> bool:
        try:
            return self.token_age(token) <= window
        except InvalidTokenError:
            return False

    def metadata(self, token: str) -> Dict[str, Any]:
        claims = self.introspect(token)
        return {
            "jti": claims.jti,
            "sub": claims.sub,
            "username": claims.username,
            "role": claims.role,
            "token_type": claims.token_type,
            "iat": claims.issued_at,
            "exp": claims.expires_at,
        }
