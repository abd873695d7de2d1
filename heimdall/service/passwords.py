"""Password hashing and strength policy.

New hashes are bcrypt (``$2b$<cost>$...``). Hashes written by earlier
deployments with argon2id are still accepted on verify and reported by
``needs_rehash`` so the caller can upgrade them after a successful login.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Optional

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from heimdall.logging import get_logger
from heimdall.service.errors import ServerError, ValidationError

logger = get_logger(__name__)

MIN_BCRYPT_COST = 10
MAX_BCRYPT_COST = 15
DEFAULT_BCRYPT_COST = 12

# bcrypt only consumes the first 72 bytes of the secret.
_BCRYPT_MAX_BYTES = 72

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "12345678",
        "qwerty",
        "abc123",
        "password123",
        "admin",
        "root",
        "guest",
        "test",
        "user",
        "123123",
        "000000",
        "111111",
        "888888",
        "666666",
    }
)

_COMMON_PATTERNS = [
    re.compile(r"^(\w)\1+$"),
    re.compile(r"^\d+$"),
    re.compile(r"^[a-zA-Z]+$"),
    re.compile(r"^123+"),
    re.compile(r"^abc+"),
    re.compile(r"qwerty"),
    re.compile(r"asdf"),
]


class WeakPasswordError(ValidationError):
    """Password rejected by the strength policy.

    ``kind`` is one of ``too_short``, ``too_long``, ``weak``, ``common``,
    ``invalid_chars`` or ``contains_identifier``.
    """

    error_code = "weak_password"

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message, detail={"reason": kind})
        self.kind = kind


class PasswordHashError(ServerError):
    """Hashing failed or a stored hash is malformed."""

    def __init__(self, kind: str) -> None:
        super().__init__()
        self.kind = kind


@dataclass(frozen=True)
class PasswordConfig:
    min_length: int = 8
    max_length: int = 128
    require_upper: bool = False
    require_lower: bool = False
    require_digit: bool = False
    require_symbol: bool = False
    min_classes: int = 3


def _is_symbol(char: str) -> bool:
    return unicodedata.category(char)[0] in ("P", "S")


def _character_classes(password: str) -> dict[str, bool]:
    return {
        "upper": any(c.isupper() for c in password),
        "lower": any(c.islower() for c in password),
        "digit": any(c.isdigit() for c in password),
        "symbol": any(_is_symbol(c) for c in password),
    }


def _has_repeating_run(password: str, run: int = 3) -> bool:
    streak = 1
    for prev, cur in zip(password, password[1:]):
        streak = streak + 1 if cur == prev else 1
        if streak >= run:
            return True
    return False


def _has_sequential_run(password: str, run: int = 3) -> bool:
    for start in range(len(password) - run + 1):
        window = [ord(c) for c in password[start : start + run]]
        steps = {b - a for a, b in zip(window, window[1:])}
        if steps == {1} or steps == {-1}:
            return True
    return False


def _has_common_pattern(password: str) -> bool:
    lowered = password.lower()
    return any(pattern.search(lowered) for pattern in _COMMON_PATTERNS)


class PasswordPolicy:
    def __init__(
        self,
        *,
        cost: int = DEFAULT_BCRYPT_COST,
        config: Optional[PasswordConfig] = None,
    ) -> None:
        if not MIN_BCRYPT_COST <= cost <= MAX_BCRYPT_COST:
            raise ValueError(
                f"bcrypt cost must be between {MIN_BCRYPT_COST} and {MAX_BCRYPT_COST}"
            )
        self.cost = cost
        self.config = config or PasswordConfig()
        self._legacy_hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        self.check_strength(password)
        try:
            salt = bcrypt.gensalt(rounds=self.cost)
            return bcrypt.hashpw(password.encode("utf-8")[:_BCRYPT_MAX_BYTES], salt).decode(
                "utf-8"
            )
        except (ValueError, TypeError) as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise PasswordHashError("hash_failed") from exc

    def verify(self, password: str, password_hash: str) -> bool:
        """Constant-time check of ``password`` against a stored hash.

        Returns False on mismatch; raises ``PasswordHashError`` only when the
        stored hash cannot be parsed.
        """
        if password_hash.startswith("$argon2"):
            try:
                return self._legacy_hasher.verify(password_hash, password)
            except VerifyMismatchError:
                return False
            except (InvalidHash, VerificationError) as exc:
                raise PasswordHashError("malformed_hash") from exc
        if not password_hash.startswith("$2"):
            raise PasswordHashError("malformed_hash")
        try:
            return bcrypt.checkpw(
                password.encode("utf-8")[:_BCRYPT_MAX_BYTES], password_hash.encode("utf-8")
            )
        except ValueError as exc:
            raise PasswordHashError("malformed_hash") from exc

    def needs_rehash(self, password_hash: str) -> bool:
        if not password_hash.startswith("$2"):
            return True
        try:
            return int(password_hash.split("$")[2]) != self.cost
        except (IndexError, ValueError):
            return True

    def score(self, password: str) -> int:
        if len(password) < self.config.min_length:
            return 0
        score = min(len(password) * 2, 30)
        score += 15 * sum(_character_classes(password).values())
        if len(password) >= 12:
            score += 5
        if not _has_repeating_run(password) and not _has_sequential_run(password):
            score += 5
        if _has_common_pattern(password):
            score -= 20
        return max(0, min(100, score))

    def check_strength(self, password: str, config: Optional[PasswordConfig] = None) -> None:
        cfg = config or self.config
        if len(password) < cfg.min_length:
            raise WeakPasswordError(
                "too_short", f"密码长度不能少于{cfg.min_length}个字符"
            )
        if len(password) > cfg.max_length:
            raise WeakPasswordError(
                "too_long", f"密码长度不能超过{cfg.max_length}个字符"
            )
        if password.lower() in COMMON_PASSWORDS:
            raise WeakPasswordError("common", "密码过于常见，请使用更复杂的密码")
        if not password.isprintable():
            raise WeakPasswordError("invalid_chars", "密码包含无效字符")

        classes = _character_classes(password)
        required = {
            "upper": cfg.require_upper,
            "lower": cfg.require_lower,
            "digit": cfg.require_digit,
            "symbol": cfg.require_symbol,
        }
        missing = [name for name, needed in required.items() if needed and not classes[name]]
        if missing:
            raise WeakPasswordError("weak", f"密码必须包含: {', '.join(missing)}")
        if sum(classes.values()) < cfg.min_classes:
            raise WeakPasswordError(
                "weak",
                f"密码必须包含至少{cfg.min_classes}种字符类型（大写字母、小写字母、数字、特殊字符）",
            )

    def check_for_user(self, password: str, username: str, email: str) -> None:
        """Reject passwords that embed the username or the email local part."""
        lowered = password.lower()
        if username and username.lower() in lowered:
            raise WeakPasswordError("contains_identifier", "密码不能包含用户名")
        local_part = email.split("@", 1)[0] if email else ""
        if local_part and local_part.lower() in lowered:
            raise WeakPasswordError("contains_identifier", "密码不能包含邮箱前缀")
