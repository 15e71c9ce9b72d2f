"""Password strength rules applied at signup, reset and change-password.

The evaluator is pure: it looks only at the candidate string, never at an
account, so it can be called before any storage access.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from deepref_auth.service.errors import WeakPasswordError

MIN_LENGTH = 8
SYMBOLS = "!@#$%^&*"

COMMON_PASSWORDS = (
    "password",
    "password123",
    "12345678",
    "qwerty",
    "abc123",
    "letmein",
    "welcome",
    "monkey",
    "1234567890",
    "password1",
)

_ALPHABET = "abcdefghijklmnopqrstuvwxyz"
_DIGITS = "0123456789"
_SEQUENCES = tuple(
    source[i : i + 3]
    for source in (_ALPHABET, _DIGITS)
    for i in range(len(source) - 2)
)
_REPEATED = re.compile(r"(.)\1{2,}")


class PolicyRule(str, Enum):
    MIN_LENGTH = "min_length"
    MIXED_CASE = "mixed_case"
    DIGIT = "digit"
    SYMBOL = "symbol"
    COMMON_PASSWORD = "common_password"
    SEQUENTIAL = "sequential"
    REPEATED = "repeated"


@dataclass(frozen=True)
class PolicyViolation:
    rule: PolicyRule
    message: str


class PasswordPolicy:
    """Evaluates the seven strength rules in order; the first failure wins."""

    def check(self, candidate: str) -> Optional[PolicyViolation]:
        if len(candidate) < MIN_LENGTH:
            return PolicyViolation(
                PolicyRule.MIN_LENGTH,
                f"Password must be at least {MIN_LENGTH} characters long",
            )
        if not (re.search(r"[A-Z]", candidate) and re.search(r"[a-z]", candidate)):
            return PolicyViolation(
                PolicyRule.MIXED_CASE,
                "Password must contain both uppercase and lowercase letters",
            )
        if not re.search(r"\d", candidate):
            return PolicyViolation(
                PolicyRule.DIGIT, "Password must contain at least one number"
            )
        if not any(ch in SYMBOLS for ch in candidate):
            return PolicyViolation(
                PolicyRule.SYMBOL,
                f"Password must contain at least one special character ({SYMBOLS})",
            )
        lowered = candidate.lower()
        if any(common in lowered for common in COMMON_PASSWORDS):
            return PolicyViolation(
                PolicyRule.COMMON_PASSWORD,
                "Password is too common. Please choose a stronger password",
            )
        if any(run in lowered for run in _SEQUENCES):
            return PolicyViolation(
                PolicyRule.SEQUENTIAL,
                "Password contains sequential characters. Please choose a stronger password",
            )
        if _REPEATED.search(candidate):
            return PolicyViolation(
                PolicyRule.REPEATED,
                "Password contains too many repeated characters. Please choose a stronger password",
            )
        return None

    def validate(self, candidate: str) -> None:
        violation = self.check(candidate)
        if violation is not None:
            raise WeakPasswordError(violation.message, rule=violation.rule.value)
