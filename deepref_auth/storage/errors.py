from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class ConstraintViolation(Exception):
    """Raised when a uniqueness constraint (account email, token digest) is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaMissingError(RuntimeError):
    """Raised at start-up when the relational schema lacks required tables."""

    def __init__(self, tables: Sequence[str]):
        self.tables = sorted(tables)
        super().__init__(
            "Missing required Postgres tables: {}; apply the account/session schema first".format(
                ", ".join(self.tables)
            )
        )


__all__ = ["ConstraintViolation", "SchemaMissingError"]
