"""Error taxonomy shared by the ledger, lease queue, run recorder, and coordinator."""

from __future__ import annotations


class FoundryError(Exception):
    """Base error with a machine-readable ``code`` such as ``invalid_transition:not_terminal``."""

    code = "foundry_error"

    def __init__(self, code: str | None = None, detail: str = "") -> None:
        self.code = code or type(self).code
        self.detail = detail
        super().__init__(f"{self.code}: {detail}" if detail else self.code)


class NotFound(FoundryError, LookupError):
    code = "not_found"


class ConstraintViolation(FoundryError, ValueError):
    code = "constraint_violation"


class InvalidTransition(FoundryError, ValueError):
    code = "invalid_transition"


class LeaseContention(FoundryError, RuntimeError):
    code = "lease_contention"
