"""
Free days error hierarchy.

Provides:
- FreeDaysError: base for all engine failures
- ValidationError: missing or invalid input on create/update
- NotFoundError: rule or beneficiary does not resolve
- ConflictError: duplicate (rule, rider) grant
- CapacityExceededError: rule cap reached on a manual grant
- AlreadyActiveError: activation of an already activated grant
"""

from typing import Any, Optional


class FreeDaysError(Exception):
    """Base exception for free days failures."""

    error_code = "FREE_DAYS_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
        }


class ValidationError(FreeDaysError):
    """Raised when create/update input is missing or invalid. Not retried."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None):
        self.errors = errors or []
        super().__init__(message)

    def to_dict(self) -> dict:
        out = super().to_dict()
        if self.errors:
            out["errors"] = self.errors
        return out


class NotFoundError(FreeDaysError):
    error_code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = str(entity_id)
        super().__init__(f"{entity} {entity_id} not found")


class ConflictError(FreeDaysError):
    error_code = "CONFLICT"

    def __init__(self, rule_id: Any, user_id: Any):
        self.rule_id = str(rule_id)
        self.user_id = str(user_id)
        super().__init__(f"Rider {user_id} already benefits from rule {rule_id}")


class CapacityExceededError(FreeDaysError):
    """Raised when a manual grant would push a rule past max_beneficiaries."""

    error_code = "CAPACITY_EXCEEDED"

    def __init__(self, rule_id: Any, max_beneficiaries: Optional[int]):
        self.rule_id = str(rule_id)
        self.max_beneficiaries = max_beneficiaries
        super().__init__(f"Rule {rule_id} reached its maximum of {max_beneficiaries} beneficiaries")


class AlreadyActiveError(FreeDaysError):
    error_code = "ALREADY_ACTIVE"

    def __init__(self, beneficiary_id: Any):
        self.beneficiary_id = str(beneficiary_id)
        super().__init__(f"Free days grant {beneficiary_id} is already activated")
