from freeride.models.user import Rider
from freeride.models.audit_log import AuditLog
from freeride.models.free_days import (
    Active,
    BeneficiaryState,
    FreeDaysBeneficiary,
    FreeDaysRule,
    Pending,
)
