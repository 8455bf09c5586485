from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from freeride.core.clock import as_utc


TargetType = Literal["NEW_USERS", "EXISTING_BY_DAYS", "EXISTING_BY_SPEND", "MANUAL"]
BeneficiaryStatus = Literal["pending", "active", "exhausted"]

_REQUIRED_ON_UPDATE = ("name", "number_of_days", "target_type", "is_active")


def check_rule_windows(
    start_hour: int | None,
    end_hour: int | None,
    valid_from: datetime | None,
    valid_until: datetime | None,
) -> None:
    if start_hour is None and end_hour == 0:
        raise ValueError("end_hour 0 without a start_hour leaves an empty window")
    if start_hour is not None and end_hour is not None and start_hour >= end_hour:
        # Windows crossing midnight (e.g. 22h-6h) are not supported by the same-day hour check.
        raise ValueError("start_hour must be lower than end_hour; windows spanning midnight are not supported")
    if valid_from is not None and valid_until is not None and as_utc(valid_from) > as_utc(valid_until):
        raise ValueError("valid_from must not be after valid_until")


class FreeDaysRuleCreateIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    number_of_days: int = Field(..., ge=1, le=3650)
    target_type: TargetType = "NEW_USERS"
    target_days_since_registration: int | None = Field(default=None, ge=0)
    target_min_spend: Decimal | None = Field(default=None, ge=0)
    start_hour: int | None = Field(default=None, ge=0, le=23)
    end_hour: int | None = Field(default=None, ge=0, le=23)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    max_beneficiaries: int | None = Field(default=None, ge=1)

    @field_validator("valid_from", "valid_until")
    @classmethod
    def store_as_utc(cls, value):
        return as_utc(value)

    @model_validator(mode="after")
    def validate_windows(self):
        check_rule_windows(self.start_hour, self.end_hour, self.valid_from, self.valid_until)
        return self


class FreeDaysRuleUpdateIn(BaseModel):
    """Partial update; only the fields explicitly provided are applied."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    number_of_days: int | None = Field(default=None, ge=1, le=3650)
    target_type: TargetType | None = None
    target_days_since_registration: int | None = Field(default=None, ge=0)
    target_min_spend: Decimal | None = Field(default=None, ge=0)
    start_hour: int | None = Field(default=None, ge=0, le=23)
    end_hour: int | None = Field(default=None, ge=0, le=23)
    is_active: bool | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    max_beneficiaries: int | None = Field(default=None, ge=1)

    @field_validator("valid_from", "valid_until")
    @classmethod
    def store_as_utc(cls, value):
        return as_utc(value)

    @model_validator(mode="after")
    def validate_required_fields(self):
        for field in _REQUIRED_ON_UPDATE:
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"{field} cannot be cleared")
        return self

    def changes(self) -> dict:
        return self.model_dump(include=self.model_fields_set)


class RiderBriefOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None


class FreeDaysRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None = None
    number_of_days: int
    target_type: TargetType
    target_days_since_registration: int | None = None
    target_min_spend: Decimal | None = None
    start_hour: int | None = None
    end_hour: int | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    max_beneficiaries: int | None = None
    current_beneficiaries: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


class FreeDaysRuleListItemOut(FreeDaysRuleOut):
    beneficiary_count: int = 0


class BeneficiaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rule_id: UUID
    user_id: UUID
    status: BeneficiaryStatus
    days_granted: int
    days_remaining: int
    days_used: int
    start_date: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool


class BeneficiaryWithRiderOut(BeneficiaryOut):
    rider: RiderBriefOut | None = None


class FreeDaysRuleDetailOut(FreeDaysRuleOut):
    beneficiaries: list[BeneficiaryWithRiderOut] = Field(default_factory=list)


class FreeDayRuleBriefOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    start_hour: int | None = None
    end_hour: int | None = None


class UserFreeDayOut(BeneficiaryOut):
    rule: FreeDayRuleBriefOut


class FreeDayApplicationOut(BaseModel):
    applied: bool
    overtime_cost: float = 0
    rule_name: str = ""


class RegistrationSweepOut(BaseModel):
    rules: int = 0
    granted: int = 0
    skipped: int = 0
