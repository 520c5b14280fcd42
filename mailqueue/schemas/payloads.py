"""Typed payload variants, one per mail job kind.

Producers store payloads as JSON with camelCase keys (``employeeName``,
``daysRemaining``); snake_case is accepted too. Every field is optional so
that a payload missing data still renders.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class MailJobKind(str, enum.Enum):
    ONBOARDING_NOTICE = "onboarding_notice"
    PROBATION_WARNING = "probation_warning"
    PROBATION_REMINDER = "probation_reminder"
    MONTHLY_DIGEST = "monthly_digest"
    MANUAL = "manual"


class MailPayload(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    recipients: list[str] = Field(default_factory=list)
    to: list[str] = Field(default_factory=list)
    subject: str | None = None
    content: str | None = None
    text: str | None = None

    @field_validator("recipients", "to", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [item for item in value if isinstance(item, str)]
        return value

    def resolved_recipients(self) -> list[str]:
        """Non-blank addresses from ``recipients`` (or ``to``), de-duplicated in order."""
        candidates = self.recipients or self.to
        seen: dict[str, None] = {}
        for address in candidates:
            address = address.strip()
            if address:
                seen.setdefault(address, None)
        return list(seen)


class _EmployeeFields(MailPayload):
    employee_name: str | None = None
    position: str | None = None
    department: str | None = None


class OnboardingNoticePayload(_EmployeeFields):
    pass


class ProbationPayload(_EmployeeFields):
    days_remaining: int | None = None
    probation_end_date: str | None = None

    @field_validator("probation_end_date", mode="before")
    @classmethod
    def _stringify_date(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class EmployeeListItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    position: str | None = None
    department: str | None = None
    date: str | None = None

    @field_validator("date", mode="before")
    @classmethod
    def _stringify_date(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class MonthlyDigestPayload(MailPayload):
    month: int | str | None = None
    year: int | str | None = None
    group: str | None = None
    onboardings: list[EmployeeListItem] = Field(default_factory=list)
    offboardings: list[EmployeeListItem] = Field(default_factory=list)
    allow_resend_for_already_sent: bool = False

    @field_validator("onboardings", "offboardings", mode="before")
    @classmethod
    def _list_or_empty(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []


class ManualPayload(_EmployeeFields):
    pass


class GenericPayload(MailPayload):
    """Catch-all for kinds this service does not know about."""


PAYLOAD_TYPES: dict[MailJobKind, type[MailPayload]] = {
    MailJobKind.ONBOARDING_NOTICE: OnboardingNoticePayload,
    MailJobKind.PROBATION_WARNING: ProbationPayload,
    MailJobKind.PROBATION_REMINDER: ProbationPayload,
    MailJobKind.MONTHLY_DIGEST: MonthlyDigestPayload,
    MailJobKind.MANUAL: ManualPayload,
}


def parse_kind(kind: str | None) -> MailJobKind | None:
    try:
        return MailJobKind(kind)
    except ValueError:
        return None


def parse_payload(kind: str | None, payload: dict[str, Any] | None) -> MailPayload:
    """Validate *payload* into the variant for *kind*.

    Unknown kinds get :class:`GenericPayload`. Raises
    :class:`pydantic.ValidationError` when a known field has the wrong shape.
    """
    known = parse_kind(kind)
    model = PAYLOAD_TYPES[known] if known is not None else GenericPayload
    return model.model_validate(payload or {})

