"""Immutable alert preference snapshots.

Channels, domains and severities are fixed fields rather than string-keyed
maps, so an unknown key is rejected at validation time instead of being
silently ignored. A snapshot is frozen and is passed explicitly into every
dispatch decision.
"""

from __future__ import annotations

from datetime import time
from enum import Enum
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.config import settings
from app.models.compliance import Domain
from app.models.notification import Channel, Severity


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class DigestMode(str, Enum):
    immediate = "immediate"
    daily = "daily"
    weekly = "weekly"


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class EmailChannel(_Frozen):
    enabled: bool = True
    primary_email: str | None = None
    secondary_email: str | None = None
    digest_mode: DigestMode = DigestMode.immediate


class SmsChannel(_Frozen):
    enabled: bool = False
    phone_number: str | None = None
    only_critical: bool = True


class WhatsAppChannel(_Frozen):
    enabled: bool = False
    phone_number: str | None = None
    include_documents: bool = False


class InAppChannel(_Frozen):
    enabled: bool = True
    show_badge: bool = True
    play_sound: bool = False


class PushChannel(_Frozen):
    enabled: bool = True
    device_tokens: tuple[str, ...] = ()


class ChannelPreferences(_Frozen):
    email: EmailChannel = EmailChannel()
    sms: SmsChannel = SmsChannel()
    whatsapp: WhatsAppChannel = WhatsAppChannel()
    in_app: InAppChannel = InAppChannel()
    push: PushChannel = PushChannel()

    def for_channel(self, channel: Channel):
        return getattr(self, channel.value)


# ---------------------------------------------------------------------------
# Domains
# ---------------------------------------------------------------------------


def _default_reminder_days() -> tuple[int, ...]:
    return tuple(settings.default_reminder_days)


class DomainPreference(_Frozen):
    enabled: bool = True
    reminder_days: tuple[int, ...] = Field(default_factory=_default_reminder_days)

    @field_validator("reminder_days")
    @classmethod
    def _non_negative(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if any(day < 0 for day in value):
            raise ValueError("reminder_days must be zero or positive")
        return tuple(sorted(set(value), reverse=True))


class DomainPreferences(_Frozen):
    CORPORATE: DomainPreference = DomainPreference()
    TAX_GST: DomainPreference = DomainPreference()
    TAX_INCOME: DomainPreference = DomainPreference()
    LABOUR: DomainPreference = DomainPreference()
    FEMA: DomainPreference = DomainPreference()
    LICENSES: DomainPreference = DomainPreference()

    def for_domain(self, domain: Domain) -> DomainPreference:
        return getattr(self, domain.value)


# ---------------------------------------------------------------------------
# Severities
# ---------------------------------------------------------------------------


class SeverityPreference(_Frozen):
    enabled: bool = True
    channels: tuple[Channel, ...] = (Channel.email, Channel.in_app)
    send_immediately: bool = True


class SeverityPreferences(_Frozen):
    critical: SeverityPreference = SeverityPreference(
        channels=(Channel.email, Channel.sms, Channel.whatsapp, Channel.in_app, Channel.push),
        send_immediately=True,
    )
    warning: SeverityPreference = SeverityPreference(
        channels=(Channel.email, Channel.in_app, Channel.push),
        send_immediately=True,
    )
    info: SeverityPreference = SeverityPreference(
        channels=(Channel.email, Channel.in_app),
        send_immediately=False,
    )

    def for_severity(self, severity: Severity) -> SeverityPreference:
        return getattr(self, severity.value)


# ---------------------------------------------------------------------------
# Quiet hours and escalation
# ---------------------------------------------------------------------------


class QuietHours(_Frozen):
    enabled: bool = False
    start_time: time = time(22, 0)
    end_time: time = time(7, 0)
    timezone: str | None = None
    except_critical: bool = True

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value


class EscalationSettings(_Frozen):
    enabled: bool = False
    escalate_after_hours: int = Field(default=24, ge=1)
    escalate_to: str | None = None


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


class AlertPreferenceSnapshot(_Frozen):
    notifications_enabled: bool = True
    channels: ChannelPreferences = ChannelPreferences()
    domains: DomainPreferences = DomainPreferences()
    severities: SeverityPreferences = SeverityPreferences()
    quiet_hours: QuietHours = QuietHours()
    escalation: EscalationSettings = EscalationSettings()


class AlertPreferenceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_id: UUID
    contact_id: str | None = None
    version: int
    preferences: AlertPreferenceSnapshot


class AlertPreferenceUpdate(BaseModel):
    contact_id: str | None = None
    updated_by: str | None = None
    preferences: AlertPreferenceSnapshot
