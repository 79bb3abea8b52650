"""Program settings that merchants may change at runtime without a redeploy.

Defaults come from :mod:`rewards.config`; overrides live in ``runtime_setting_overrides`` and are
read inside the transaction of the event being processed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards.config import settings
from rewards.db.models import RuntimeSettingOverride

RuntimeSettingValue = bool | int

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(slots=True, frozen=True)
class RuntimeSettingSpec:
    key: str
    value_type: str
    description: str
    min_value: int | None = None
    max_value: int | None = None
    blank_value: str | None = None

    @property
    def default_value(self) -> RuntimeSettingValue:
        return self.coerce(getattr(settings, self.key))

    def coerce(self, value: object) -> RuntimeSettingValue:
        return bool(value) if self.value_type == "bool" else int(value)

    def parse(self, raw_value: str) -> RuntimeSettingValue:
        normalized = raw_value.strip()
        if self.value_type == "bool":
            if normalized.lower() in _TRUE_VALUES:
                return True
            if normalized.lower() in _FALSE_VALUES:
                return False
            raise ValueError("Expected boolean value: true/false (or 1/0)")

        try:
            parsed = int(normalized)
        except ValueError as exc:
            raise ValueError("Expected integer value") from exc
        if self.min_value is not None and parsed < self.min_value:
            raise ValueError(f"Value must be >= {self.min_value}")
        if self.max_value is not None and parsed > self.max_value:
            raise ValueError(f"Value must be <= {self.max_value}")
        return parsed

    def serialize(self, value: RuntimeSettingValue) -> str:
        if self.value_type == "bool":
            return "true" if value else "false"
        return str(int(value))

    def effective(self, override: RuntimeSettingOverride | None) -> RuntimeSettingValue:
        if override is None:
            return self.default_value
        try:
            return self.parse(override.value)
        except ValueError:
            return self.default_value


@dataclass(slots=True, frozen=True)
class RuntimeSettingSnapshotItem:
    key: str
    value_type: str
    description: str
    default_value: RuntimeSettingValue
    effective_value: RuntimeSettingValue
    override_raw_value: str | None
    updated_by: str | None
    updated_at: datetime | None


@dataclass(slots=True, frozen=True)
class RewardsProgramConfig:
    rewards_enabled: bool
    points_per_dollar: int
    points_expiration_days: int
    refund_expiration_days: int

    def expiration_days_or_none(self) -> int | None:
        return self.points_expiration_days if self.points_expiration_days > 0 else None

    def refund_expiration_days_or_none(self) -> int | None:
        if self.refund_expiration_days > 0:
            return self.refund_expiration_days
        return self.expiration_days_or_none()


@dataclass(slots=True)
class ProgramConfigUpdateResult:
    ok: bool
    errors: dict[str, str] = field(default_factory=dict)
    config: RewardsProgramConfig | None = None


PROGRAM_SETTINGS: tuple[RuntimeSettingSpec, ...] = (
    RuntimeSettingSpec(
        key="points_expiration_days",
        value_type="int",
        description="Days until an earned lot expires (0 keeps lots forever).",
        min_value=0,
        max_value=3650,
        blank_value="0",
    ),
    RuntimeSettingSpec(
        key="points_per_dollar",
        value_type="int",
        description="Balance units earned per 100 minor units of paid order total.",
        min_value=0,
        max_value=100_000,
    ),
    RuntimeSettingSpec(
        key="rewards_enabled",
        value_type="bool",
        description="Accrue and reconcile rewards from order events.",
    ),
)
RUNTIME_SETTING_SPECS: dict[str, RuntimeSettingSpec] = {spec.key: spec for spec in PROGRAM_SETTINGS}


def get_runtime_setting_spec(key: str) -> RuntimeSettingSpec:
    normalized_key = key.strip().lower()
    try:
        return RUNTIME_SETTING_SPECS[normalized_key]
    except KeyError:
        raise ValueError(f"Unknown runtime setting key: {normalized_key}") from None


def parse_runtime_setting_value(key: str, raw_value: str) -> RuntimeSettingValue:
    return get_runtime_setting_spec(key).parse(raw_value)


async def _load_overrides(session: AsyncSession) -> dict[str, RuntimeSettingOverride]:
    rows = await session.scalars(
        select(RuntimeSettingOverride).where(RuntimeSettingOverride.key.in_(tuple(RUNTIME_SETTING_SPECS)))
    )
    return {row.key: row for row in rows}


async def build_runtime_settings_snapshot(session: AsyncSession) -> list[RuntimeSettingSnapshotItem]:
    overrides = await _load_overrides(session)
    items: list[RuntimeSettingSnapshotItem] = []
    for spec in PROGRAM_SETTINGS:
        row = overrides.get(spec.key)
        items.append(
            RuntimeSettingSnapshotItem(
                key=spec.key,
                value_type=spec.value_type,
                description=spec.description,
                default_value=spec.default_value,
                effective_value=spec.effective(row),
                override_raw_value=row.value if row is not None else None,
                updated_by=row.updated_by if row is not None else None,
                updated_at=row.updated_at if row is not None else None,
            )
        )
    return items


async def load_program_config(session: AsyncSession) -> RewardsProgramConfig:
    overrides = await _load_overrides(session)
    values = {spec.key: spec.effective(overrides.get(spec.key)) for spec in PROGRAM_SETTINGS}
    return RewardsProgramConfig(
        rewards_enabled=bool(values["rewards_enabled"]),
        points_per_dollar=int(values["points_per_dollar"]),
        points_expiration_days=int(values["points_expiration_days"]),
        refund_expiration_days=max(int(settings.refund_expiration_days), 0),
    )


def validate_program_config_input(raw: dict[str, object]) -> tuple[dict[str, str], dict[str, str]]:
    """Split a settings form into (serialized values, field errors); unknown keys are ignored."""
    serialized: dict[str, str] = {}
    errors: dict[str, str] = {}
    for spec in PROGRAM_SETTINGS:
        if spec.key not in raw:
            continue
        value = raw[spec.key]
        if value is None or value == "":
            if spec.blank_value is None:
                errors[spec.key] = "Value is required"
                continue
            value = spec.blank_value
        if isinstance(value, bool):
            value = spec.serialize(value)
        try:
            serialized[spec.key] = spec.serialize(spec.parse(str(value)))
        except ValueError as exc:
            errors[spec.key] = str(exc)
    return serialized, errors


async def upsert_runtime_setting_override(
    session: AsyncSession,
    *,
    key: str,
    raw_value: str,
    updated_by: str | None,
) -> RuntimeSettingOverride:
    spec = get_runtime_setting_spec(key)
    value = spec.serialize(spec.parse(raw_value))
    now = datetime.now(UTC)

    row = await session.scalar(
        select(RuntimeSettingOverride).where(RuntimeSettingOverride.key == spec.key).with_for_update()
    )
    if row is None:
        row = RuntimeSettingOverride(key=spec.key, value=value, updated_by=updated_by, updated_at=now)
        session.add(row)
    else:
        row.value = value
        row.updated_by = updated_by
        row.updated_at = now
    await session.flush()
    return row


async def update_program_config(
    session: AsyncSession,
    *,
    raw: dict[str, object],
    updated_by: str | None,
) -> ProgramConfigUpdateResult:
    serialized, errors = validate_program_config_input(raw)
    if errors:
        return ProgramConfigUpdateResult(ok=False, errors=errors)

    for key, value in serialized.items():
        await upsert_runtime_setting_override(session, key=key, raw_value=value, updated_by=updated_by)
    return ProgramConfigUpdateResult(ok=True, config=await load_program_config(session))
