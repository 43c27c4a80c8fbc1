from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

LicenseType = Literal["professional", "organization"]

DEFAULT_LICENSE_TYPE: LicenseType = "professional"


@dataclass(frozen=True, slots=True)
class LicenseTier:
    license_type: LicenseType
    label: str
    max_subscribers: int | None

    @property
    def unbounded(self) -> bool:
        return self.max_subscribers is None


LICENSE_TIERS: dict[str, LicenseTier] = {
    "professional": LicenseTier(license_type="professional", label="Professional", max_subscribers=3),
    "organization": LicenseTier(license_type="organization", label="Organization", max_subscribers=None),
}

# Tier names persisted by earlier versions of the console.
LEGACY_LICENSE_ALIASES: dict[str, str] = {
    "pilot": "professional",
    "personal": "professional",
    "team": "professional",
    "production": "organization",
    "enterprise": "organization",
}


def normalize_license_type(license_type: str | None) -> str:
    normalized = (license_type or "").strip().lower()
    if normalized in LICENSE_TIERS:
        return normalized
    return LEGACY_LICENSE_ALIASES.get(normalized, DEFAULT_LICENSE_TYPE)


def tier_for(license_type: str | None) -> LicenseTier:
    return LICENSE_TIERS[normalize_license_type(license_type)]


def limit_for(license_type: str | None) -> int | None:
    """Maximum active subscribers for a tier; ``None`` means unbounded."""
    return tier_for(license_type).max_subscribers


@dataclass(slots=True)
class LicenseUsage:
    license_type: str
    label: str
    limit: int | None
    current: int
    remaining: int | None

    @property
    def at_limit(self) -> bool:
        return self.remaining == 0


def license_usage(license_type: str | None, current: int) -> LicenseUsage:
    tier = tier_for(license_type)
    limit = tier.max_subscribers
    return LicenseUsage(
        license_type=tier.license_type,
        label=tier.label,
        limit=limit,
        current=current,
        remaining=None if limit is None else max(0, limit - current),
    )
