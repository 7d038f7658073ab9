"""
Typed tenant settings.

``tenants.settings`` is stored as JSON but never handled as a raw dict in
the service layer: it is parsed into :class:`TenantSettings`, which
validates keys and value types and upgrades old payloads.

Schema versions:
    1 — flat dict: ``tz``, ``language``, ``currency``, ``feature_<name>``
        booleans at the top level.
    2 — ``timezone``, ``locale``, ``currency``, ``week_start``,
        ``features`` (dict), ``password_max_age_days``, ``mfa_required``.

Usage:
    settings = TenantSettings.from_dict(tenant.settings)
    settings = settings.merged({"locale": "de"})
    tenant.settings = settings.to_dict()
"""

from dataclasses import asdict, dataclass, field, fields, replace
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CURRENT_SCHEMA_VERSION = 2

WEEK_STARTS = {"monday", "sunday", "saturday"}


class SettingsError(ValueError):
    """Settings payload has unknown keys or badly typed values."""

    def __init__(self, message, details=None):
        self.details = details or {}
        super().__init__(message)


def _upgrade_v1(data: dict) -> dict:
    out = {}
    features = dict(data.get("features") or {})
    for key, value in data.items():
        if key == "tz":
            out["timezone"] = value
        elif key == "language":
            out["locale"] = value
        elif key.startswith("feature_"):
            features[key[len("feature_"):]] = bool(value)
        elif key in ("schema_version", "features"):
            continue
        else:
            out[key] = value
    out["features"] = features
    out["schema_version"] = 2
    return out


# version -> function upgrading a payload to version + 1
_MIGRATIONS = {
    1: _upgrade_v1,
}


@dataclass(frozen=True)
class TenantSettings:
    """Validated, versioned tenant configuration."""

    timezone: str = "UTC"
    locale: str = "en"
    currency: str = "USD"
    week_start: str = "monday"
    features: dict = field(default_factory=dict)
    password_max_age_days: int | None = None
    mfa_required: bool = False
    schema_version: int = CURRENT_SCHEMA_VERSION

    def __post_init__(self):
        errors = {}
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError, TypeError):
            errors["timezone"] = f"unknown timezone {self.timezone!r}"
        if not isinstance(self.locale, str) or not 2 <= len(self.locale) <= 10:
            errors["locale"] = "must be a locale tag like 'en' or 'en-GB'"
        if not isinstance(self.currency, str) or len(self.currency) != 3 or not self.currency.isalpha():
            errors["currency"] = "must be a 3-letter ISO 4217 code"
        if self.week_start not in WEEK_STARTS:
            errors["week_start"] = f"must be one of {sorted(WEEK_STARTS)}"
        if not isinstance(self.features, dict) or not all(
            isinstance(k, str) and isinstance(v, bool) for k, v in self.features.items()
        ):
            errors["features"] = "must map feature names to booleans"
        if self.password_max_age_days is not None and (
            isinstance(self.password_max_age_days, bool)
            or not isinstance(self.password_max_age_days, int)
            or self.password_max_age_days < 1
        ):
            errors["password_max_age_days"] = "must be a positive integer or null"
        if not isinstance(self.mfa_required, bool):
            errors["mfa_required"] = "must be a boolean"
        if errors:
            raise SettingsError("Invalid tenant settings", details=errors)

    # ── Construction ─────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: dict | None) -> "TenantSettings":
        """Parse a stored payload, upgrading it to the current schema version."""
        data = dict(data or {})
        version = data.get("schema_version", 1 if data else CURRENT_SCHEMA_VERSION)
        if not isinstance(version, int) or version < 1 or version > CURRENT_SCHEMA_VERSION:
            raise SettingsError(f"Unsupported settings schema_version {version!r}")
        while version < CURRENT_SCHEMA_VERSION:
            data = _MIGRATIONS[version](data)
            version = data["schema_version"]

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise SettingsError(
                "Unknown settings keys",
                details={k: "unknown key" for k in unknown},
            )
        data["schema_version"] = CURRENT_SCHEMA_VERSION
        return cls(**data)

    def merged(self, changes: dict) -> "TenantSettings":
        """Return a copy with *changes* applied (``features`` merges key-wise)."""
        changes = dict(changes or {})
        changes.pop("schema_version", None)
        known = {f.name for f in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise SettingsError(
                "Unknown settings keys",
                details={k: "unknown key" for k in unknown},
            )
        if "features" in changes and isinstance(changes["features"], dict):
            changes["features"] = {**self.features, **changes["features"]}
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return asdict(self)

    def feature_enabled(self, name: str) -> bool:
        return bool(self.features.get(name, False))
