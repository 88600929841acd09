"""Tiering policy — maps context age to an archive level."""

from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stasis.models import ArchiveLevel


DEFAULT_RETENTION_THRESHOLDS = {
    ArchiveLevel.ACTIVE: 0,
    ArchiveLevel.DORMANT: 3,
    ArchiveLevel.SLEEPING: 6,
    ArchiveLevel.DEEP_SLEEP: 8,
}

DEFAULT_ZLIB_LEVELS = {
    ArchiveLevel.ACTIVE: 1,
    ArchiveLevel.DORMANT: 6,
    ArchiveLevel.SLEEPING: 9,
    ArchiveLevel.DEEP_SLEEP: 9,
}


class TieringPolicy(BaseModel):
    """Age thresholds and per-level archival settings.

    Events with importance >= ``retention_threshold(level)`` are kept
    verbatim; everything below is summarized by the codec. Partial maps
    are merged over the defaults.
    """

    model_config = ConfigDict(extra="forbid")

    dormant_after_days: float = Field(default=7, description="Age at which a context turns Dormant")
    sleeping_after_days: float = Field(default=28, description="Age at which a context turns Sleeping")
    deep_sleep_after_days: float = Field(default=90, description="Age at which a context turns DeepSleep")
    retention_thresholds: dict[ArchiveLevel, int] = Field(
        default_factory=lambda: dict(DEFAULT_RETENTION_THRESHOLDS),
        description="Minimum importance kept verbatim, per level",
    )
    zlib_levels: dict[ArchiveLevel, int] = Field(
        default_factory=lambda: dict(DEFAULT_ZLIB_LEVELS),
        description="zlib compression level for the non-xz tiers",
    )

    @field_validator("retention_thresholds")
    @classmethod
    def validate_retention_thresholds(cls, v: dict[ArchiveLevel, int]) -> dict[ArchiveLevel, int]:
        for level, threshold in v.items():
            if not 0 <= threshold <= 11:
                raise ValueError(f"Retention threshold for {level.value} must be within 0-11")
        return {**DEFAULT_RETENTION_THRESHOLDS, **v}

    @field_validator("zlib_levels")
    @classmethod
    def validate_zlib_levels(cls, v: dict[ArchiveLevel, int]) -> dict[ArchiveLevel, int]:
        for level, zlib_level in v.items():
            if not 0 <= zlib_level <= 9:
                raise ValueError(f"zlib level for {level.value} must be within 0-9")
        return {**DEFAULT_ZLIB_LEVELS, **v}

    @model_validator(mode="after")
    def validate_ordering(self) -> "TieringPolicy":
        if not (0 < self.dormant_after_days < self.sleeping_after_days
                < self.deep_sleep_after_days):
            raise ValueError(
                "Tier thresholds must be positive and strictly increasing: "
                f"{self.dormant_after_days}, {self.sleeping_after_days}, "
                f"{self.deep_sleep_after_days}"
            )
        ordered = [self.retention_thresholds[level] for level in ArchiveLevel]
        if ordered != sorted(ordered):
            raise ValueError("Retention thresholds must not decrease as levels escalate")
        return self

    def select_level(self, age: timedelta) -> ArchiveLevel:
        days = max(age, timedelta(0)) / timedelta(days=1)
        if days >= self.deep_sleep_after_days:
            return ArchiveLevel.DEEP_SLEEP
        if days >= self.sleeping_after_days:
            return ArchiveLevel.SLEEPING
        if days >= self.dormant_after_days:
            return ArchiveLevel.DORMANT
        return ArchiveLevel.ACTIVE

    def retention_threshold(self, level: ArchiveLevel) -> int:
        return self.retention_thresholds[level]

    def zlib_level(self, level: ArchiveLevel) -> int:
        return self.zlib_levels[level]
