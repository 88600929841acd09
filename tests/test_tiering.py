"""Tests for the TieringPolicy."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from stasis.models import ArchiveLevel
from stasis.tiering import TieringPolicy


class TestSelectLevel:

    @pytest.mark.parametrize("days,level", [
        (0, ArchiveLevel.ACTIVE),
        (6.9, ArchiveLevel.ACTIVE),
        (7, ArchiveLevel.DORMANT),
        (27, ArchiveLevel.DORMANT),
        (28, ArchiveLevel.SLEEPING),
        (89, ArchiveLevel.SLEEPING),
        (90, ArchiveLevel.DEEP_SLEEP),
        (400, ArchiveLevel.DEEP_SLEEP),
    ])
    def test_boundaries(self, days, level):
        assert TieringPolicy().select_level(timedelta(days=days)) == level

    def test_negative_age_is_active(self):
        assert TieringPolicy().select_level(timedelta(days=-3)) == ArchiveLevel.ACTIVE

    def test_levels_never_decrease_with_age(self):
        policy = TieringPolicy()
        ranks = [policy.select_level(timedelta(days=d)).rank for d in range(0, 200)]
        assert ranks == sorted(ranks)

    def test_custom_thresholds(self):
        policy = TieringPolicy(dormant_after_days=1, sleeping_after_days=2, deep_sleep_after_days=3)
        assert policy.select_level(timedelta(days=2.5)) == ArchiveLevel.SLEEPING


class TestValidation:

    def test_thresholds_must_increase(self):
        with pytest.raises(ValueError, match="strictly increasing"):
            TieringPolicy(dormant_after_days=30, sleeping_after_days=28)

    def test_retention_must_not_decrease(self):
        with pytest.raises(ValueError, match="Retention thresholds"):
            TieringPolicy(retention_thresholds={ArchiveLevel.DEEP_SLEEP: 2})

    def test_partial_override_keeps_defaults(self):
        policy = TieringPolicy(retention_thresholds={ArchiveLevel.DEEP_SLEEP: 10})
        assert policy.retention_threshold(ArchiveLevel.DEEP_SLEEP) == 10
        assert policy.retention_threshold(ArchiveLevel.DORMANT) == 3
        assert policy.zlib_level(ArchiveLevel.ACTIVE) == 1

    def test_default_retention_thresholds(self):
        policy = TieringPolicy()
        assert [policy.retention_threshold(level) for level in ArchiveLevel] == [0, 3, 6, 8]

    def test_zlib_level_out_of_range(self):
        with pytest.raises(ValidationError, match="zlib level for Dormant"):
            TieringPolicy(zlib_levels={ArchiveLevel.DORMANT: 12})

    def test_level_names_parsed_from_plain_dict(self):
        policy = TieringPolicy.model_validate({"retention_thresholds": {"DeepSleep": "9"}})
        assert policy.retention_threshold(ArchiveLevel.DEEP_SLEEP) == 9

    def test_unknown_level_or_field_rejected(self):
        with pytest.raises(ValidationError):
            TieringPolicy.model_validate({"retention_thresholds": {"Frozen": 9}})
        with pytest.raises(ValidationError, match="Extra inputs"):
            TieringPolicy(hibernate_after_days=5)
