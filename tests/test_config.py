"""
בדיקות ל-Settings - ולידציות שנכשלות מהר בהפעלה
"""
import warnings

import pytest

from app.core.config import Settings, parse_int_list


def _settings(**overrides) -> Settings:
    values = {"ADMIN_API_KEY": "k", "DATABASE_URL": "sqlite+aiosqlite:///:memory:"}
    values.update(overrides)
    return Settings(**values)


class TestDatabaseUrl:

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", [
        "postgres://u:p@db:5432/leads",
        "postgresql://u:p@db:5432/leads",
    ])
    def test_converted_to_asyncpg(self, raw):
        assert _settings(DATABASE_URL=raw).DATABASE_URL == "postgresql+asyncpg://u:p@db:5432/leads"


class TestOracleProvider:

    @pytest.mark.unit
    def test_normalized(self):
        assert _settings(ORACLE_PROVIDER=" Rules ").ORACLE_PROVIDER == "rules"

    @pytest.mark.unit
    def test_unknown_rejected(self):
        with pytest.raises(ValueError, match="ORACLE_PROVIDER"):
            _settings(ORACLE_PROVIDER="gpt")


class TestGatewayUrl:

    @pytest.mark.unit
    def test_scheme_added_and_slash_stripped(self):
        assert _settings(SMS_GATEWAY_URL="sms-gateway:3000/").SMS_GATEWAY_URL == "http://sms-gateway:3000"


class TestSchedules:

    @pytest.mark.unit
    def test_parsed(self):
        s = _settings(NUDGE_SCHEDULE_SECONDS="60, 120,300", DRIP_SCHEDULE_SECONDS="900")
        assert s.nudge_schedule == [60, 120, 300]
        assert s.drip_schedule == [900]

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["", "abc", "900,-5", "0"])
    def test_invalid_rejected(self, raw):
        with pytest.raises(ValueError, match="schedule"):
            _settings(NUDGE_SCHEDULE_SECONDS=raw)

    @pytest.mark.unit
    def test_parse_int_list_skips_blanks(self):
        assert parse_int_list("1,,2, ") == [1, 2]


class TestSchedulerSettings:

    @pytest.mark.unit
    def test_max_retries_at_least_one(self):
        with pytest.raises(ValueError, match="SMS_MAX_RETRIES"):
            _settings(SMS_MAX_RETRIES=0)

    @pytest.mark.unit
    @pytest.mark.parametrize("overrides", [
        {"BUSINESS_HOURS_START": 22, "BUSINESS_HOURS_END": 8},
        {"BUSINESS_HOURS_END": 25},
        {"HUMAN_DELAY_MIN_SECONDS": 100, "HUMAN_DELAY_MAX_SECONDS": 90},
        {"STALL_URGENCY_THRESHOLD": 5, "STALL_BREAKUP_THRESHOLD": 4},
        {"NUDGE_MAX_COUNT": 0},
        {"DRIP_MAX_ATTEMPTS": 0},
    ])
    def test_inconsistent_values_rejected(self, overrides):
        with pytest.raises(ValueError):
            _settings(**overrides)

    @pytest.mark.unit
    def test_missing_admin_key_warns(self):
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            _settings(ADMIN_API_KEY="", DEBUG=False)
        assert any("ADMIN_API_KEY" in str(x.message) for x in w)

    @pytest.mark.unit
    def test_defaults_are_valid(self):
        s = _settings()
        assert s.BUSINESS_TIMEZONE == "America/New_York"
        assert s.nudge_schedule[0] == 900
        assert len(s.drip_schedule) == s.DRIP_MAX_ATTEMPTS
