import pytest

from cogs.Legislature.durations import DEFAULT_DURATION_MS, discord_timestamp, format_time_left, parse_duration


class TestParseDuration:
    @pytest.mark.parametrize("text,expected", [
        ("1h30m", 5_400_000),
        ("30m1h", 5_400_000),
        ("2d 5s", 2 * 86_400_000 + 5_000),
        ("45s", 45_000),
        ("vote for 10m please", 600_000),
    ])
    def test_sums_tokens_in_any_order(self, text, expected):
        assert parse_duration(text) == expected

    @pytest.mark.parametrize("text", ["", None, "soon", "0m", "h"])
    def test_falls_back_to_one_minute(self, text):
        assert parse_duration(text) == DEFAULT_DURATION_MS == 60_000


class TestFormatting:
    @pytest.mark.parametrize("ms,expected", [
        (0, "0s"),
        (-5, "0s"),
        (1_500, "2s"),
        (61_000, "1m 1s"),
        (3_600_000, "1h 0m 0s"),
        (90_061_000, "1d 1h 1m"),
    ])
    def test_format_time_left(self, ms, expected):
        assert format_time_left(ms) == expected

    def test_discord_timestamp_uses_seconds(self):
        assert discord_timestamp(1_700_000_000_999, "R") == "<t:1700000000:R>"
