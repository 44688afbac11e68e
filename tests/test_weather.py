import re
import unittest
from datetime import datetime, timedelta, timezone

from stravahook.models import Activity, SkyCode, WeatherSample, WeatherSummary
from stravahook.weather import (
    aggregate,
    aggregate_sky,
    bracketing_pair,
    build_summaries,
    compass_direction,
    format_narrative,
    format_summary,
    weather_narrative_for,
)


START = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _sample(minutes, temperature=60.0, sky=SkyCode.Clear, **overrides):
    values = {
        "time": START + timedelta(minutes=minutes),
        "temperature_f": temperature,
        "dew_point_f": 50.0,
        "humidity_pct": 70.0,
        "precipitation_in": 0.0,
        "sky": sky,
        "wind_speed_mph": 5.0,
        "wind_gust_mph": 9.0,
        "wind_direction_deg": 180.0,
    }
    values.update(overrides)
    return WeatherSample(**values)


def _quarter_hours(first_minute, last_minute):
    return [
        _sample(minute, temperature=50.0 + minute / 15)
        for minute in range(first_minute, last_minute + 1, 15)
    ]


class TestCompassDirection(unittest.TestCase):
    def test_sector_boundaries(self) -> None:
        self.assertEqual(
            [compass_direction(value) for value in (0, 11.2, 11.3, 350)],
            ["N", "N", "NNE", "N"],
        )

    def test_cardinal_points(self) -> None:
        self.assertEqual(compass_direction(90), "E")
        self.assertEqual(compass_direction(180), "S")
        self.assertEqual(compass_direction(225), "SW")
        self.assertEqual(compass_direction(337.5), "NNW")
        self.assertEqual(compass_direction(360), "N")


class TestAggregateSky(unittest.TestCase):
    def test_warm_overcast_with_clear_reads_mainly_clear(self) -> None:
        self.assertEqual(aggregate_sky([SkyCode.Overcast, SkyCode.MainlyClear], 60.0), SkyCode.MainlyClear)

    def test_cold_keeps_most_severe(self) -> None:
        self.assertEqual(aggregate_sky([SkyCode.Overcast, SkyCode.MainlyClear], 49.9), SkyCode.Overcast)

    def test_warm_overcast_with_partly_cloudy(self) -> None:
        self.assertEqual(aggregate_sky([SkyCode.Overcast, SkyCode.PartlyCloudy], 50.0), SkyCode.PartlyCloudy)

    def test_warm_partly_cloudy_with_clear(self) -> None:
        self.assertEqual(aggregate_sky([SkyCode.PartlyCloudy, SkyCode.Clear], 70.0), SkyCode.MainlyClear)

    def test_warm_overcast_alone(self) -> None:
        self.assertEqual(aggregate_sky([SkyCode.Overcast, SkyCode.Overcast], 70.0), SkyCode.Overcast)

    def test_precipitation_is_never_downgraded(self) -> None:
        self.assertEqual(aggregate_sky([SkyCode.SlightRain, SkyCode.Clear], 80.0), SkyCode.SlightRain)


class TestAggregate(unittest.TestCase):
    def test_means_sum_and_first_direction(self) -> None:
        merged = aggregate(
            [
                _sample(0, temperature=60.0, precipitation_in=0.01, wind_direction_deg=10.0, wind_speed_mph=4.0),
                _sample(15, temperature=64.0, precipitation_in=0.02, wind_direction_deg=200.0, wind_speed_mph=6.0),
            ]
        )
        self.assertAlmostEqual(merged.temperature_f, 62.0)
        self.assertAlmostEqual(merged.precipitation_in, 0.03)
        self.assertAlmostEqual(merged.wind_speed_mph, 5.0)
        self.assertEqual(merged.wind_direction_deg, 10.0)

    def test_empty_set_rejected(self) -> None:
        with self.assertRaises(ValueError):
            aggregate([])


class TestBuildSummaries(unittest.TestCase):
    def test_short_activity_averages_in_range_samples(self) -> None:
        samples = _quarter_hours(-15, 45)
        summaries = build_summaries(samples, START, 1800)
        self.assertEqual(len(summaries), 1)
        self.assertIsNone(summaries[0].label)
        # In range: minutes 0, 15 and 30.
        self.assertAlmostEqual(summaries[0].sample.temperature_f, 51.0)

    def test_short_activity_falls_back_to_nearest_sample(self) -> None:
        samples = [_sample(-30, temperature=40.0), _sample(60, temperature=80.0)]
        summaries = build_summaries(samples, START, 1800)
        self.assertEqual(len(summaries), 1)
        self.assertEqual(summaries[0].sample.temperature_f, 40.0)

    def test_two_hour_activity_has_start_and_end(self) -> None:
        start = START + timedelta(minutes=5)
        samples = _quarter_hours(-15, 150)
        summaries = build_summaries(samples, start, 7200)
        self.assertEqual([summary.label for summary in summaries], ["Start", "End"])
        # Start brackets minutes 0 and 15, end brackets minutes 120 and 135.
        self.assertAlmostEqual(summaries[0].sample.temperature_f, 50.5)
        self.assertAlmostEqual(summaries[1].sample.temperature_f, 58.5)

    def test_three_hour_activity_adds_middle(self) -> None:
        samples = _quarter_hours(-15, 195)
        summaries = build_summaries(samples, START, 10800)
        self.assertEqual([summary.label for summary in summaries], ["Start", "Middle", "End"])
        # Anchors on sample times bracket the same sample twice.
        self.assertAlmostEqual(summaries[1].sample.temperature_f, 56.0)

    def test_middle_anchor_uses_whole_seconds(self) -> None:
        samples = _quarter_hours(-15, 195)
        summaries = build_summaries(samples, START, 10801)
        self.assertEqual(summaries[1].label, "Middle")
        # Half of 10801s truncates onto the 90 minute sample.
        self.assertAlmostEqual(summaries[1].sample.temperature_f, 56.0)

    def test_hour_boundary(self) -> None:
        samples = _quarter_hours(-15, 75)
        self.assertEqual(len(build_summaries(samples, START, 3599)), 1)
        self.assertEqual(len(build_summaries(samples, START, 3600)), 2)

    def test_no_samples(self) -> None:
        self.assertEqual(build_summaries([], START, 7200), [])

    def test_bracketing_pair_uses_one_side_when_other_missing(self) -> None:
        samples = _quarter_hours(0, 30)
        pair = bracketing_pair(samples, START + timedelta(minutes=40))
        self.assertEqual([sample.time for sample in pair], [START + timedelta(minutes=30)])


class TestFormatting(unittest.TestCase):
    def test_format_summary(self) -> None:
        sample = _sample(
            0,
            temperature=61.5,
            dew_point_f=48.4,
            humidity_pct=62.5,
            wind_speed_mph=7.5,
            wind_gust_mph=12.2,
            wind_direction_deg=225.0,
            sky=SkyCode.PartlyCloudy,
        )
        self.assertEqual(
            format_summary(sample),
            "62F, Dew 48F, Hum 62%, Wind 8mph SW (gust 12), Sky PartlyCloudy",
        )

    def test_precip_suffix(self) -> None:
        text = format_summary(_sample(0, precipitation_in=0.01, sky=SkyCode.SlightRain))
        self.assertTrue(text.endswith("Sky SlightRain, some precip"))

    def test_formatted_numbers_parse_back_to_rounded_values(self) -> None:
        values = [(0.5, 1.5, 2.5, 3.5, 4.5), (72.49, 55.51, 99.5, 10.5, 21.5), (-3.5, -12.5, 0.0, 0.4, 0.6)]
        for temperature, dew, humidity, wind, gust in values:
            sample = _sample(
                0,
                temperature=temperature,
                dew_point_f=dew,
                humidity_pct=humidity,
                wind_speed_mph=wind,
                wind_gust_mph=gust,
            )
            match = re.match(
                r"(-?\d+)F, Dew (-?\d+)F, Hum (-?\d+)%, Wind (-?\d+)mph \w+ \(gust (-?\d+)\)",
                format_summary(sample),
            )
            self.assertIsNotNone(match)
            parsed = tuple(int(group) for group in match.groups())
            self.assertEqual(parsed, tuple(round(value) for value in (temperature, dew, humidity, wind, gust)))

    def test_single_narrative(self) -> None:
        summary = WeatherSummary(label=None, sample=_sample(0))
        self.assertEqual(format_narrative([summary]), " \nWeather: " + format_summary(summary.sample))

    def test_labeled_narrative(self) -> None:
        start = WeatherSummary(label="Start", sample=_sample(0))
        middle = WeatherSummary(label="Middle", sample=_sample(90))
        end = WeatherSummary(label="End", sample=_sample(180))
        text = format_narrative([start, middle, end])
        expected = (
            " \nWeather: \n"
            + "Start: " + format_summary(start.sample)
            + " \nMiddle: " + format_summary(middle.sample)
            + " \nEnd: " + format_summary(end.sample)
        )
        self.assertEqual(text, expected)

    def test_empty_narrative(self) -> None:
        self.assertEqual(format_narrative([]), "")


class _FakeSource:
    def __init__(self, samples):
        self.samples = samples
        self.calls = []

    def get_samples(self, start, end, latitude, longitude):
        self.calls.append((start, end, latitude, longitude))
        return self.samples


def _activity(**overrides):
    values = {
        "id": 1,
        "name": "Run",
        "sport_type": "Run",
        "description": None,
        "trainer": False,
        "start_latlng": (40.0, -75.0),
        "end_latlng": (41.0, -76.0),
        "start_date": START,
        "elapsed_time": 1800,
        "summary_polyline": "abc",
    }
    values.update(overrides)
    return Activity(**values)


class TestWeatherNarrativeFor(unittest.TestCase):
    def test_queries_start_coordinate_over_activity_window(self) -> None:
        source = _FakeSource(_quarter_hours(0, 30))
        text = weather_narrative_for(_activity(), source)
        self.assertTrue(text.startswith(" \nWeather: 51F"))
        self.assertEqual(source.calls, [(START, START + timedelta(seconds=1800), 40.0, -75.0)])

    def test_no_samples_gives_empty_narrative(self) -> None:
        self.assertEqual(weather_narrative_for(_activity(), _FakeSource([])), "")

    def test_no_coordinates(self) -> None:
        source = _FakeSource(_quarter_hours(0, 30))
        self.assertEqual(weather_narrative_for(_activity(start_latlng=None), source), "")
        self.assertEqual(source.calls, [])


if __name__ == "__main__":
    unittest.main()
