import json
import tempfile
from datetime import datetime, timedelta, timezone
from io import StringIO
from pathlib import Path
from unittest import mock

from django.core.management import CommandError, call_command
from django.test import Client, SimpleTestCase, override_settings

from . import catalog, services
from .clock import SPEED_OPTIONS, PlaybackClock
from .exceptions import InvalidSpeedError, UnknownTripError
from .models import FleetMetrics, Trip, TripState, TripStatus

T0 = datetime(2025, 11, 3, 8, 0, tzinfo=timezone.utc)


def at(seconds):
    return T0 + timedelta(seconds=seconds)


def iso(instant):
    return instant.isoformat().replace("+00:00", "Z")


class FakeTimer:
    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.function(*self.args)


class FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args or ())
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [timer for timer in self.timers if timer.started and not (timer.cancelled or timer.fired)]


def sample_log():
    return [
        {"timestamp": iso(at(0)), "event_type": "trip_started", "planned_distance_km": 100,
         "location": {"lat": 10.0, "lng": 20.0}},
        {"timestamp": iso(at(10)), "event_type": "location_update", "distance_travelled_km": 20,
         "location": {"lat": 10.1, "lng": 20.1}, "movement": {"speed_kmh": 40}},
        {"timestamp": iso(at(20)), "event_type": "location_update", "overspeed": True,
         "distance_travelled_km": 45, "movement": {"speed_kmh": 121.5}},
        {"timestamp": iso(at(30)), "event_type": "location_update", "distance_travelled_km": 60,
         "location": {"lat": 10.3, "lng": 20.3}, "movement": {"speed_kmh": 80}},
    ]


class DeriveTripStateTests(SimpleTestCase):
    def test_progress_and_speed_from_latest_event(self):
        log = [
            {"timestamp": iso(at(0)), "planned_distance_km": 100},
            {"timestamp": iso(at(60)), "distance_travelled_km": 50, "movement": {"speed_kmh": 60}},
        ]
        state = services.derive_trip_state(log, at(60), 1, "#1976d2")

        self.assertEqual(state.status, TripStatus.ACTIVE)
        self.assertEqual(state.progress, 50.0)
        self.assertEqual(state.speed_kmh, 60.0)
        self.assertEqual(state.path, ())
        self.assertIsNone(state.position)
        self.assertEqual(state.alerts, ())
        self.assertEqual(state.total_events, 2)
        self.assertEqual(state.color, "#1976d2")

    def test_cancelled_trip_reports_reason_as_alert(self):
        log = [
            {"timestamp": iso(at(0)), "planned_distance_km": 100},
            {"timestamp": iso(at(60)), "event_type": "trip_cancelled",
             "cancellation_reason": "mechanical failure", "distance_travelled_km": 50},
        ]
        state = services.derive_trip_state(log, at(60), 1)

        self.assertEqual(state.status, TripStatus.CANCELLED)
        self.assertEqual(state.alerts, ("mechanical failure",))

    def test_cancelled_without_reason_uses_generic_label(self):
        log = [{"timestamp": iso(at(0)), "event_type": "trip_cancelled"}]
        state = services.derive_trip_state(log, at(0), 1)
        self.assertEqual(state.alerts, ("Cancelled",))

    def test_completed_trip(self):
        log = [
            {"timestamp": iso(at(0)), "planned_distance_km": 80},
            {"timestamp": iso(at(5)), "event_type": "trip_completed", "distance_completed_km": 80},
        ]
        state = services.derive_trip_state(log, at(5), 1)
        self.assertEqual(state.status, TripStatus.COMPLETED)
        self.assertEqual(state.progress, 100.0)

    def test_idle_before_first_event(self):
        state = services.derive_trip_state(sample_log(), at(-1), 7)

        self.assertEqual(state.status, TripStatus.IDLE)
        self.assertEqual(state.progress, 0.0)
        self.assertEqual(state.path, ())
        self.assertEqual(state.alerts, ())
        self.assertEqual(state.recent_events, ())
        self.assertEqual(state.total_events, 4)

    def test_invalid_logs_are_classified_as_errors(self):
        for log in (None, [], (), "not a log", {"timestamp": iso(at(0))}, 42):
            with self.subTest(log=log):
                state = services.derive_trip_state(log, at(0), 3, "#d32f2f")
                self.assertEqual(state.status, TripStatus.ERROR)
                self.assertEqual(state.alerts, ("Data Invalid",))
                self.assertEqual(state.progress, 0.0)
                self.assertEqual(state.path, ())
                self.assertIsNone(state.position)
                self.assertEqual(state.total_events, 0)
                self.assertEqual(state.color, "#d32f2f")

    def test_invalid_log_is_logged_not_raised(self):
        with self.assertLogs("playback.services", level="WARNING") as captured:
            services.derive_trip_state(None, at(0), 9)
        self.assertIn("Invalid data for trip 9", captured.output[0])

    def test_progress_is_capped_at_one_hundred(self):
        log = [
            {"timestamp": iso(at(0)), "planned_distance_km": 100},
            {"timestamp": iso(at(1)), "distance_travelled_km": 250},
        ]
        self.assertEqual(services.derive_trip_state(log, at(1), 1).progress, 100.0)

    def test_progress_is_zero_without_planned_distance(self):
        log = [
            {"timestamp": iso(at(0))},
            {"timestamp": iso(at(1)), "distance_travelled_km": 25},
        ]
        self.assertEqual(services.derive_trip_state(log, at(1), 1).progress, 0.0)

    def test_progress_stays_within_bounds_over_the_whole_log(self):
        for offset in range(-5, 40):
            progress = services.derive_trip_state(sample_log(), at(offset), 1).progress
            self.assertGreaterEqual(progress, 0.0)
            self.assertLessEqual(progress, 100.0)

    def test_planned_distance_only_read_from_first_event(self):
        log = [
            {"timestamp": iso(at(0))},
            {"timestamp": iso(at(1)), "planned_distance_km": 10, "distance_travelled_km": 5},
        ]
        self.assertEqual(services.derive_trip_state(log, at(1), 1).progress, 0.0)

    def test_derivation_is_idempotent(self):
        log = sample_log()
        first = services.derive_trip_state(log, at(25), 1, "#000")
        second = services.derive_trip_state(log, at(25), 1, "#000")
        self.assertEqual(first, second)
        self.assertEqual(first.as_dict(), second.as_dict())

    def test_path_grows_monotonically(self):
        log = sample_log()
        previous = ()
        for offset in range(-1, 35):
            path = services.derive_trip_state(log, at(offset), 1).path
            self.assertEqual(path[: len(previous)], previous)
            previous = path
        self.assertEqual(len(previous), 3)

    def test_events_are_filtered_by_timestamp_not_position(self):
        log = [
            {"timestamp": iso(at(0)), "planned_distance_km": 100},
            {"timestamp": iso(at(50)), "distance_travelled_km": 90},
            {"timestamp": iso(at(10)), "distance_travelled_km": 10},
        ]
        state = services.derive_trip_state(log, at(20), 1)
        self.assertEqual(state.progress, 10.0)
        self.assertEqual(len(state.recent_events), 2)

    def test_events_without_usable_timestamp_are_ignored(self):
        log = [
            {"timestamp": iso(at(0)), "planned_distance_km": 100},
            {"distance_travelled_km": 70},
            {"timestamp": "yesterday", "distance_travelled_km": 80},
            {"timestamp": "2025-13-45T99:00:00Z", "distance_travelled_km": 85},
            "garbage",
            None,
            {"timestamp": iso(at(5)), "distance_travelled_km": 30},
        ]
        state = services.derive_trip_state(log, at(10), 1)

        self.assertEqual(state.progress, 30.0)
        self.assertEqual(len(state.recent_events), 2)
        self.assertEqual(state.total_events, 7)

    def test_alerts_reflect_only_the_latest_event(self):
        log = sample_log()
        self.assertEqual(services.derive_trip_state(log, at(20), 1).alerts, ("Overspeed Alert",))
        self.assertEqual(services.derive_trip_state(log, at(30), 1).alerts, ())

    def test_alert_order_is_fixed(self):
        log = [{
            "timestamp": iso(at(0)),
            "event_type": "signal_lost",
            "overspeed": True,
            "battery_low": True,
        }]
        state = services.derive_trip_state(log, at(0), 1)
        self.assertEqual(state.alerts, ("Overspeed Alert", "Signal Lost", "Low Fuel/Battery"))

    def test_fuel_level_low_event_raises_fuel_alert(self):
        log = [{"timestamp": iso(at(0)), "event_type": "fuel_level_low"}]
        self.assertEqual(services.derive_trip_state(log, at(0), 1).alerts, ("Low Fuel/Battery",))

    def test_overspeed_must_be_literally_true(self):
        log = [{"timestamp": iso(at(0)), "overspeed": "yes"}]
        self.assertEqual(services.derive_trip_state(log, at(0), 1).alerts, ())

    def test_distance_field_precedence(self):
        self.assertEqual(services.DISTANCE_TRAVELLED_KEYS[0], "distance_travelled_km")
        cases = [
            ({"distance_travelled_km": 10, "total_distance_km": 20, "distance_completed_km": 30}, 10.0),
            ({"total_distance_km": 20, "distance_completed_km": 30}, 20.0),
            ({"distance_completed_km": 30}, 30.0),
            ({}, 0.0),
        ]
        for fields, expected in cases:
            with self.subTest(fields=fields):
                self.assertEqual(services.distance_travelled_km(fields), expected)

    def test_camel_case_fields_are_accepted(self):
        log = [
            {"timestamp": iso(at(0)), "plannedDistanceKm": 200},
            {"timestamp": iso(at(1)), "eventType": "trip_cancelled", "totalDistanceKm": 50,
             "cancellationReason": "driver unavailable", "batteryLow": True,
             "movement": {"speedKmh": 12}},
        ]
        state = services.derive_trip_state(log, at(1), 1)

        self.assertEqual(state.status, TripStatus.CANCELLED)
        self.assertEqual(state.progress, 25.0)
        self.assertEqual(state.speed_kmh, 12.0)
        self.assertEqual(state.alerts, ("Low Fuel/Battery", "driver unavailable"))

    def test_malformed_fields_degrade_to_defaults(self):
        log = [
            {"timestamp": iso(at(0)), "planned_distance_km": "far"},
            {"timestamp": iso(at(1)), "distance_travelled_km": "n/a",
             "location": {"lat": "north"}, "movement": {"speed_kmh": "fast"}},
        ]
        state = services.derive_trip_state(log, at(1), 1)

        self.assertEqual(state.status, TripStatus.ACTIVE)
        self.assertEqual(state.progress, 0.0)
        self.assertIsNone(state.position)
        self.assertEqual(state.speed_kmh, 0.0)
        self.assertEqual(state.path, ())

    def test_position_comes_from_latest_event_only(self):
        log = sample_log()
        state = services.derive_trip_state(log, at(20), 1)
        self.assertIsNone(state.position)
        self.assertEqual(state.path[-1], {"lat": 10.1, "lng": 20.1})

    def test_recent_events_window_holds_last_five(self):
        log = [{"timestamp": iso(at(i)), "seq": i} for i in range(8)]
        state = services.derive_trip_state(log, at(100), 1)
        self.assertEqual([event["seq"] for event in state.recent_events], [3, 4, 5, 6, 7])

    def test_naive_timestamps_are_read_as_utc(self):
        log = [{"timestamp": "2025-11-03T08:00:00", "movement": {"speed_kmh": 5}}]
        self.assertEqual(services.derive_trip_state(log, T0, 1).status, TripStatus.ACTIVE)
        self.assertEqual(services.derive_trip_state(log, at(-1), 1).status, TripStatus.IDLE)

    def test_unusable_sim_time_sees_no_events(self):
        with self.assertLogs("playback.services", level="WARNING"):
            state = services.derive_trip_state(sample_log(), "not-a-time", 1)
        self.assertEqual(state.status, TripStatus.IDLE)
        self.assertEqual(state.total_events, 4)

    def test_iso_string_sim_time_is_accepted(self):
        state = services.derive_trip_state(sample_log(), iso(at(10)), 1)
        self.assertEqual(state.progress, 20.0)

    def test_date_only_timestamps_are_read_as_midnight_utc(self):
        self.assertEqual(
            services.parse_timestamp("2025-11-03"), datetime(2025, 11, 3, tzinfo=timezone.utc)
        )
        log = [
            {"timestamp": "2025-11-03", "distance_travelled_km": 99},
            {"timestamp": iso(at(0)), "distance_travelled_km": 1},
        ]
        state = services.derive_trip_state(log, at(10), 1)
        self.assertEqual(len(state.recent_events), 2)


class AggregateFleetTests(SimpleTestCase):
    def test_empty_fleet_is_all_zero(self):
        self.assertEqual(services.aggregate_fleet([], {}), FleetMetrics())

    def test_error_states_count_toward_speed_and_alerts(self):
        states = [
            TripState(trip_id=1, status=TripStatus.ACTIVE, speed_kmh=80.0),
            TripState(trip_id=2, status=TripStatus.ERROR, alerts=("Data Invalid",)),
        ]
        metrics = services.aggregate_fleet(states, {})
        self.assertEqual(metrics.avg_speed_kmh, 40.0)
        self.assertEqual(metrics.total_alerts, 1)

    def test_rollup_counts_distance_speed_and_alerts(self):
        states = [
            TripState(trip_id=1, status=TripStatus.ACTIVE, progress=50.0, speed_kmh=60.0, alerts=("Signal Lost",)),
            TripState(trip_id=2, status=TripStatus.COMPLETED, progress=100.0, speed_kmh=0.0),
            TripState(trip_id=3, status=TripStatus.CANCELLED, progress=25.0, speed_kmh=0.0,
                      alerts=("Road closed",)),
            TripState(trip_id=4, status=TripStatus.IDLE),
            TripState(trip_id=5, status=TripStatus.ERROR, alerts=("Data Invalid",)),
        ]
        metrics = services.aggregate_fleet(states, {1: 200.0, 2: 40.0, 3: 100.0})

        self.assertEqual(metrics.active, 1)
        self.assertEqual(metrics.completed, 1)
        self.assertEqual(metrics.cancelled, 1)
        self.assertAlmostEqual(metrics.total_distance_km, 100.0 + 40.0 + 25.0)
        self.assertAlmostEqual(metrics.avg_speed_kmh, 12.0)
        self.assertEqual(metrics.total_alerts, 3)

    def test_planned_distances_come_from_first_event(self):
        trips = [
            Trip(trip_id=1, name="a", events=sample_log()),
            Trip(trip_id=2, name="b", events=None),
            Trip(trip_id=3, name="c", events=[{"timestamp": iso(at(0))}]),
        ]
        self.assertEqual(services.planned_distances_for(trips), {1: 100.0, 2: 0.0, 3: 0.0})


class PlaybackClockTests(SimpleTestCase):
    def setUp(self):
        self.timers = FakeTimerFactory()
        self.clock = PlaybackClock(T0, at(3600), timer_factory=self.timers)

    def test_initial_state(self):
        self.assertFalse(self.clock.is_playing)
        self.assertEqual(self.clock.speed, 1)
        self.assertEqual(self.clock.sim_time, T0)
        self.assertEqual(SPEED_OPTIONS, (1, 2, 5))
        self.assertEqual(self.timers.timers, [])

    def test_tick_is_noop_while_paused(self):
        self.assertFalse(self.clock.tick())
        self.assertEqual(self.clock.sim_time, T0)

    def test_timer_advances_one_second_per_tick_at_normal_speed(self):
        self.clock.play()
        (timer,) = self.timers.pending
        self.assertEqual(timer.interval, 1.0)
        self.assertTrue(timer.daemon)

        timer.fire()
        self.assertEqual(self.clock.sim_time, at(1))
        self.assertEqual(len(self.timers.pending), 1)

    def test_higher_speed_shortens_interval_and_lengthens_step(self):
        self.clock.set_speed(5)
        self.clock.play()
        timer = self.timers.pending[-1]
        self.assertAlmostEqual(timer.interval, 0.2)

        timer.fire()
        self.assertEqual(self.clock.sim_time, at(5))

    def test_speed_must_be_an_allowed_value(self):
        for speed in (0, 3, 10, "2", None, True, 1.5):
            with self.subTest(speed=speed):
                with self.assertRaises(InvalidSpeedError):
                    self.clock.set_speed(speed)
        self.assertEqual(self.clock.speed, 1)

    def test_speed_change_while_playing_rearms_timer(self):
        self.clock.play()
        first = self.timers.pending[0]
        self.clock.set_speed(2)

        self.assertTrue(first.cancelled)
        (second,) = self.timers.pending
        self.assertEqual(second.interval, 0.5)
        second.fire()
        self.assertEqual(self.clock.sim_time, at(2))

    def test_pause_cancels_pending_and_in_flight_ticks(self):
        self.clock.play()
        timer = self.timers.pending[0]
        self.clock.pause()

        self.assertTrue(timer.cancelled)
        timer.fire()
        self.assertEqual(self.clock.sim_time, T0)
        self.assertEqual(self.timers.pending, [])

    def test_stale_timer_does_not_tick_after_replay(self):
        self.clock.play()
        stale = self.timers.pending[0]
        self.clock.pause()
        self.clock.play()

        stale.fire()
        self.assertEqual(self.clock.sim_time, T0)
        self.timers.pending[-1].fire()
        self.assertEqual(self.clock.sim_time, at(1))

    def test_time_never_passes_the_maximum(self):
        clock = PlaybackClock(T0, at(2), timer_factory=self.timers)
        clock.play()
        self.assertTrue(clock.tick())
        self.assertTrue(clock.tick())
        self.assertFalse(clock.tick())
        self.assertEqual(clock.sim_time, at(2))
        self.assertTrue(clock.is_playing)

    def test_step_that_would_overshoot_leaves_time_frozen(self):
        clock = PlaybackClock(T0, at(3), timer_factory=self.timers)
        clock.set_speed(5)
        clock.play()
        for _ in range(3):
            self.assertFalse(clock.tick())
        self.assertEqual(clock.sim_time, T0)

    def test_toggle_play(self):
        self.assertTrue(self.clock.toggle_play())
        self.assertFalse(self.clock.toggle_play())
        self.assertEqual(self.timers.pending, [])

    def test_seek_is_clamped_to_window(self):
        self.assertEqual(self.clock.seek(at(-100)), T0)
        self.assertEqual(self.clock.seek(at(99999)), at(3600))
        self.assertEqual(self.clock.seek(at(30)), at(30))

    def test_listeners_receive_new_time(self):
        seen = []
        self.clock.add_listener(seen.append)
        self.clock.play()
        self.clock.tick()
        self.clock.tick()
        self.assertEqual(seen, [at(1), at(2)])

    def test_close_releases_timer(self):
        self.clock.play()
        self.clock.close()
        self.assertFalse(self.clock.is_playing)
        self.assertEqual(self.timers.pending, [])

    def test_window_must_be_ordered(self):
        with self.assertRaises(ValueError):
            PlaybackClock(at(10), T0)


class PlaybackSessionTests(SimpleTestCase):
    def setUp(self):
        self.timers = FakeTimerFactory()
        self.clock = PlaybackClock(T0, at(3600), timer_factory=self.timers)
        self.trips = [
            Trip(trip_id=1, name="Sample", color="#111", events=sample_log()),
            Trip(trip_id=2, name="Late start", color="#222", events=[
                {"timestamp": iso(at(600)), "planned_distance_km": 50},
            ]),
            Trip(trip_id=3, name="Broken", color="#333", events=None),
        ]
        self.session = services.PlaybackSession(self.trips, self.clock)

    def tearDown(self):
        self.session.close()

    def test_initial_snapshot_is_derived_at_start_time(self):
        statuses = [state.status for state in self.session.states]
        self.assertEqual(statuses, [TripStatus.ACTIVE, TripStatus.IDLE, TripStatus.ERROR])
        self.assertFalse(self.session.data_error)
        self.assertEqual(self.session.fleet.active, 1)

    def test_every_tick_rederives_states_and_fleet(self):
        self.session.toggle_play()
        for _ in range(10):
            self.timers.pending[-1].fire()

        state = self.session.state_for(1)
        self.assertEqual(state.progress, 20.0)
        self.assertEqual(state.speed_kmh, 40.0)
        self.assertAlmostEqual(self.session.fleet.total_distance_km, 20.0)
        self.assertAlmostEqual(self.session.fleet.avg_speed_kmh, 40.0 / 3)
        self.assertEqual(self.session.fleet.total_alerts, 1)

    def test_select_trip_is_pass_through(self):
        before = self.session.states
        self.assertEqual(self.session.select_trip(2), 2)
        self.assertEqual(self.session.snapshot()["selected_trip_id"], 2)
        self.assertEqual(self.session.states, before)

    def test_selecting_same_trip_again_clears_selection(self):
        self.session.select_trip(1)
        self.assertIsNone(self.session.select_trip(1))
        self.session.select_trip(1)
        self.assertIsNone(self.session.select_trip(None))

    def test_unknown_trip_is_rejected(self):
        with self.assertRaises(UnknownTripError):
            self.session.select_trip(99)
        with self.assertRaises(UnknownTripError):
            self.session.state_for(99)

    def test_non_integer_trip_ids_are_rejected(self):
        for trip_id in (True, [1], {}, "1", 1.0):
            with self.subTest(trip_id=trip_id):
                with self.assertRaises(UnknownTripError):
                    self.session.select_trip(trip_id)
        self.assertIsNone(self.session.selected_trip_id)

    def test_snapshot_shape(self):
        snapshot = self.session.snapshot()
        for key in ("sim_time", "is_playing", "speed", "speed_options", "selected_trip_id",
                    "data_error", "trips", "states", "fleet"):
            self.assertIn(key, snapshot)
        self.assertEqual(snapshot["sim_time"], "2025-11-03T08:00:00Z")
        self.assertEqual(snapshot["speed_options"], [1, 2, 5])
        self.assertEqual(snapshot["trips"][0], {"id": 1, "name": "Sample", "color": "#111", "icon": ""})
        self.assertEqual(snapshot["states"][2]["status"], "error")
        self.assertEqual(snapshot["states"][2]["alerts"], ["Data Invalid"])

    def test_fleet_without_valid_data_refuses_to_play(self):
        clock = PlaybackClock(T0, at(3600), timer_factory=self.timers)
        with self.assertLogs("playback.services", level="ERROR"):
            session = services.PlaybackSession([Trip(trip_id=1, name="x", events=[])], clock)

        self.assertTrue(session.data_error)
        self.assertFalse(session.toggle_play())
        self.assertFalse(clock.is_playing)


class CatalogTests(SimpleTestCase):
    def test_unreadable_logs_load_as_none(self):
        with tempfile.TemporaryDirectory() as tmp:
            data_dir = Path(tmp)
            (data_dir / "good.json").write_text(json.dumps(sample_log()), encoding="utf-8")
            (data_dir / "object.json").write_text(json.dumps({"events": []}), encoding="utf-8")
            (data_dir / "broken.json").write_text("[{", encoding="utf-8")
            trip_catalog = [
                {"id": 1, "name": "Good", "file": "good.json"},
                {"id": 2, "name": "Object", "file": "object.json"},
                {"id": 3, "name": "Broken", "file": "broken.json"},
                {"id": 4, "name": "Missing", "file": "missing.json"},
            ]
            with override_settings(PLAYBACK_CONFIG={"data_dir": data_dir}, TRIP_CATALOG=trip_catalog):
                with self.assertLogs("playback.catalog", level="WARNING") as captured:
                    trips = catalog.load_trips()

        self.assertEqual([trip.trip_id for trip in trips], [1, 2, 3, 4])
        self.assertEqual(len(trips[0].events), 4)
        self.assertEqual([trip.events for trip in trips[1:]], [None, None, None])
        self.assertEqual(len([line for line in captured.output if "WARNING" in line]), 3)

    def test_log_with_invalid_encoding_derives_to_error(self):
        with tempfile.TemporaryDirectory() as tmp:
            data_dir = Path(tmp)
            (data_dir / "latin.json").write_bytes(b"\xff\xfe[{\"timestamp\": \"\xff\"}]")
            trip_catalog = [{"id": 1, "name": "Latin", "file": "latin.json"}]
            with override_settings(PLAYBACK_CONFIG={"data_dir": data_dir}, TRIP_CATALOG=trip_catalog):
                with self.assertLogs("playback.catalog", level="WARNING"):
                    (trip,) = catalog.load_trips()

        self.assertIsNone(trip.events)
        with self.assertLogs("playback.services", level="WARNING"):
            state = services.derive_trip_state(trip.events, T0, trip.trip_id)
        self.assertEqual(state.status, TripStatus.ERROR)
        self.assertEqual(state.alerts, ("Data Invalid",))

    def test_clock_window_comes_from_settings(self):
        config = {"start_time": "2025-01-01T00:00:00Z", "max_time": "2025-01-02T00:00:00Z"}
        with override_settings(PLAYBACK_CONFIG=config):
            clock = catalog.build_clock()
        self.assertEqual(clock.sim_time, datetime(2025, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(clock.max_time, datetime(2025, 1, 2, tzinfo=timezone.utc))


class PlaybackAPITests(SimpleTestCase):
    def setUp(self):
        services.reset_session()
        self.timers = FakeTimerFactory()
        build_clock = catalog.build_clock
        patcher = mock.patch.object(
            catalog, "build_clock", lambda: build_clock(timer_factory=self.timers)
        )
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(services.reset_session)
        self.client = Client()

    def test_snapshot_endpoint_returns_states_and_fleet(self):
        response = self.client.get("/playback/api/snapshot/")
        self.assertEqual(response.status_code, 200)

        payload = response.json()
        self.assertEqual(payload["sim_time"], "2025-11-03T08:00:00Z")
        self.assertFalse(payload["is_playing"])
        self.assertFalse(payload["data_error"])
        self.assertEqual(len(payload["states"]), 5)
        self.assertEqual(len({state["trip_id"] for state in payload["states"]}), 5)
        self.assertEqual(payload["states"][0]["status"], "active")
        self.assertEqual(payload["states"][1]["status"], "idle")
        self.assertEqual(payload["fleet"]["active"], 1)

    def test_trip_state_endpoint(self):
        response = self.client.get("/playback/api/trips/1/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["trip_id"], 1)
        self.assertEqual(self.client.get("/playback/api/trips/99/").status_code, 404)

    def test_toggle_play_starts_and_stops_clock(self):
        response = self.client.post("/playback/api/toggle-play/")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["is_playing"])
        self.assertEqual(len(self.timers.pending), 1)

        self.timers.pending[0].fire()
        snapshot = self.client.get("/playback/api/snapshot/").json()
        self.assertEqual(snapshot["sim_time"], "2025-11-03T08:00:01Z")

        response = self.client.post("/playback/api/toggle-play/")
        self.assertFalse(response.json()["is_playing"])
        self.assertEqual(self.timers.pending, [])

    def test_set_speed(self):
        response = self.client.post(
            "/playback/api/speed/", data=json.dumps({"speed": 5}), content_type="application/json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"speed": 5})

        response = self.client.post(
            "/playback/api/speed/", data=json.dumps({"speed": 3}), content_type="application/json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("error", response.json())

        response = self.client.post("/playback/api/speed/", data="{", content_type="application/json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid JSON"})

    def test_select_trip(self):
        def select(body):
            return self.client.post(
                "/playback/api/select-trip/", data=json.dumps(body), content_type="application/json"
            )

        self.assertEqual(select({"trip_id": 2}).json(), {"selected_trip_id": 2})
        self.assertEqual(self.client.get("/playback/api/snapshot/").json()["selected_trip_id"], 2)
        self.assertEqual(select({"trip_id": None}).json(), {"selected_trip_id": None})
        self.assertEqual(select({"trip_id": 42}).status_code, 404)
        self.assertEqual(select({}).status_code, 400)
        self.assertEqual(select([1, 2]).status_code, 400)

    def test_select_trip_rejects_non_integer_ids(self):
        for trip_id in ([1], {}, True, "2", 2.5):
            with self.subTest(trip_id=trip_id):
                response = self.client.post(
                    "/playback/api/select-trip/",
                    data=json.dumps({"trip_id": trip_id}),
                    content_type="application/json",
                )
                self.assertEqual(response.status_code, 400)
        snapshot = self.client.get("/playback/api/snapshot/").json()
        self.assertIsNone(snapshot["selected_trip_id"])

    @override_settings(PLAYBACK_CONFIG={"data_dir": "/nonexistent/fleet-replay"})
    def test_missing_data_is_reported_and_blocks_playback(self):
        with self.assertLogs("playback", level="WARNING"):
            payload = self.client.get("/playback/api/snapshot/").json()
        self.assertTrue(payload["data_error"])
        self.assertTrue(all(state["status"] == "error" for state in payload["states"]))

        response = self.client.post("/playback/api/toggle-play/")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(self.timers.pending, [])


class ReplaySnapshotCommandTests(SimpleTestCase):
    def test_snapshot_at_instant(self):
        out = StringIO()
        call_command("replay_snapshot", "--at", "2025-11-06T00:00:00Z", stdout=out)
        payload = json.loads(out.getvalue())

        self.assertEqual(payload["sim_time"], "2025-11-06T00:00:00Z")
        self.assertFalse(payload["is_playing"])
        self.assertEqual(payload["fleet"]["completed"], 3)
        self.assertEqual(payload["fleet"]["cancelled"], 1)
        self.assertEqual(payload["fleet"]["active"], 1)
        cancelled = payload["states"][2]
        self.assertEqual(cancelled["alerts"], ["Road closure due to snowfall"])

    def test_rejects_bad_timestamp(self):
        with self.assertRaises(CommandError):
            call_command("replay_snapshot", "--at", "soon", stdout=StringIO())

    @override_settings(PLAYBACK_CONFIG={"data_dir": "/nonexistent/fleet-replay"})
    def test_fails_when_no_trip_has_data(self):
        with self.assertLogs("playback", level="WARNING"):
            with self.assertRaises(CommandError):
                call_command("replay_snapshot", stdout=StringIO())
