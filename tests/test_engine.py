"""Tests for the per-device StageEngine and its Work limits"""

import random
import time

import pytest

from conftest import (
    COMMENT_KEY,
    HEALTH_KEY,
    LEARN_KEY,
    POINTS,
    READY_KEY,
    FakeDevice,
    FakeModel,
    finish,
    healthy,
    learned,
    make_device_info,
    make_presets,
    ready,
)
from feed_agent.engine import StageEngine, WorkCounters, WorkLimits
from feed_agent.errors import Cancelled, TransportError
from feed_agent.models import LearnedCoordinates, Point, RunStats, Stage

LIKE_AT = POINTS["like_button"]


def make_engine(device=None, scripts=None, vision=None, **control):
    device = device or FakeDevice()
    model = FakeModel({READY_KEY: ready(), LEARN_KEY: learned(), HEALTH_KEY: healthy(), **(scripts or {})}, vision)
    engine = StageEngine(make_device_info(), device, model, make_presets(**control), rng=random.Random(3))
    return engine, device, model


def full_coords(*drop):
    coords = LearnedCoordinates()
    for role, field in (
        ("like", "like_button"),
        ("comment", "comment_button"),
        ("comment_input", "comment_input_field"),
        ("comment_send", "comment_send_button"),
        ("comment_close", "comment_close_button"),
    ):
        if role not in drop:
            coords.points[role] = Point(*POINTS[field])
    return coords


class TestWorkLimits:
    limits = WorkLimits(daily_limit=10, max_consecutive_errors=3, max_health_failures=2)

    def test_keeps_going(self):
        assert self.limits.evaluate(RunStats(videos_processed=50, likes_given=9), 2, 1) is None

    def test_daily_limit_is_normal_completion(self):
        out = self.limits.evaluate(RunStats(likes_given=7, comments_posted=3), 0, 0)
        assert out.completed and not out.should_continue
        assert "daily limit" in out.reason

    def test_consecutive_errors_abnormal(self):
        out = self.limits.evaluate(RunStats(), 3, 0)
        assert out is not None and not out.completed

    def test_health_failures_abnormal(self):
        out = self.limits.evaluate(RunStats(), 0, 2)
        assert out is not None and not out.completed

    def test_outcome_carries_a_copy_of_stats(self):
        stats = RunStats(likes_given=10)
        out = self.limits.evaluate(stats, 0, 0)
        stats.likes_given += 1
        assert out.stats.likes_given == 10


class TestInitiate:
    def test_launches_app_when_not_in_front(self):
        engine, device, model = make_engine(FakeDevice(foreground=False))
        assert engine.initiate() is True
        assert "launch_app" in device.names()
        assert model.opened(READY_KEY) == 1

    def test_unreachable_device_fails_without_model_calls(self):
        engine, _, model = make_engine(FakeDevice(reachable=False), initiate_attempts=2)

        assert engine.run() is None

        snap = engine.snapshot()
        assert snap.stage == Stage.STOPPED
        assert "initiate failed after 2 attempts" in snap.failure
        assert model.goals == []
        assert engine.health_status().needs_restart

    def test_retries_until_ready(self):
        results = iter([ready(success=False, message="login wall"), ready()])
        engine, _, model = make_engine(scripts={READY_KEY: lambda: next(results)}, initiate_attempts=3)
        assert engine.initiate() is True
        assert model.opened(READY_KEY) == 2


class TestLearn:
    def test_all_roles_found_moves_to_work(self):
        engine, device, _ = make_engine()
        engine.presets.interactions.daily_limit = 0

        outcome = engine.run()

        assert outcome.completed
        assert engine.learned.complete()
        assert engine.learned.get("like") == Point(*LIKE_AT)
        # Practice: open, focus, send, close, plus the probe text.
        assert device.taps() == [
            POINTS["comment_button"],
            POINTS["comment_input_field"],
            POINTS["comment_send_button"],
            POINTS["comment_close_button"],
        ]
        assert ("type_text", "nice video") in device.calls

    def test_missing_role_is_reported_and_work_never_starts(self):
        engine, device, _ = make_engine(scripts={LEARN_KEY: learned(missing=("comment_send_button",))}, learn_attempts=1)

        report = engine.learn_once()
        assert not report.ok
        assert report.missing == ["comment_send"]

        assert engine.run() is None
        assert "comment_send" in engine.snapshot().failure
        assert "swipe" not in device.names()

    def test_success_flag_alone_is_not_enough(self):
        engine, _, _ = make_engine(scripts={LEARN_KEY: learned(missing=("like_button",), success=True)}, learn_attempts=1)
        assert engine.learn() is False

    def test_practice_fails_when_comment_not_visible(self):
        engine, _, _ = make_engine(vision=lambda q: "NO, the comment list is empty", learn_attempts=2)

        report = engine.learn_once()

        assert not report.ok
        assert "verify comment" in report.reason
        assert engine.learn() is False


class TestWorkIteration:
    def test_first_video_is_not_watched(self):
        engine, _, _ = make_engine()
        engine.learned = full_coords()
        engine.presets.video.watch_duration = (30.0, 30.0)

        started = time.monotonic()
        engine.work_once(WorkLimits.from_presets(engine.presets), WorkCounters())

        assert time.monotonic() - started < 5.0
        assert engine.stats.videos_processed == 1

    def test_like_taps_learned_point_and_scrolls(self):
        engine, device, _ = make_engine()
        engine.learned = full_coords()
        engine.presets.interactions.like_chance = 1.0

        engine.work_once(WorkLimits.from_presets(engine.presets), WorkCounters())

        assert device.taps() == [LIKE_AT]
        assert ("swipe", 540, 1344, 540, 576) in device.calls
        assert engine.stats.likes_given == 1
        assert engine.stats.error_count == 0

    def test_like_without_coordinate_never_taps(self):
        engine, device, _ = make_engine()
        engine.learned = full_coords("like")
        engine.presets.interactions.like_chance = 1.0

        engine.work_once(WorkLimits.from_presets(engine.presets), WorkCounters())

        assert device.taps() == []
        assert engine.stats.likes_given == 0
        assert engine.stats.error_count == 1
        assert engine.stats.videos_processed == 1

    def test_comment_without_close_coordinate_never_taps(self):
        engine, device, _ = make_engine()
        engine.learned = full_coords("comment_close")
        engine.presets.interactions.comment_chance = 1.0

        engine.work_once(WorkLimits.from_presets(engine.presets), WorkCounters())

        assert device.taps() == []
        assert engine.stats.error_count == 1

    def test_template_comment_flow(self):
        engine, device, _ = make_engine()
        engine.learned = full_coords()
        engine.presets.interactions.comment_chance = 1.0

        engine.work_once(WorkLimits.from_presets(engine.presets), WorkCounters())

        assert engine.stats.comments_posted == 1
        typed = [c[1] for c in device.calls if c[0] == "type_text"]
        assert len(typed) == 1
        assert set(typed[0]) <= set("abcdefghijklmnopqrstuvwxyz ")
        assert device.taps()[0] == POINTS["comment_button"]
        assert device.taps()[-1] == POINTS["comment_close_button"]

    def test_ai_comment_is_sanitized(self):
        engine, device, _ = make_engine(scripts={COMMENT_KEY: [finish(comment_text="So CUTE!! 🐶", confidence="high")]})
        engine.learned = full_coords()
        engine.presets.interactions.comment_chance = 1.0
        engine.presets.comments.use_ai = True

        engine.work_once(WorkLimits.from_presets(engine.presets), WorkCounters())

        assert ("type_text", "so cute") in device.calls

    def test_failed_comment_flow_counts_error_not_comment(self):
        device = FakeDevice()
        device.fail_on["type_text"] = TransportError("keyboard gone")
        engine, _, _ = make_engine(device)
        engine.learned = full_coords()
        engine.presets.interactions.comment_chance = 1.0

        engine.work_once(WorkLimits.from_presets(engine.presets), WorkCounters())

        assert engine.stats.comments_posted == 0
        assert engine.stats.error_count == 1

    def test_stuck_feed_counts_as_error(self):
        device = FakeDevice()
        device.frozen = True
        engine, _, _ = make_engine(device)
        engine.learned = full_coords()

        engine.work_once(WorkLimits.from_presets(engine.presets), WorkCounters())

        assert engine.stats.error_count == 1

    def test_cancel_mid_iteration_discards_tally(self):
        engine, device, _ = make_engine()
        engine.learned = full_coords()
        engine.presets.interactions.like_chance = 1.0
        engine.presets.video.scroll_delay = (30.0, 30.0)
        # Stop while the engine waits after the swipe; the like already happened.
        device.on_call = lambda name, args: engine.stop() if name == "swipe" else None

        with pytest.raises(Cancelled):
            engine.work()

        assert LIKE_AT in device.taps()
        assert engine.stats == RunStats()

    def test_stop_during_work_leaves_stats_untouched(self):
        engine, device, _ = make_engine()
        engine.presets.interactions.like_chance = 1.0
        engine.presets.video.scroll_delay = (30.0, 30.0)
        device.on_call = lambda name, args: engine.stop() if name == "swipe" else None

        started = time.monotonic()
        assert engine.run() is None

        snap = engine.snapshot()
        assert time.monotonic() - started < 10.0
        assert LIKE_AT in device.taps()
        assert snap.stage == Stage.STOPPED
        assert snap.stats == RunStats()
        assert snap.failure is None
        assert not engine.health_status().needs_restart


class TestWorkLoop:
    def test_daily_limit_reached(self):
        engine, _, _ = make_engine()
        engine.presets.interactions.like_chance = 1.0
        engine.presets.interactions.daily_limit = 3

        outcome = engine.run()

        assert outcome.completed
        assert outcome.stats.likes_given == 3
        assert outcome.stats.videos_processed == 3
        assert engine.snapshot().stage == Stage.STOPPED
        assert engine.health_status().healthy

    def test_daily_limit_checked_before_first_video(self):
        engine, device, _ = make_engine()
        engine.learned = full_coords()
        engine.presets.interactions.daily_limit = 0

        outcome = engine.work()

        assert outcome.completed
        assert "swipe" not in device.names()

    def test_consecutive_errors_stop_the_loop(self):
        engine, _, _ = make_engine(max_consecutive_errors=3)
        engine.learned = full_coords("like")
        engine.presets.interactions.like_chance = 1.0

        outcome = engine.work()

        assert not outcome.completed
        assert outcome.stats.error_count == 3
        assert outcome.stats.videos_processed == 3

    def test_error_free_video_resets_consecutive_errors(self):
        engine, device, _ = make_engine(max_consecutive_errors=2)
        engine.learned = full_coords()
        limits = WorkLimits.from_presets(engine.presets)
        counters = WorkCounters()

        device.frozen = True
        assert engine.work_once(limits, counters) is None
        assert counters.consecutive_errors == 1
        device.frozen = False
        assert engine.work_once(limits, counters) is None
        assert counters.consecutive_errors == 0

    def test_repeated_health_failures_stop_the_loop(self):
        engine, device, model = make_engine(
            scripts={HEALTH_KEY: healthy(success=False, problems=["captcha"])},
            health_check_interval=1,
            max_health_failures=2,
        )
        engine.learned = full_coords()

        outcome = engine.work()

        assert not outcome.completed
        assert "health" in outcome.reason
        assert model.opened(HEALTH_KEY) == 2
        assert device.names().count("press_key") == 2
        assert not engine.snapshot().last_health.healthy

    def test_health_check_every_nth_video(self):
        engine, _, model = make_engine(health_check_interval=2)
        engine.learned = full_coords()
        engine.presets.interactions.daily_limit = 10**6
        limits = WorkLimits.from_presets(engine.presets)
        counters = WorkCounters()

        for _ in range(5):
            engine.work_once(limits, counters)

        # Checked before videos #3 and #5.
        assert model.opened(HEALTH_KEY) == 2


class TestThreading:
    def test_start_and_stop(self):
        engine, _, _ = make_engine()
        engine.presets.video.watch_duration = (30.0, 30.0)

        engine.start()
        deadline = time.monotonic() + 5.0
        while engine.snapshot().stats.videos_processed < 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert engine.snapshot().stage == Stage.WORK
        assert engine.snapshot().running

        engine.stop()
        assert engine.wait(5.0)

        snap = engine.snapshot()
        assert not snap.running
        assert snap.stage == Stage.STOPPED
        assert snap.stats.videos_processed == 1

    def test_crash_is_reported_as_failure(self):
        device = FakeDevice()
        device.fail_on["is_reachable"] = RuntimeError("driver bug")
        engine, _, _ = make_engine(device, initiate_attempts=1)

        assert engine.run() is None
        assert "driver bug" in engine.snapshot().failure
        assert engine.health_status().needs_restart
