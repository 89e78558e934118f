"""Automation presets.

Defaults mirror the preset table the bot has always shipped with; every knob
can be overridden from the environment (``FEED_*``), which main.py populates
from a ``.env`` file when one exists.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Tuple

DEFAULT_APP_PACKAGE = "com.zhiliaoapp.musically"

DEFAULT_TEMPLATES = [
    "amazing",
    "love this content",
    "so cool",
    "great video",
    "nice",
    "this is fire",
    "cant stop watching",
    "so good",
    "perfect",
    "love it",
    "this hits different",
    "absolutely love this",
    "so talented",
    "incredible",
    "this is everything",
]


def _bool_env(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _int_env(name: str, default: int) -> int:
    v = os.environ.get(name)
    try:
        return int(v) if v is not None else default
    except Exception:
        logging.warning("[CONFIG] ignoring %s=%r (not an int)", name, v)
        return default


def _float_env(name: str, default: float) -> float:
    v = os.environ.get(name)
    try:
        return float(v) if v is not None else default
    except Exception:
        logging.warning("[CONFIG] ignoring %s=%r (not a number)", name, v)
        return default


def _range_env(name: str, default: Tuple[float, float]) -> Tuple[float, float]:
    # Accepts "5,10" or "5-10".
    v = os.environ.get(name)
    if not v:
        return default
    parts = [p for p in v.replace("-", ",").split(",") if p.strip()]
    try:
        lo, hi = (float(p) for p in parts)
    except Exception:
        logging.warning("[CONFIG] ignoring %s=%r (expected 'min,max')", name, v)
        return default
    return lo, hi


@dataclass
class VideoPresets:
    watch_duration: Tuple[float, float] = (5.0, 10.0)
    quick_skip_chance: float = 0.2
    quick_skip_duration: float = 1.0
    scroll_delay: Tuple[float, float] = (1.0, 3.0)


@dataclass
class InteractionPresets:
    like_chance: float = 0.7
    comment_chance: float = 0.1
    daily_limit: int = 500


@dataclass
class CommentPresets:
    templates: list = field(default_factory=lambda: list(DEFAULT_TEMPLATES))
    use_ai: bool = True
    max_length: int = 50
    probe_text: str = "nice video"


@dataclass
class ControlPresets:
    health_check_interval: int = 10
    max_health_failures: int = 3
    max_consecutive_errors: int = 5
    transport_failure_limit: int = 3
    initiate_attempts: int = 3
    learn_attempts: int = 2
    ready_steps: int = 8
    learn_steps: int = 40
    health_steps: int = 10
    comment_steps: int = 4
    monitor_interval: float = 30.0
    drain_grace: float = 20.0
    max_restarts: int = 5
    verify_advance: bool = True
    # Base wait (seconds) after taps inside scripted flows.
    ui_settle: float = 1.0


@dataclass
class Presets:
    app_package: str = DEFAULT_APP_PACKAGE
    app_load_time: float = 3.0
    video: VideoPresets = field(default_factory=VideoPresets)
    interactions: InteractionPresets = field(default_factory=InteractionPresets)
    comments: CommentPresets = field(default_factory=CommentPresets)
    control: ControlPresets = field(default_factory=ControlPresets)

    def validate(self) -> "Presets":
        for name, p in (
            ("like_chance", self.interactions.like_chance),
            ("comment_chance", self.interactions.comment_chance),
            ("quick_skip_chance", self.video.quick_skip_chance),
        ):
            if not 0.0 <= p < 1.0:
                raise ValueError(f"{name} must be in [0, 1), got {p}")

        for name, (lo, hi) in (
            ("watch_duration", self.video.watch_duration),
            ("scroll_delay", self.video.scroll_delay),
        ):
            if lo < 0 or hi < lo:
                raise ValueError(f"{name} range is invalid: {lo}..{hi}")

        if self.interactions.daily_limit < 0:
            raise ValueError("daily_limit must not be negative")
        if self.control.health_check_interval <= 0:
            raise ValueError("health_check_interval must be positive")
        if self.control.ui_settle < 0:
            raise ValueError("ui_settle must not be negative")
        if self.control.monitor_interval <= 0:
            raise ValueError("monitor_interval must be positive")
        if not self.comments.templates:
            raise ValueError("at least one comment template is required")
        return self


def load_presets() -> Presets:
    """Build presets from defaults plus FEED_* environment overrides."""
    d = Presets()

    templates = os.environ.get("FEED_COMMENT_TEMPLATES")
    template_list = [t.strip() for t in templates.split("|") if t.strip()] if templates else list(DEFAULT_TEMPLATES)

    presets = Presets(
        app_package=os.environ.get("FEED_APP_PACKAGE", d.app_package),
        app_load_time=_float_env("FEED_APP_LOAD_TIME", d.app_load_time),
        video=VideoPresets(
            watch_duration=_range_env("FEED_WATCH_DURATION", d.video.watch_duration),
            quick_skip_chance=_float_env("FEED_QUICK_SKIP_CHANCE", d.video.quick_skip_chance),
            quick_skip_duration=_float_env("FEED_QUICK_SKIP_DURATION", d.video.quick_skip_duration),
            scroll_delay=_range_env("FEED_SCROLL_DELAY", d.video.scroll_delay),
        ),
        interactions=InteractionPresets(
            like_chance=_float_env("FEED_LIKE_CHANCE", d.interactions.like_chance),
            comment_chance=_float_env("FEED_COMMENT_CHANCE", d.interactions.comment_chance),
            daily_limit=_int_env("FEED_DAILY_LIMIT", d.interactions.daily_limit),
        ),
        comments=CommentPresets(
            templates=template_list,
            use_ai=_bool_env("FEED_AI_COMMENTS", d.comments.use_ai),
            max_length=_int_env("FEED_COMMENT_MAX_LENGTH", d.comments.max_length),
            probe_text=os.environ.get("FEED_PROBE_TEXT", d.comments.probe_text),
        ),
        control=ControlPresets(
            health_check_interval=_int_env("FEED_HEALTH_CHECK_INTERVAL", d.control.health_check_interval),
            max_health_failures=_int_env("FEED_MAX_HEALTH_FAILURES", d.control.max_health_failures),
            max_consecutive_errors=_int_env("FEED_MAX_CONSECUTIVE_ERRORS", d.control.max_consecutive_errors),
            transport_failure_limit=_int_env("FEED_TRANSPORT_FAILURE_LIMIT", d.control.transport_failure_limit),
            initiate_attempts=_int_env("FEED_INITIATE_ATTEMPTS", d.control.initiate_attempts),
            learn_attempts=_int_env("FEED_LEARN_ATTEMPTS", d.control.learn_attempts),
            ready_steps=_int_env("FEED_READY_STEPS", d.control.ready_steps),
            learn_steps=_int_env("FEED_LEARN_STEPS", d.control.learn_steps),
            health_steps=_int_env("FEED_HEALTH_STEPS", d.control.health_steps),
            comment_steps=_int_env("FEED_COMMENT_STEPS", d.control.comment_steps),
            monitor_interval=_float_env("FEED_MONITOR_INTERVAL", d.control.monitor_interval),
            drain_grace=_float_env("FEED_DRAIN_GRACE", d.control.drain_grace),
            max_restarts=_int_env("FEED_MAX_RESTARTS", d.control.max_restarts),
            verify_advance=_bool_env("FEED_VERIFY_ADVANCE", d.control.verify_advance),
            ui_settle=_float_env("FEED_UI_SETTLE", d.control.ui_settle),
        ),
    )
    return presets.validate()
