"""Shared fakes: a scripted device and a scripted model, no adb or network needed."""

import io
import json
import threading

import pytest
from PIL import Image

from feed_agent.config import ControlPresets, CommentPresets, InteractionPresets, Presets, VideoPresets
from feed_agent.models import Device, DeviceStatus
from feed_agent.tools import ToolCall

READY_KEY = "ready before work starts"
LEARN_KEY = "LEARNING stage"
HEALTH_KEY = "health checker"
COMMENT_KEY = "You write one short"


def solid_png(shade: int, size=(108, 192)) -> bytes:
    img = Image.new("RGB", size, (shade, shade, shade))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


class FakeDevice:
    """Records every call. capture() returns a different frame each time unless frozen."""

    def __init__(self, foreground=True, reachable=True, screen=(1080, 1920)):
        self.calls = []
        self.foreground = foreground
        self.reachable = reachable
        self.screen = screen
        self.frozen = False
        self.fail_on = {}
        self.on_call = None
        self._frame = 0

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if self.on_call is not None:
            self.on_call(name, args)
        err = self.fail_on.get(name)
        if err is not None:
            raise err

    def names(self):
        return [c[0] for c in self.calls]

    def taps(self):
        return [c[1:] for c in self.calls if c[0] == "tap"]

    def is_reachable(self):
        self._record("is_reachable")
        return self.reachable

    def is_foreground(self, package):
        self._record("is_foreground", package)
        return self.foreground

    def launch_app(self, package, activity=None):
        self._record("launch_app", package)
        self.foreground = True

    def tap(self, x, y):
        self._record("tap", x, y)

    def swipe(self, x1, y1, x2, y2, duration_ms=300):
        self._record("swipe", x1, y1, x2, y2)

    def scroll(self, direction="up", distance=None):
        self._record("scroll", direction)

    def type_text(self, text):
        self._record("type_text", text)

    def press_key(self, key):
        self._record("press_key", key)

    def capture(self):
        self._record("capture")
        if not self.frozen:
            self._frame += 1
        return solid_png((self._frame * 40) % 256)

    def screen_size(self):
        return self.screen

    def ui_dump(self):
        return ""


class FakeConversation:
    def __init__(self, turns):
        self.turns = list(turns)
        self.replies = []

    def _next(self):
        if not self.turns:
            # Keep the model busy without ever finishing.
            return [ToolCall("screen_size")]
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn

    def start(self):
        return self._next()

    def reply(self, results):
        self.replies.append(results)
        return self._next()


class FakeModel:
    """Picks a script by a phrase of the goal; each conversation gets a fresh copy."""

    def __init__(self, scripts=None, vision=None):
        self.scripts = dict(scripts or {})
        self.vision = vision or (lambda question: "YES")
        self.goals = []
        self.conversations = []

    def open_conversation(self, goal, tools, result_schema):
        self.goals.append(goal)
        for key, script in self.scripts.items():
            if key in goal:
                turns = script() if callable(script) else script
                conv = FakeConversation(turns)
                self.conversations.append(conv)
                return conv
        raise AssertionError(f"no script for goal: {goal[:80]}")

    def ask_about_image(self, png, question):
        return self.vision(question)

    def opened(self, key):
        return sum(1 for g in self.goals if key in g)


def finish(**result):
    return [ToolCall("finish", {"result_json": json.dumps(result)})]


def ready(success=True, message="feed visible"):
    return [finish(success=success, message=message)]


POINTS = {
    "like_button": (980, 900),
    "comment_button": (980, 1100),
    "comment_input_field": (400, 1800),
    "comment_send_button": (1000, 1800),
    "comment_close_button": (1000, 700),
}


def learned(missing=(), success=None):
    elements = {}
    for name, (x, y) in POINTS.items():
        if name in missing:
            elements[name] = {"found": False}
        else:
            elements[name] = {"found": True, "coordinates": {"x": x, "y": y}, "confidence": 0.9}
    ok = not missing if success is None else success
    return [finish(success=ok, ui_elements=elements, message="done")]


def healthy(success=True, problems=()):
    return [
        finish(
            success=success,
            current_state="feed" if success else "popup",
            problems_detected=list(problems),
            actions_performed=[],
            message="ok" if success else "not ok",
        )
    ]


def make_presets(**control) -> Presets:
    """Presets with every wait at zero and no random actions unless a test asks for them."""
    return Presets(
        app_load_time=0.0,
        video=VideoPresets(watch_duration=(0.0, 0.0), quick_skip_chance=0.0, quick_skip_duration=0.0, scroll_delay=(0.0, 0.0)),
        interactions=InteractionPresets(like_chance=0.0, comment_chance=0.0, daily_limit=500),
        comments=CommentPresets(use_ai=False),
        control=ControlPresets(ui_settle=0.0, monitor_interval=0.01, drain_grace=2.0, **control),
    )


def make_device_info(serial="emulator-5554", name="Google Pixel 7") -> Device:
    return Device(id=serial, name=name, status=DeviceStatus.CONNECTED, model="Pixel 7", screen=(1080, 1920))


@pytest.fixture
def presets():
    return make_presets()


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def cancel():
    return threading.Event()
