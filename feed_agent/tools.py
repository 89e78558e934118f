"""The fixed tool vocabulary a model session may use.

Tools are a closed set (ToolKind). Their descriptions and parameter tables
live here as plain data; turning them into a provider-specific function
declaration happens in the model adapter, not in the stages.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from feed_agent.screen_reader import summarize_ui
from feed_agent.steps import pause

MAX_WAIT_S = 10.0


class ToolKind(str, Enum):
    TAP = "tap"
    SWIPE = "swipe"
    SCROLL = "scroll"
    TYPE_TEXT = "type_text"
    PRESS_KEY = "press_key"
    LAUNCH_APP = "launch_app"
    SCREEN_SIZE = "screen_size"
    WAIT = "wait"
    DESCRIBE_UI = "describe_ui"
    ANALYZE_SCREEN = "analyze_screen"
    LOCATE_ELEMENT = "locate_element"
    FINISH = "finish"


@dataclass(frozen=True)
class ParamSpec:
    name: str
    type: str  # "integer" | "number" | "string"
    description: str
    required: bool = True
    enum: tuple = ()


@dataclass(frozen=True)
class ToolSpec:
    kind: ToolKind
    description: str
    params: tuple = ()

    @property
    def name(self) -> str:
        return self.kind.value


@dataclass
class ToolCall:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[ToolKind]:
        try:
            return ToolKind(self.name)
        except ValueError:
            return None


TOOL_SPECS: Dict[ToolKind, ToolSpec] = {
    ToolKind.TAP: ToolSpec(
        ToolKind.TAP,
        "Tap the screen at pixel coordinates.",
        (
            ParamSpec("x", "integer", "X coordinate in device pixels"),
            ParamSpec("y", "integer", "Y coordinate in device pixels"),
        ),
    ),
    ToolKind.SWIPE: ToolSpec(
        ToolKind.SWIPE,
        "Swipe from (x1, y1) to (x2, y2).",
        (
            ParamSpec("x1", "integer", "Start X"),
            ParamSpec("y1", "integer", "Start Y"),
            ParamSpec("x2", "integer", "End X"),
            ParamSpec("y2", "integer", "End Y"),
            ParamSpec("duration_ms", "integer", "Swipe duration in ms, defaults to 300", required=False),
        ),
    ),
    ToolKind.SCROLL: ToolSpec(
        ToolKind.SCROLL,
        "Scroll the screen. 'up' moves a vertical feed to the next item.",
        (ParamSpec("direction", "string", "Scroll direction", enum=("up", "down", "left", "right")),),
    ),
    ToolKind.TYPE_TEXT: ToolSpec(
        ToolKind.TYPE_TEXT,
        "Type text into the focused input field. Plain ASCII only.",
        (ParamSpec("text", "string", "Text to type"),),
    ),
    ToolKind.PRESS_KEY: ToolSpec(
        ToolKind.PRESS_KEY,
        "Press a hardware/system key.",
        (ParamSpec("key", "string", 'Key name ("back", "home", "enter") or an Android keycode number'),),
    ),
    ToolKind.LAUNCH_APP: ToolSpec(
        ToolKind.LAUNCH_APP,
        "Launch (or bring to front) an app by package name.",
        (
            ParamSpec("package_name", "string", "Package name, e.g. com.android.settings"),
            ParamSpec("activity_name", "string", "Specific activity to start", required=False),
        ),
    ),
    ToolKind.SCREEN_SIZE: ToolSpec(ToolKind.SCREEN_SIZE, "Return the screen size in pixels as WIDTHxHEIGHT."),
    ToolKind.WAIT: ToolSpec(
        ToolKind.WAIT,
        f"Wait for the UI to settle (max {int(MAX_WAIT_S)} seconds).",
        (ParamSpec("seconds", "number", "How long to wait"),),
    ),
    ToolKind.DESCRIBE_UI: ToolSpec(
        ToolKind.DESCRIBE_UI,
        "List the labelled/clickable UI nodes on screen with their bounds (from the accessibility tree).",
    ),
    ToolKind.ANALYZE_SCREEN: ToolSpec(
        ToolKind.ANALYZE_SCREEN,
        "Take a screenshot and answer ONE question about it. Use one call per question.",
        (ParamSpec("query", "string", "The question to answer about the current screen"),),
    ),
    ToolKind.LOCATE_ELEMENT: ToolSpec(
        ToolKind.LOCATE_ELEMENT,
        "Take a screenshot and return the approximate centre pixel (x,y) of the described element, or NONE.",
        (ParamSpec("description", "string", "What to look for, e.g. 'heart shaped like button on the right edge'"),),
    ),
    ToolKind.FINISH: ToolSpec(
        ToolKind.FINISH,
        "Finish the task and report the final result. This MUST be your last call.",
        (ParamSpec("result_json", "string", "The result as a JSON object matching the result schema"),),
    ),
}


def catalogue(*kinds: ToolKind) -> list[ToolSpec]:
    """Tool list for one session. Always ends with exactly one FINISH."""
    specs = [TOOL_SPECS[k] for k in kinds if k != ToolKind.FINISH]
    specs.append(TOOL_SPECS[ToolKind.FINISH])
    return specs


def _int_arg(args: dict, name: str, default: Optional[int] = None) -> int:
    v = args.get(name, default)
    if v is None:
        raise ValueError(f"missing argument '{name}'")
    return int(round(float(v)))


class ToolDispatcher:
    """Runs one non-terminal tool call against the device and returns text for the model."""

    def __init__(self, device, analyzer=None, cancel: Optional[threading.Event] = None):
        self.device = device
        self.analyzer = analyzer
        self.cancel = cancel or threading.Event()

    def dispatch(self, call: ToolCall) -> str:
        kind = call.kind
        if kind is None or kind == ToolKind.FINISH:
            return f"error: unknown tool '{call.name}'"

        try:
            return self._dispatch(kind, call.args or {})
        except (ValueError, TypeError, KeyError) as e:
            # Bad arguments go back to the model so it can correct itself.
            logging.debug(f"[TOOLS] {call.name}({call.args}) rejected: {e}")
            return f"error: {e}"

    def _dispatch(self, kind: ToolKind, args: dict) -> str:
        d = self.device
        if kind == ToolKind.TAP:
            x, y = _int_arg(args, "x"), _int_arg(args, "y")
            d.tap(x, y)
            return f"tapped ({x}, {y})"

        if kind == ToolKind.SWIPE:
            pts = [_int_arg(args, n) for n in ("x1", "y1", "x2", "y2")]
            duration = _int_arg(args, "duration_ms", 300)
            d.swipe(*pts, duration)
            return f"swiped ({pts[0]}, {pts[1]}) -> ({pts[2]}, {pts[3]}) over {duration}ms"

        if kind == ToolKind.SCROLL:
            direction = str(args.get("direction") or "up").lower()
            d.scroll(direction)
            return f"scrolled {direction}"

        if kind == ToolKind.TYPE_TEXT:
            text = str(args.get("text") or "")
            if not text:
                raise ValueError("missing argument 'text'")
            d.type_text(text)
            return f"typed '{text}'"

        if kind == ToolKind.PRESS_KEY:
            key = args.get("key")
            if key in (None, ""):
                raise ValueError("missing argument 'key'")
            if isinstance(key, float):
                key = int(key)
            d.press_key(key)
            return f"pressed {key}"

        if kind == ToolKind.LAUNCH_APP:
            package = str(args.get("package_name") or "")
            if not package:
                raise ValueError("missing argument 'package_name'")
            d.launch_app(package, args.get("activity_name") or None)
            return f"launched {package}"

        if kind == ToolKind.SCREEN_SIZE:
            w, h = d.screen_size()
            return f"{w}x{h}"

        if kind == ToolKind.WAIT:
            seconds = min(max(float(args.get("seconds") or 1.0), 0.0), MAX_WAIT_S)
            pause(self.cancel, seconds)
            return f"waited {seconds:.1f}s"

        if kind == ToolKind.DESCRIBE_UI:
            return summarize_ui(d.ui_dump())

        if kind == ToolKind.ANALYZE_SCREEN:
            if self.analyzer is None:
                return "error: screen analysis is not available"
            return self.analyzer.answer(str(args.get("query") or "Describe the screen."))

        if kind == ToolKind.LOCATE_ELEMENT:
            if self.analyzer is None:
                return "error: element location is not available"
            found = self.analyzer.locate(str(args.get("description") or ""))
            if found is None:
                return "NONE"
            return f"{found[0]},{found[1]}"

        raise ValueError(f"unsupported tool '{kind.value}'")
