"""Bounded tool-calling session.

One session = one conversation with the model: it sees the goal and a fixed
tool catalogue, asks for tool calls, gets their results back, and must end by
calling `finish` with a result that validates against the caller's schema.

Each model turn is one step. The session never retries and never invents a
result: out of steps is StepBudgetExceeded, a malformed finish is
SchemaViolation, an unreachable device/model is TransportError.
"""

import json
import logging
import threading
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from feed_agent.errors import Cancelled, SchemaViolation, StepBudgetExceeded, TransportError
from feed_agent.tools import ToolCall, ToolDispatcher, ToolKind, ToolSpec

T = TypeVar("T", bound=BaseModel)


def _extract_json(text: str):
    s = (text or "").strip()
    if not s:
        raise ValueError("empty result")

    # Fast-path: try to parse entire string.
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        pass

    # Models like to wrap JSON in prose or code fences.
    decoder = json.JSONDecoder()
    for idx, ch in enumerate(s):
        if ch != "{":
            continue
        try:
            obj, _ = decoder.raw_decode(s[idx:])
            return obj
        except json.JSONDecodeError:
            continue
    raise ValueError(f"no JSON object in result: {s[:200]}")


def parse_finish(call: ToolCall, result_model: Type[T]) -> T:
    args = call.args or {}
    try:
        if "result_json" in args:
            payload = args["result_json"]
            obj = _extract_json(payload) if isinstance(payload, str) else payload
        else:
            # Some models put the result fields straight into the call.
            obj = args
        return result_model.model_validate(obj)
    except (ValueError, ValidationError) as e:
        raise SchemaViolation(f"finish result does not match {result_model.__name__}: {e}") from e


class ToolCallingSession:
    def __init__(self, model, dispatcher: ToolDispatcher, cancel: Optional[threading.Event] = None, label: str = ""):
        self.model = model
        self.dispatcher = dispatcher
        self.cancel = cancel or threading.Event()
        self.label = label

    def _check_cancel(self):
        if self.cancel.is_set():
            raise Cancelled()

    def _guarded(self, what: str, fn):
        self._check_cancel()
        try:
            return fn()
        except (TransportError, Cancelled):
            raise
        except Exception as e:
            raise TransportError(f"{what} failed: {e!r}") from e

    def _model_turn(self, fn):
        return self._guarded("model call", fn)

    def run(self, goal: str, tools: list[ToolSpec], result_model: Type[T], max_steps: int) -> T:
        if max_steps <= 0:
            raise ValueError("max_steps must be positive")
        if sum(1 for t in tools if t.kind == ToolKind.FINISH) != 1:
            raise ValueError("a tool catalogue needs exactly one finish tool")

        allowed = {t.name for t in tools}
        conv = self.model.open_conversation(goal, tools, result_model.model_json_schema())
        calls = self._model_turn(conv.start)

        for step in range(1, max_steps + 1):
            results = []
            for call in calls:
                self._check_cancel()
                if call.name == ToolKind.FINISH.value:
                    result = parse_finish(call, result_model)
                    logging.debug(f"[SESSION]{self.label} finished at step {step}: {result!r}")
                    return result
                if call.name not in allowed:
                    text = f"error: tool '{call.name}' is not available in this task"
                else:
                    text = self._guarded(f"tool {call.name}", lambda: self.dispatcher.dispatch(call))
                logging.debug(f"[SESSION]{self.label} step {step}: {call.name}({call.args}) -> {text[:200]}")
                results.append((call, text))

            if step == max_steps:
                break
            calls = self._model_turn(lambda: conv.reply(results))

        raise StepBudgetExceeded(f"no finish within {max_steps} steps")
