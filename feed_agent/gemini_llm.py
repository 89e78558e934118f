import json
import logging
import re
import threading
import time
from typing import Callable, Optional

import google.generativeai as genai
from google.api_core.exceptions import (
    DeadlineExceeded,
    GoogleAPIError,
    NotFound,
    ResourceExhausted,
    ServiceUnavailable,
)

from feed_agent.errors import TransportError
from feed_agent.steps import pause
from feed_agent.tools import ToolCall, ToolKind, ToolSpec

_TYPES = {
    "integer": genai.protos.Type.INTEGER,
    "number": genai.protos.Type.NUMBER,
    "string": genai.protos.Type.STRING,
}

NUDGE = "You did not call a tool. Continue the task by calling exactly one of the available tools, or call finish."


class GeminiLLM:
    """Thin Gemini wrapper with:
    - RPM throttling (avoid 429s)
    - bounded backoff for rate limits / timeouts
    - nicer error messages for daily caps

    One instance per device engine, so throttle state is never shared between
    threads. Every failure leaves here as TransportError.
    """

    def __init__(
        self,
        api_key: str,
        model_name: str,
        rpm_limit: int = 10,
        timeout_s: int = 60,
        max_attempts: int = 4,
        cancel: Optional[threading.Event] = None,
    ):
        genai.configure(api_key=api_key)

        # The SDK accepts "models/<name>"
        if not model_name.startswith("models/"):
            model_name = f"models/{model_name}"

        self.model_name = model_name
        self.rpm_limit = max(1, int(rpm_limit))
        self.timeout_s = timeout_s
        self.max_attempts = max(1, int(max_attempts))
        self.cancel = cancel or threading.Event()
        self._last_call_ts = 0.0

    def _throttle(self):
        # Simple RPM throttle (requests per minute)
        min_interval = 60.0 / float(self.rpm_limit)
        dt = time.time() - self._last_call_ts
        if dt < min_interval:
            pause(self.cancel, min_interval - dt)
        self._last_call_ts = time.time()

    @staticmethod
    def _retry_after_seconds(msg: str) -> Optional[float]:
        # Gemini error text often includes:
        # "Please retry in 39.264860182s."
        m = re.search(r"retry in ([0-9]+(?:\.[0-9]+)?)s", msg, re.IGNORECASE)
        if not m:
            return None
        return float(m.group(1))

    @staticmethod
    def _is_daily_cap(msg: str) -> bool:
        # Daily cap errors usually mention "GenerateRequestsPerDay".
        return "GenerateRequestsPerDay" in msg or "PerDay" in msg

    def call(self, fn: Callable):
        """Run one SDK request with throttling and a small retry budget."""
        last_err = None
        for attempt in range(1, self.max_attempts + 1):
            self._throttle()
            try:
                return fn()

            except ResourceExhausted as e:
                msg = str(e)
                last_err = e

                # If this is a daily cap, stop fast with a helpful message.
                if self._is_daily_cap(msg):
                    raise TransportError(
                        "Gemini DAILY quota hit for this model/key. "
                        f"Switch key or model, or enable billing. Raw error: {msg}"
                    ) from e

                # Otherwise it's usually RPM/token rate. Obey retry_after if present.
                wait_s = self._retry_after_seconds(msg)
                if wait_s is None:
                    wait_s = min(8 * attempt, 30)
                logging.warning(f"[LLM] rate limited, retrying in {wait_s:.0f}s (attempt {attempt})")
                pause(self.cancel, wait_s + 0.5)

            except (DeadlineExceeded, ServiceUnavailable) as e:
                last_err = e
                pause(self.cancel, min(2 * attempt, 10))

            except NotFound as e:
                # Model name mismatch. Fail fast.
                raise TransportError(f"Model not found: {self.model_name}. Raw: {e}") from e

            except GoogleAPIError as e:
                raise TransportError(f"Gemini request failed: {e}") from e

        raise TransportError(f"Gemini request failed after {self.max_attempts} attempts. Last error: {last_err!r}")

    def open_conversation(self, goal: str, tools: list[ToolSpec], result_schema: dict) -> "GeminiConversation":
        return GeminiConversation(self, goal, tools, result_schema)

    def ask_about_image(self, png: bytes, question: str) -> str:
        model = genai.GenerativeModel(self.model_name)
        resp = self.call(lambda: model.generate_content(
            [question, {"mime_type": "image/png", "data": png}],
            request_options={"timeout": self.timeout_s},
        ))
        try:
            return (resp.text or "").strip()
        except ValueError:
            # .text raises when the candidate was blocked / has no text part
            return ""


def _declaration(spec: ToolSpec, result_schema: Optional[dict] = None) -> genai.protos.FunctionDeclaration:
    props = {}
    for p in spec.params:
        desc = p.description
        if spec.kind == ToolKind.FINISH and result_schema:
            desc += "\nJSON schema of the result:\n" + json.dumps(result_schema)
        kw = dict(type=_TYPES[p.type], description=desc)
        if p.enum:
            kw["format"] = "enum"
            kw["enum"] = list(p.enum)
        props[p.name] = genai.protos.Schema(**kw)

    if not props:
        return genai.protos.FunctionDeclaration(name=spec.name, description=spec.description)

    return genai.protos.FunctionDeclaration(
        name=spec.name,
        description=spec.description,
        parameters=genai.protos.Schema(
            type=genai.protos.Type.OBJECT,
            properties=props,
            required=[p.name for p in spec.params if p.required],
        ),
    )


def _plain(value):
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _tool_calls(resp) -> list[ToolCall]:
    try:
        parts = resp.candidates[0].content.parts
    except (IndexError, AttributeError):
        return []
    calls = []
    for part in parts:
        fc = getattr(part, "function_call", None)
        if fc is not None and fc.name:
            args = {k: _plain(v) for k, v in (fc.args or {}).items()}
            calls.append(ToolCall(name=fc.name, args=args))
    return calls


class GeminiConversation:
    """One function-calling chat. Lives exactly as long as one session."""

    def __init__(self, llm: GeminiLLM, goal: str, tools: list[ToolSpec], result_schema: dict):
        self.llm = llm
        decls = [_declaration(t, result_schema) for t in tools]
        model = genai.GenerativeModel(
            llm.model_name,
            tools=[genai.protos.Tool(function_declarations=decls)],
            system_instruction=goal,
        )
        self.chat = model.start_chat()
        # Force a function call on every turn; the session decides when we're done.
        self._tool_config = {"function_calling_config": {"mode": "ANY"}}

    def _send(self, content) -> list[ToolCall]:
        resp = self.llm.call(lambda: self.chat.send_message(
            content,
            tool_config=self._tool_config,
            request_options={"timeout": self.llm.timeout_s},
        ))
        return _tool_calls(resp)

    def start(self) -> list[ToolCall]:
        return self._send("Begin. Use the tools to reach the goal, then call finish with the result.")

    def reply(self, results: list[tuple[ToolCall, str]]) -> list[ToolCall]:
        if not results:
            return self._send(NUDGE)
        parts = [
            genai.protos.Part(function_response=genai.protos.FunctionResponse(
                name=call.name,
                response={"result": text},
            ))
            for call, text in results
        ]
        return self._send(genai.protos.Content(role="user", parts=parts))
