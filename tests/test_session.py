"""Tests for the bounded tool-calling session"""

import pytest

from conftest import FakeDevice, FakeModel, finish
from feed_agent.errors import Cancelled, SchemaViolation, StepBudgetExceeded, TransportError
from feed_agent.schemas import CommentResult, ReadyResult
from feed_agent.session import ToolCallingSession, parse_finish
from feed_agent.tools import ToolCall, ToolDispatcher, ToolKind, catalogue

TOOLS = catalogue(ToolKind.TAP, ToolKind.SCREEN_SIZE)


def make_session(turns, device=None, cancel=None):
    device = device or FakeDevice()
    model = FakeModel({"goal": turns})
    session = ToolCallingSession(model, ToolDispatcher(device, None, cancel), cancel)
    return session, model, device


class TestParseFinish:
    def test_result_json_string(self):
        call = ToolCall("finish", {"result_json": '{"success": true, "message": "ok"}'})
        assert parse_finish(call, ReadyResult) == ReadyResult(success=True, message="ok")

    def test_json_wrapped_in_prose(self):
        call = ToolCall("finish", {"result_json": 'Here you go:\n```json\n{"comment_text": "so good"}\n```'})
        assert parse_finish(call, CommentResult).comment_text == "so good"

    def test_fields_directly_in_args(self):
        call = ToolCall("finish", {"success": False})
        assert parse_finish(call, ReadyResult).success is False

    def test_missing_field_is_schema_violation(self):
        with pytest.raises(SchemaViolation):
            parse_finish(ToolCall("finish", {"result_json": '{"message": "no success flag"}'}), ReadyResult)

    def test_not_json_is_schema_violation(self):
        with pytest.raises(SchemaViolation):
            parse_finish(ToolCall("finish", {"result_json": "all good!"}), ReadyResult)


class TestToolCallingSession:
    def test_runs_tools_then_finishes(self):
        session, model, device = make_session([[ToolCall("tap", {"x": 10, "y": 20})], finish(success=True)])

        result = session.run("goal", TOOLS, ReadyResult, max_steps=5)

        assert result.success is True
        assert device.taps() == [(10, 20)]
        (call, text), = model.conversations[0].replies[0]
        assert call.name == "tap" and "tapped" in text

    def test_finish_on_first_turn(self):
        session, _, device = make_session([finish(success=True)])
        assert session.run("goal", TOOLS, ReadyResult, max_steps=1).success
        assert device.calls == []

    def test_budget_exceeded(self):
        session, model, _ = make_session([[ToolCall("screen_size")]] * 10)

        with pytest.raises(StepBudgetExceeded):
            session.run("goal", TOOLS, ReadyResult, max_steps=3)
        # Three turns: start plus two replies.
        assert len(model.conversations[0].replies) == 2

    def test_finish_on_last_step_counts(self):
        session, _, _ = make_session([[ToolCall("screen_size")], [ToolCall("screen_size")], finish(success=True)])
        assert session.run("goal", TOOLS, ReadyResult, max_steps=3).success

    def test_malformed_finish(self):
        session, _, _ = make_session([[ToolCall("finish", {"result_json": "{}"})]])
        with pytest.raises(SchemaViolation):
            session.run("goal", TOOLS, ReadyResult, max_steps=3)

    def test_tool_outside_catalogue_is_reported_not_run(self):
        session, model, device = make_session([[ToolCall("type_text", {"text": "hi"})], finish(success=True)])

        session.run("goal", TOOLS, ReadyResult, max_steps=3)

        assert device.calls == []
        (_, text), = model.conversations[0].replies[0]
        assert text.startswith("error:")

    def test_bad_arguments_go_back_to_model(self):
        session, model, device = make_session([[ToolCall("tap", {"x": "left"})], finish(success=True)])

        assert session.run("goal", TOOLS, ReadyResult, max_steps=3).success
        (_, text), = model.conversations[0].replies[0]
        assert text.startswith("error:")
        assert device.taps() == []

    def test_device_failure_is_transport_error(self):
        device = FakeDevice()
        device.fail_on["tap"] = TransportError("adb gone")
        session, _, _ = make_session([[ToolCall("tap", {"x": 1, "y": 1})]], device=device)

        with pytest.raises(TransportError):
            session.run("goal", TOOLS, ReadyResult, max_steps=3)

    def test_unexpected_tool_failure_is_transport_error(self):
        device = FakeDevice()
        device.fail_on["tap"] = RuntimeError("device returned garbage")
        session, _, _ = make_session([[ToolCall("tap", {"x": 1, "y": 1})], finish(success=True)], device=device)

        with pytest.raises(TransportError, match="tool tap failed"):
            session.run("goal", TOOLS, ReadyResult, max_steps=3)

    def test_model_failure_is_transport_error(self):
        session, _, _ = make_session([RuntimeError("500 from model")])
        with pytest.raises(TransportError):
            session.run("goal", TOOLS, ReadyResult, max_steps=3)

    def test_cancelled_before_start(self, cancel):
        cancel.set()
        session, _, _ = make_session([finish(success=True)], cancel=cancel)
        with pytest.raises(Cancelled):
            session.run("goal", TOOLS, ReadyResult, max_steps=3)

    def test_rejects_bad_catalogue_and_budget(self):
        session, _, _ = make_session([finish(success=True)])
        with pytest.raises(ValueError):
            session.run("goal", [t for t in TOOLS if t.kind != ToolKind.FINISH], ReadyResult, max_steps=3)
        with pytest.raises(ValueError):
            session.run("goal", TOOLS, ReadyResult, max_steps=0)
