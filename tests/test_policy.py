from taskpilot.chat.base import Message
from taskpilot.config import PolicyConfig
from taskpilot.plan.policy import OutcomePolicy
from taskpilot.tools.base import ToolErrorResult


def test_severe_keywords_mark_failure_case_insensitively() -> None:
    policy = OutcomePolicy()

    outcome = policy.evaluate(Message.assistant("Upstream answered with HTTP 503 Service Unavailable"))
    auth = policy.evaluate(Message.assistant("Permission Denied while opening the ticket"))
    chinese = policy.evaluate(Message.assistant("请求超时，请稍后再试"))

    assert not outcome.success
    assert outcome.reason == "severe_error_keyword"
    assert outcome.matched == "503"
    assert auth.matched == "permission denied"
    assert chinese.matched == "超时"


def test_structured_tool_error_with_error_word_is_failure() -> None:
    policy = OutcomePolicy()
    failure = Message.tool(
        ToolErrorResult("Tool error: room not found", "diagnose_room").to_json(),
        tool_call_id="call-1",
        name="diagnose_room",
    )

    outcome = policy.evaluate(Message.assistant("I tried my best."), [failure])

    assert not outcome.success
    assert outcome.reason == "tool_error"
    assert outcome.matched == "diagnose_room"


def test_mild_tool_warning_and_ambiguous_output_succeed() -> None:
    policy = OutcomePolicy()
    warning = Message.tool(
        ToolErrorResult("room already booked, kept existing slot", "book_room").to_json(),
        tool_call_id="call-1",
    )

    assert policy.evaluate(Message.assistant("Done, mostly."), [warning]).success
    assert policy.evaluate(Message.assistant("Not sure this worked.")).success
    assert policy.evaluate(None).success


def test_policy_from_config_uses_custom_keywords() -> None:
    policy = OutcomePolicy.from_config(
        PolicyConfig(severe_error_keywords=["quota exceeded"], tool_error_marker="fatal")
    )
    tool_error = Message.tool(
        ToolErrorResult("error: retry later", "fill_ticket").to_json(),
        tool_call_id="call-1",
    )

    assert policy.evaluate(Message.assistant("HTTP 500")).success
    assert not policy.evaluate(Message.assistant("Quota Exceeded for today")).success
    assert policy.evaluate(Message.assistant("ok"), [tool_error]).success
