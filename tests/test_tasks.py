import pytest

from taskpilot.plan.tasks import (
    InvalidPlanFormatError,
    TaskStatus,
    clean_plan_text,
    contains_plan,
    extract_task_key,
    first_pending,
    is_task_line,
    is_valid_plan,
    parse_plan_text,
    parse_task_line,
    parse_tasks,
    strip_mode_markers,
    strip_thinking,
)


def test_task_line_detection_accepts_all_markers() -> None:
    assert is_task_line("- [ ] 1. open")
    assert is_task_line("* [x] 2. done")
    assert is_task_line("  - [!] 3. failed")
    assert is_task_line("- [X] shouting")
    assert not is_task_line("1. plain numbered line")
    assert not is_task_line("- [ ]")
    assert not is_task_line("[ ] missing bullet")


def test_parse_task_line_maps_status_markers() -> None:
    pending = parse_task_line("- [ ] 1. Diagnose the projector")
    completed = parse_task_line("- [x] 2. Fill the ticket")
    failed = parse_task_line("* [!] 3. Hand over")

    assert pending is not None and pending.status is TaskStatus.PENDING
    assert completed is not None and completed.status is TaskStatus.COMPLETED
    assert failed is not None and failed.status is TaskStatus.FAILED
    assert pending.description == "1. Diagnose the projector"
    assert pending.line == "- [ ] 1. Diagnose the projector"
    assert failed.line == "- [!] 3. Hand over"
    assert parse_task_line("no task here") is None


def test_key_prefers_number_right_after_marker() -> None:
    assert extract_task_key("- [ ] 12. Book room 305") == "12"
    assert extract_task_key("- [x] 3: Call 2 people") == "3"
    assert extract_task_key("- [ ] 4：全角冒号") == "4"
    assert extract_task_key("- [ ] 5) Paren style") == "5"


def test_key_falls_back_to_task_word_then_first_number() -> None:
    assert extract_task_key("- [ ] Task 7 check cables") == "7"
    assert extract_task_key("- [ ] 任务8 检查投影仪") == "8"
    assert extract_task_key("- [ ] Reboot router 42 times") == "42"


def test_key_uses_normalized_text_without_numbers() -> None:
    long_text = "Collect feedback from every attendee of the quarterly review meeting"

    assert extract_task_key("- [ ] Collect feedback") == "Collect feedback"
    assert extract_task_key(f"- [x] {long_text}") == long_text[:50]
    assert extract_task_key("* [ ] Collect feedback") == extract_task_key("- [x] Collect feedback")


def test_key_hash_fallback_is_deterministic() -> None:
    first = extract_task_key("- [ ] -")
    second = extract_task_key("- [ ] -")

    assert first == second
    assert first.startswith("hash_")
    assert len(first) == 16


def test_key_is_independent_of_status_marker() -> None:
    for marker in (" ", "x", "!"):
        assert extract_task_key(f"- [{marker}] 2. Fill the ticket") == "2"


def test_clean_plan_text_drops_noise_and_corrupted_lines() -> None:
    content = "\n".join(
        [
            "<think>the user wants a plan</think>",
            "[MODE:TODO_LIST]",
            "Here is the plan:",
            "- [ ] 1. Diagnose the projector",
            "- [ ] 2. Fill the ticket - [x] 3. merged garbage",
            "- [ ] 4. " + "x" * 210,
            "- [ ] 5：first 6：second",
            "* [x] 7. Notify the owner",
        ]
    )

    assert clean_plan_text(content) == "- [ ] 1. Diagnose the projector\n- [x] 7. Notify the owner"


def test_duplicate_keys_keep_first_position_and_never_reopen() -> None:
    content = "\n".join(
        [
            "- [ ] 1. Diagnose",
            "- [ ] 2. Fill the ticket",
            "- [x] 1. Diagnose the projector",
            "- [ ] 1. Diagnose again",
        ]
    )

    tasks = parse_tasks(content)

    assert [task.key for task in tasks] == ["1", "2"]
    assert tasks[0].status is TaskStatus.COMPLETED
    assert tasks[0].description == "1. Diagnose the projector"
    assert [task.order for task in tasks] == [0, 1]


def test_plan_validity_and_parse_errors() -> None:
    assert is_valid_plan("- [ ] 1. Only task")
    assert not is_valid_plan("Nothing to do here.")
    assert not is_valid_plan("")

    with pytest.raises(InvalidPlanFormatError):
        parse_plan_text("I could not build a plan.")


def test_contains_plan_honours_mode_markers() -> None:
    assert contains_plan("- [ ] 1. Do it")
    assert contains_plan("[MODE:TODO_LIST]\nsteps follow")
    assert not contains_plan("[MODE:DIRECT_REPLY]\n- [ ] 1. looks like a task")
    assert not contains_plan("The meeting room is free at 3pm.")
    assert not contains_plan("")


def test_strip_helpers() -> None:
    assert strip_mode_markers("[MODE:DIRECT_REPLY]\n\nHello there.") == "Hello there."
    assert strip_thinking("<think>\nhmm\n</think>- [ ] 1. go") == "- [ ] 1. go"


def test_first_pending_follows_order() -> None:
    tasks = parse_tasks("- [x] 1. a\n- [!] 2. b\n- [ ] 3. c\n- [ ] 4. d")

    current = first_pending(tasks)

    assert current is not None
    assert current.key == "3"
    assert first_pending(parse_tasks("- [x] 1. a")) is None
