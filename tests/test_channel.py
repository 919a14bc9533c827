"""Push channel lifecycle."""

import pytest

from knowledge_qa.channel import ChatEvent, EventChannel, Stage


def test_complete_is_idempotent_and_runs_hooks_once(channel):
    calls = []
    channel.on_complete(lambda: calls.append("done"))

    channel.complete()
    channel.complete()

    assert calls == ["done"]
    assert channel.completed


def test_send_after_complete_is_dropped(channel):
    assert channel.send(ChatEvent("before", Stage.RETRIEVAL_START)) is True
    channel.complete()
    assert channel.send(ChatEvent("after", Stage.ANSWER_END)) is False
    assert [e.content for e in channel.events(poll_interval=0.01)] == ["before"]


def test_run_scope_converts_exceptions_and_completes(channel):
    with channel.run_scope():
        channel.send(ChatEvent("start", Stage.RETRIEVAL_START))
        raise ValueError("bad scope")

    events = list(channel.events(poll_interval=0.01))
    assert [e.stage for e in events] == [Stage.RETRIEVAL_START, Stage.ERROR]
    assert events[-1].content == "processing error: bad scope"
    assert events[-1].payload == {"error": "processing error: bad scope"}
    assert events[-1].done is True
    assert channel.completed


def test_run_scope_completes_on_success(channel):
    with channel.run_scope():
        channel.send(ChatEvent("ok", Stage.ANSWER_END, done=True))
    assert channel.completed
    assert [e.content for e in channel.events(poll_interval=0.01)] == ["ok"]


def test_fail_runs_error_hooks_then_completes(channel):
    errors, completions = [], []
    channel.on_error(errors.append).on_complete(lambda: completions.append(True))

    channel.fail(ConnectionError("client gone"))

    assert [str(e) for e in errors] == ["client gone"]
    assert completions == [True]


def test_consumer_timeout_expires_channel():
    channel = EventChannel(timeout_seconds=0.05)
    timeouts = []
    channel.on_timeout(lambda: timeouts.append(True))

    events = list(channel.events(poll_interval=0.01))

    assert timeouts == [True]
    assert [e.stage for e in events] == [Stage.TIMEOUT]
    assert events[0].content == "connection timeout"


def test_failing_hook_does_not_break_completion(channel):
    def broken():
        raise RuntimeError("hook bug")

    channel.on_complete(broken)
    channel.complete()
    assert channel.completed


def test_event_serialisation():
    event = ChatEvent("found 2", Stage.RETRIEVAL_END, payload=[{"documentId": "d1"}])
    assert event.to_dict() == {
        "content": "found 2",
        "stage": "retrieval_end",
        "payload": [{"documentId": "d1"}],
        "done": False,
    }


@pytest.mark.parametrize("stage", list(Stage))
def test_stage_values_are_lowercase_names(stage):
    assert stage.value == stage.name.lower()
