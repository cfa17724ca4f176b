import pytest

from cue import Environment, NotificationCenter
from cue.cue_notifications import Notification


def test_missing_keys_read_as_none_or_default():
    env = Environment()
    assert env["nope"] is None
    assert env.get("nope", 7) == 7
    assert "nope" not in env
    env.remove("nope")
    del env["nope"]


def test_set_get_and_overwrite():
    env = Environment({"a": 1})
    env["a"] = "one"
    env.set("b", [1, 2])
    assert env["a"] == "one"
    assert env.get("b") == [1, 2]
    assert sorted(env) == ["a", "b"]
    assert len(env) == 2
    env.clear()
    assert len(env) == 0


def test_typed_lookup():
    env = Environment({"count": 3, "flag": True, "ratio": 2, "name": "x"})
    assert env.get("count", kind=int) == 3
    assert env.get("flag", kind=int) is None
    assert env.get("flag", kind=bool) is True
    assert env.get("ratio", kind=float) == 2
    assert env.get("name", -1, kind=int) == -1


def test_keys_must_be_strings():
    with pytest.raises(TypeError):
        Environment().set(1, "x")


def test_shared_environment_is_a_single_instance():
    assert Environment.shared is Environment.shared
    assert isinstance(Environment.shared, Environment)


def test_snapshot_is_a_copy():
    env = Environment({"a": 1})
    snap = env.snapshot()
    snap["a"] = 2
    assert env["a"] == 1


def test_notification_center_delivery():
    center = NotificationCenter()
    subject = object()
    everything, filtered = [], []
    center.subscribe("topic", everything.append)
    unsubscribe = center.subscribe("topic", filtered.append, subject=subject)

    center.post("topic", subject, value=1)
    center.post("topic", object())
    center.post("other", subject)

    assert len(everything) == 2
    assert len(filtered) == 1
    assert isinstance(filtered[0], Notification)
    assert filtered[0].info == {"value": 1}

    unsubscribe()
    unsubscribe()
    assert center.observer_count("topic") == 1


def test_handlers_may_unsubscribe_during_delivery():
    center = NotificationCenter()
    seen = []

    def once(note):
        seen.append(note.topic)
        remove()

    remove = center.subscribe("t", once)
    center.subscribe("t", lambda note: seen.append("second"))
    center.post("t")
    center.post("t")
    assert seen == ["t", "second", "second"]
