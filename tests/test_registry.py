"""Unit tests for rlmenv.registry and rlmenv.trace."""

from __future__ import annotations

import pytest

from rlmenv.context import ChunkDescriptor
from rlmenv.registry import SessionRegistry, SessionState
from rlmenv.trace import SessionTrace, summarize_arg


class TestSessionState:
    def test_terminal(self) -> None:
        assert not SessionState.RUNNING.is_terminal
        assert SessionState.COMPLETED.is_terminal
        assert SessionState.FAILED.is_terminal
        assert SessionState.ABORTED.is_terminal

    def test_value_is_str(self) -> None:
        assert SessionState.ABORTED == "aborted"


class TestSessionRegistry:
    def test_ids_are_sequential(self) -> None:
        registry = SessionRegistry()
        ids = [registry.create(None, 0, 1).session_id for _ in range(3)]
        assert ids == ["s0", "s1", "s2"]

    def test_children_are_linked(self) -> None:
        registry = SessionRegistry()
        root = registry.create(None, 0, 2)
        child = registry.create(root.session_id, 1, 2)
        grandchild = registry.create(child.session_id, 2, 2)
        assert [c.session_id for c in registry.children(root.session_id)] == [child.session_id]
        tree = registry.tree(root.session_id)
        assert tree["children"][0]["children"][0]["session_id"] == grandchild.session_id

    def test_count_by_state(self) -> None:
        registry = SessionRegistry()
        a = registry.create(None, 0, 1)
        registry.create(None, 0, 1)
        a.state = SessionState.FAILED
        assert registry.count() == 2
        assert registry.count(SessionState.FAILED) == 1
        assert len(registry) == 2

    def test_unknown_id(self) -> None:
        with pytest.raises(KeyError):
            SessionRegistry().get("missing")


class TestSessionTrace:
    def test_record_success(self) -> None:
        trace = SessionTrace("s0")
        with trace.record("op", a=1) as event:
            event.detail["n"] = 2
        [event] = trace.events
        assert event.outcome == "ok"
        assert event.args == {"a": 1}
        assert event.duration >= 0
        assert event.to_dict()["detail"] == {"n": 2}

    def test_record_error_reraises(self) -> None:
        trace = SessionTrace("s0")
        with pytest.raises(KeyError):
            with trace.record("op"):
                raise KeyError("k")
        event = trace.events[0]
        assert event.outcome == "error"
        assert event.error_type == "KeyError"
        assert "error_type" in event.to_dict()

    def test_to_dict(self) -> None:
        trace = SessionTrace("s1", parent_id="s0", depth=1)
        with trace.record("x"):
            pass
        data = trace.to_dict()
        assert data["parent_id"] == "s0"
        assert len(data["events"]) == 1
        assert len(trace) == 1


class TestSummarizeArg:
    def test_scalars(self) -> None:
        assert summarize_arg(3) == 3
        assert summarize_arg(None) is None
        assert summarize_arg("short") == "short"

    def test_long_string(self) -> None:
        summary = summarize_arg("y" * 200)
        assert summary["length"] == 200
        assert summary["preview"].endswith("...")

    def test_descriptor(self) -> None:
        assert summarize_arg(ChunkDescriptor(1, 2, 3)) == {"id": 1, "start": 2, "end": 3}

    def test_collections(self) -> None:
        assert summarize_arg([1, 2, 3]) == {"type": "list", "length": 3}
        assert summarize_arg({"b": 1, "a": 2}) == {"type": "dict", "keys": ["a", "b"]}
