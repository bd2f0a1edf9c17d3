"""Unit tests for rule debug tracing."""

from mplcore.lang.tracing import NULL_TRACER, RuleDebugTracer, VoxelPos


def capture(tracer, events):
    tracer.begin(4, VoxelPos(1, 2, 0))
    for event in events:
        getattr(tracer, event[0])(*event[1:])
    return tracer.end()


class TestRuleDebugTracer:
    """Tests for capture and summary."""

    def test_target(self):
        tracer = RuleDebugTracer()
        assert not tracer.has_target()
        tracer.set_target((1, 2, 0), layer=1)
        assert tracer.captures(1, 1, 2, 0)
        assert not tracer.captures(0, 1, 2, 0)
        assert not tracer.captures(1, 2, 2, 0)
        tracer.set_target(None)
        assert not tracer.has_target()

    def test_matched_needs_predicate_and_action(self):
        trace = capture(RuleDebugTracer(), [
            ("rule_start", "a"),
            ("predicate", "a", "match", True),
            ("rule_end", "a"),
            ("action", "a", "cell := 255"),
            ("rule_start", "b"),
            ("predicate", "b", "match", True),
            ("rule_end", "b"),
            ("rule_start", "c"),
            ("predicate", "c", "if@1:5", False),
            ("rule_end", "c"),
            ("action", "c", "cell := 1"),
        ])
        assert trace.step == 4
        assert trace.pos == VoxelPos(1, 2, 0)
        assert trace.matched_rules == ["a"]

    def test_empty_capture(self):
        tracer = RuleDebugTracer()
        tracer.begin(1, VoxelPos(0, 0, 0))
        assert tracer.end() is None

    def test_end_resets(self):
        tracer = RuleDebugTracer()
        capture(tracer, [("rule_start", "a")])
        assert tracer.end() is None

    def test_to_dict(self):
        trace = capture(RuleDebugTracer(), [
            ("rule_start", "a"),
            ("predicate", "a", "if@2:7", True, {"value": "true"}),
            ("action", "a", "cell := 9", {"from": 0, "to": 9}),
            ("rule_end", "a"),
        ])
        data = trace.to_dict()
        assert data["pos"] == {"x": 1, "y": 2, "z": 0}
        assert data["entries"][1] == {
            "kind": "predicate",
            "ruleId": "a",
            "label": "if@2:7",
            "ok": True,
            "details": {"value": "true"},
        }
        assert data["entries"][2]["delta"] == {"from": 0, "to": 9}
        assert data["summary"] == {"matchedRules": ["a"]}


def test_null_tracer_is_disabled():
    assert NULL_TRACER.enabled is False
    NULL_TRACER.rule_start("a")
    NULL_TRACER.predicate("a", "match", True)
