"""Unit tests for rule compilation and hot reload."""

import pytest

from mplcore.core.events import EventBus
from mplcore.core.registry import ActiveRuleSet, RuleRegistry, compile_rules, fnv1a_hash
from mplcore.lang.errors import LexError, MPLRuntimeError, ParseError, RuleValidationError


class TestHash:
    """Tests for the FNV-1a source hash."""

    def test_reference_values(self):
        assert fnv1a_hash("") == "811c9dc5"
        assert fnv1a_hash("a") == "e40c292c"
        assert fnv1a_hash("foobar") == "bf9cf968"

    def test_utf8_bytes(self):
        assert fnv1a_hash("é") != fnv1a_hash("e")
        assert len(fnv1a_hash("rule r() {}")) == 8


class TestCompile:
    """Tests for compile_rules validation."""

    def test_rules_in_declaration_order(self):
        result = compile_rules("rule b() {} var x = 1; rule a(k = 2) {}")
        assert result.ok
        assert [r.id for r in result.rules] == ["b", "a"]
        assert result.rules[1].parameter_names == ("k",)
        assert result.unit.source_hash == fnv1a_hash("rule b() {} var x = 1; rule a(k = 2) {}")

    def test_duplicate_rule_names(self):
        result = compile_rules("rule r() {}\nrule r() {}")
        assert not result.ok
        assert isinstance(result.errors[0], RuleValidationError)
        assert result.errors[0].line == 2

    def test_reserved_name(self):
        result = compile_rules("rule set() {}")
        assert not result.ok
        assert "builtin" in result.errors[0].message

    def test_duplicate_parameters(self):
        result = compile_rules("rule r(a, a) {}")
        assert not result.ok
        assert "Duplicate parameter" in result.errors[0].message

    def test_parameter_shadowing_cell_binding(self):
        result = compile_rules("rule r(alive) {}")
        assert not result.ok

    def test_nested_rule(self):
        result = compile_rules("function f() {\n  rule inner() {}\n}")
        assert not result.ok
        assert result.errors[0].line == 2
        assert "top level" in result.errors[0].message

    def test_syntax_errors_collected(self):
        result = compile_rules("rule r() { var = 1; }\nrule s() { x = ; }")
        assert not result.ok
        assert len(result.errors) == 2
        assert all(isinstance(e, ParseError) for e in result.errors)

    def test_deeply_nested_source_is_rejected(self):
        source = "rule deep() { return " + "(" * 200 + "1" + ")" * 200 + "; }"
        result = compile_rules(source)
        assert result.ok is False
        assert "nested too deeply" in result.errors[0].message

    def test_lex_error(self):
        result = compile_rules("rule r() { return #; }")
        assert not result.ok
        assert isinstance(result.errors[0], LexError)

    def test_empty_rule_set(self):
        result = compile_rules("var x = 1;")
        assert result.ok
        assert result.rules == []

    def test_unit_is_immutable(self):
        unit = compile_rules("rule r() {}").unit
        with pytest.raises(TypeError):
            unit.rule_table["s"] = unit.rule_table["r"]


def make_registry(fail=False):
    events = EventBus()
    seen = []
    for name in ("rulesReloaded", "rulesReloadError"):
        events.on(name, lambda payload, name=name: seen.append((name, payload)))

    def activate(unit):
        if fail:
            raise MPLRuntimeError("init failed")
        return ActiveRuleSet(unit, ())

    return RuleRegistry(activate, events=events), seen


class TestRuleRegistry:
    """Tests for stage / apply / rollback."""

    def test_apply_without_staged(self):
        registry, _ = make_registry()
        assert registry.apply_staged() is False

    def test_stage_and_apply(self):
        registry, seen = make_registry()
        source = "rule r() { return 1; }"
        assert registry.stage(source).ok
        assert registry.status().has_staged
        assert registry.apply_staged()
        status = registry.status()
        assert not status.has_staged
        assert status.active_hash == fnv1a_hash(source)
        name, payload = seen[-1]
        assert name == "rulesReloaded"
        assert payload.source_hash == fnv1a_hash(source)
        assert payload.byte_size == len(source)

    def test_validate_does_not_stage(self):
        registry, _ = make_registry()
        assert registry.validate("rule r() {}").ok
        assert registry.staged is None

    def test_failed_stage_keeps_previous_staged(self):
        registry, _ = make_registry()
        registry.stage("rule r() {}")
        staged = registry.staged
        assert not registry.stage("rule (").ok
        assert registry.staged is staged

    def test_rollback(self):
        registry, _ = make_registry()
        registry.stage("rule r() {}")
        registry.rollback_staged()
        assert registry.staged is None
        assert registry.apply_staged() is False

    def test_failed_apply_keeps_active_and_staged(self):
        registry, seen = make_registry(fail=True)
        registry.stage("rule r() {}")
        assert registry.apply_staged() is False
        assert registry.active is None
        assert registry.staged is not None
        name, payload = seen[-1]
        assert name == "rulesReloadError"
        assert payload.errors == ["init failed"]


class TestHotReloadOnVM:
    """Hot reload through the VM facade."""

    def test_syntax_error_keeps_previous_rules(self, vm):
        assert vm.load_rules("rule fill() { return 50; }").ok
        result = vm.stage_rules("rule fill() { return 80 }")
        assert not result.ok
        assert vm.apply_staged() is False
        vm.tick()
        assert (vm.grid.layer() == 50).all()

    def test_init_error_keeps_previous_rules(self, vm):
        errors = []
        vm.events.on("rulesReloadError", errors.append)
        vm.load_rules("rule fill() { return 50; }")
        assert vm.stage_rules("var x = missing; rule fill() { return 80; }").ok
        assert vm.apply_staged() is False
        assert len(errors) == 1
        vm.tick()
        assert (vm.grid.layer() == 50).all()
        assert vm.rule_status().has_staged

    def test_swap_replaces_rules(self, vm):
        vm.load_rules("rule fill() { return 50; }")
        vm.load_rules("rule other() { return 60; }")
        assert vm.get_rules() == ["other"]
        vm.tick()
        assert (vm.grid.layer() == 60).all()

    def test_init_statements_run_in_rule_set_scope(self, vm):
        vm.load_rules("""
            var level = 70;
            function double(v) { return v * 2; }
            rule fill() { return double(level); }
        """)
        vm.tick()
        assert (vm.grid.layer() == 140).all()
        assert "level" not in vm.get_variables()

    def test_rule_set_sees_vm_globals(self, vm):
        vm.run("var base = 5;")
        vm.load_rules("rule fill() { return base; }")
        vm.tick()
        assert vm.grid.get(0, 0) == 5

    def test_program_rules_are_not_active(self, vm):
        vm.run("rule paint() { return 9; }")
        vm.tick()
        assert not vm.grid.layer().any()
        assert vm.get_rules() == []

    def test_deeply_nested_stage_keeps_previous_rules(self, vm):
        assert vm.load_rules("rule fill() { return 50; }").ok
        source = "rule fill() { return " + "(" * 200 + "1" + ")" * 200 + "; }"
        assert vm.stage_rules(source).ok is False
        assert vm.validate_source(source).ok is False
        vm.tick()
        assert (vm.grid.layer() == 50).all()
