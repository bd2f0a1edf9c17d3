"""Unit tests for the tree-walking interpreter."""

import math

import pytest

from mplcore.lang.errors import (
    BudgetExceeded,
    ExecutionCancelled,
    InvalidContext,
    NotIterable,
    StackOverflow,
    TypeMismatch,
    UndefinedCallable,
    UndefinedVariable,
)
from mplcore.lang.values import UNDEFINED


def evaluate(vm, expr):
    """Evaluate one expression in the VM's global scope."""
    vm.run(f"var __result = {expr};")
    return vm.interpreter.globals.lookup("__result")


def var(vm, name):
    return vm.interpreter.globals.lookup(name)


class TestArithmetic:
    """Tests for arithmetic and coercion."""

    def test_precedence(self, vm):
        assert evaluate(vm, "1 + 2 * 3") == 7.0

    def test_numeric_strings_coerce(self, vm):
        assert evaluate(vm, "'3' * '4'") == 12.0
        assert evaluate(vm, "'1' + 2") == 3.0

    def test_string_concatenation(self, vm):
        assert evaluate(vm, "'cell ' + 7") == "cell 7"
        assert evaluate(vm, "'v=' + 2.5") == "v=2.5"

    def test_non_numeric_operand_is_type_mismatch(self, vm):
        with pytest.raises(TypeMismatch):
            evaluate(vm, "1 + true")
        with pytest.raises(TypeMismatch):
            evaluate(vm, "[1] * 2")

    def test_division_by_zero_is_ieee(self, vm):
        assert evaluate(vm, "1 / 0") == math.inf
        assert evaluate(vm, "-1 / 0") == -math.inf
        assert math.isnan(evaluate(vm, "0 / 0"))

    def test_modulo(self, vm):
        assert evaluate(vm, "7 % 3") == 1.0
        assert evaluate(vm, "-7 % 3") == -1.0
        assert math.isnan(evaluate(vm, "5 % 0"))

    def test_unary(self, vm):
        assert evaluate(vm, "-(2 + 3)") == -5.0
        assert evaluate(vm, "!0") is True
        assert evaluate(vm, "+'4'") == 4.0


class TestComparison:
    """Tests for equality, ordering and logical operators."""

    def test_strict_equality(self, vm):
        assert evaluate(vm, "1 == '1'") is False
        assert evaluate(vm, "2 == 2.0") is True
        assert evaluate(vm, "'a' != 'b'") is True

    def test_reference_equality(self, vm):
        assert evaluate(vm, "[1] == [1]") is False
        vm.run("var a = [1];")
        assert evaluate(vm, "a == a") is True

    def test_ordering(self, vm):
        assert evaluate(vm, "2 < 3") is True
        assert evaluate(vm, "'10' > 9") is True
        assert evaluate(vm, "'apple' < 'banana'") is True

    def test_logical_returns_operand(self, vm):
        assert evaluate(vm, "0 || 'x'") == "x"
        assert evaluate(vm, "'' && 1") == ""
        assert evaluate(vm, "1 && 2") == 2.0

    def test_short_circuit(self, vm):
        vm.run("var hits = 0; function hit() { hits = hits + 1; return true; }")
        vm.run("var r = true || hit(); var s = false && hit();")
        assert var(vm, "hits") == 0.0


class TestScopes:
    """Tests for variables, scopes and closures."""

    def test_redeclaration_overwrites(self, vm):
        vm.run("var x = 1; var x = 2;")
        assert var(vm, "x") == 2.0

    def test_assignment_to_undeclared(self, vm):
        with pytest.raises(UndefinedVariable) as exc:
            vm.run("var ok = 1;\ny = 2;")
        assert exc.value.line == 2

    def test_undefined_read(self, vm):
        with pytest.raises(UndefinedVariable):
            vm.run("var x = missing + 1;")

    def test_blocks_create_scopes(self, vm):
        vm.run("var x = 1; { var x = 2; var inner = 3; }")
        assert var(vm, "x") == 1.0
        with pytest.raises(UndefinedVariable):
            var(vm, "inner")

    def test_assignment_reaches_outer_scope(self, vm):
        vm.run("var total = 0; for (var i = 0; i < 4; i = i + 1) { total = total + i; }")
        assert var(vm, "total") == 6.0

    def test_closure_counter(self, vm):
        vm.run("""
            function counter() {
                var n = 0;
                return function () { n = n + 1; return n; };
            }
            var next = counter();
            next(); next();
            var third = next();
        """)
        assert var(vm, "third") == 3.0

    def test_globals_persist_between_runs(self, vm):
        vm.run("var kept = 41;")
        vm.run("kept = kept + 1;")
        assert var(vm, "kept") == 42.0


class TestFunctions:
    """Tests for calls, parameters and recursion."""

    def test_recursion(self, vm):
        vm.run("function fact(n) { if (n <= 1) return 1; return n * fact(n - 1); }")
        assert evaluate(vm, "fact(5)") == 120.0

    def test_missing_arguments_are_undefined(self, vm):
        vm.run("function second(a, b) { return b; }")
        assert evaluate(vm, "second(1)") is UNDEFINED

    def test_extra_arguments_ignored(self, vm):
        vm.run("function first(a) { return a; }")
        assert evaluate(vm, "first(1, 2, 3)") == 1.0

    def test_parameter_default(self, vm):
        vm.run("function scale(x, k = 10) { return x * k; }")
        assert evaluate(vm, "scale(2)") == 20.0
        assert evaluate(vm, "scale(2, 3)") == 6.0

    def test_fall_through_returns_undefined(self, vm):
        vm.run("function nothing() { var a = 1; }")
        assert evaluate(vm, "nothing()") is UNDEFINED

    def test_rule_called_like_function(self, vm):
        vm.run("rule cross { set(2, 1); set(2, 2); set(2, 3); set(1, 2); set(3, 2); } cross();")
        assert int((vm.grid.layer() > 0).sum()) == 5
        assert "cross" in vm.interpreter.rules

    def test_unknown_callable(self, vm):
        with pytest.raises(UndefinedCallable):
            vm.run("draw();")

    def test_calling_a_number(self, vm):
        with pytest.raises(TypeMismatch):
            vm.run("var n = 1; n();")

    def test_plain_variable_does_not_shadow_builtin(self, vm):
        vm.run("var set = 1; set(0, 0);")
        assert vm.grid.get(0, 0) == 255

    def test_user_function_shadows_builtin(self, vm):
        vm.run("function print(x) { return 1; } print('hidden');")
        assert vm.output == []

    def test_stack_overflow(self, make_vm):
        vm = make_vm(max_call_depth=100)
        with pytest.raises(StackOverflow):
            vm.run("function down(n) { return down(n + 1); } down(0);")

    def test_stack_overflow_leaves_vm_usable(self, make_vm):
        vm = make_vm(max_call_depth=50)
        with pytest.raises(StackOverflow):
            vm.run("function down(n) { return down(n + 1); } down(0);")
        vm.run("var after = 1;")
        assert var(vm, "after") == 1.0


class TestControlFlow:
    """Tests for loops and conditionals."""

    def test_while_with_break_and_continue(self, vm):
        vm.run("""
            var i = 0; var odd = 0;
            while (true) {
                i = i + 1;
                if (i > 9) break;
                if (i % 2 == 0) continue;
                odd = odd + 1;
            }
        """)
        assert var(vm, "odd") == 5.0

    def test_for_of_array(self, vm):
        vm.run("var s = 0; for (var v of [1, 2, 3]) s = s + v;")
        assert var(vm, "s") == 6.0

    def test_for_of_object_values_in_order(self, vm):
        vm.run("var out = ''; for (var v of {b: 'x', a: 'y'}) out = out + v;")
        assert var(vm, "out") == "xy"

    def test_for_of_string(self, vm):
        vm.run("var n = 0; for (var ch of 'abc') n = n + 1;")
        assert var(vm, "n") == 3.0

    def test_for_of_snapshots_array(self, vm):
        vm.run("var xs = [1, 2]; var seen = 0; for (var v of xs) { xs[xs.length] = v; seen = seen + 1; }")
        assert var(vm, "seen") == 2.0
        assert len(var(vm, "xs")) == 4

    def test_not_iterable(self, vm):
        with pytest.raises(NotIterable):
            vm.run("for (var v of 5) print(v);")

    def test_else_branch(self, vm):
        vm.run("var r = 0; if (0) r = 1; else r = 2;")
        assert var(vm, "r") == 2.0


class TestMembers:
    """Tests for arrays, objects and member access."""

    def test_length_and_index(self, vm):
        assert evaluate(vm, "[1, 2, 3].length") == 3.0
        assert evaluate(vm, "'abc'[1]") == "b"

    def test_missing_members_are_undefined(self, vm):
        assert evaluate(vm, "{a: 1}.b") is UNDEFINED
        assert evaluate(vm, "[1, 2][5]") is UNDEFINED

    def test_member_assignment(self, vm):
        vm.run("var o = {}; o.k = 1; o['j'] = 2; var a = [0]; a[0] = 5; a[1] = 6;")
        assert var(vm, "o") == {"k": 1.0, "j": 2.0}
        assert var(vm, "a") == [5.0, 6.0]

    def test_member_of_undefined(self, vm):
        with pytest.raises(TypeMismatch):
            vm.run("var u; var x = u.field;")


class TestBuiltins:
    """Tests for grid and library builtins."""

    def test_set_and_get(self, vm):
        vm.run("set(1, 2); var v = get(1, 2); var w = get(0, 0);")
        assert vm.grid.get(1, 2) == 255
        assert var(vm, "v") == 255.0
        assert var(vm, "w") == 0.0

    def test_fractional_coordinates_floor(self, vm):
        vm.run("set(1.7, 2.2);")
        assert vm.grid.get(1, 2) == 255

    def test_set_out_of_range_is_noop(self, vm):
        before = vm.grid.layer().copy()
        vm.run("set(-1, 0); set(5, 0); set(0, 0, 1); set(0 / 0, 1);")
        assert (vm.grid.layer() == before).all()

    def test_clear(self, vm):
        vm.run("set(1, 1); set(2, 2); clear();")
        assert not vm.grid.layer().any()

    def test_layer_switch(self, vm):
        vm.run("layer(1); set(0, 0); layer(0);")
        assert vm.grid.get(0, 0, layer=1) == 255
        assert vm.grid.get(0, 0, layer=0) == 0

    def test_layer_out_of_range_is_noop(self, vm, caplog):
        vm.run("layer(99);")
        assert vm.grid.active_layer == 0
        assert "layer(99)" in caplog.text

    def test_print(self, vm):
        vm.run("print('a', 1, true, [1, 2]);")
        assert vm.output == ["a 1 true [1, 2]"]

    def test_aggregates_on_arrays(self, vm):
        assert evaluate(vm, "sum([1, 2, 3])") == 6.0
        assert evaluate(vm, "avg([2, 4])") == 3.0
        assert evaluate(vm, "min(3, 1, 2)") == 1.0
        assert evaluate(vm, "max([4, 9])") == 9.0
        assert evaluate(vm, "count([1, 2])") == 2.0
        assert evaluate(vm, "len('abcd')") == 4.0

    def test_math_object(self, vm):
        assert evaluate(vm, "Math.floor(2.7)") == 2.0
        assert evaluate(vm, "Math.round(2.5)") == 3.0
        assert evaluate(vm, "Math.max(1, 5, 3)") == 5.0
        assert evaluate(vm, "Math.pow(2, 10)") == 1024.0
        assert math.isnan(evaluate(vm, "Math.sqrt(-1)"))
        assert evaluate(vm, "Math.PI") == pytest.approx(math.pi)

    @pytest.mark.parametrize("expr, expected", [
        ("Math.round(0.49999999999999994)", 0.0),
        ("Math.round(0.5)", 1.0),
        ("Math.round(-2.5)", -2.0),
        ("Math.round(-2.6)", -3.0),
        ("Math.round(7)", 7.0),
    ])
    def test_math_round_halves_up(self, vm, expr, expected):
        assert evaluate(vm, expr) == expected

    def test_neighbor_outside_tick(self, vm):
        with pytest.raises(InvalidContext):
            vm.run("var n = neighbor(1, 0);")

    def test_native_error_carries_call_site(self, vm):
        with pytest.raises(TypeMismatch) as exc:
            vm.run("var ok = 1;\nvar bad = Math.floor('abc');")
        assert exc.value.line == 2

    def test_seeded_random_is_reproducible(self, make_vm):
        a, b = make_vm(seed=7), make_vm(seed=7)
        source = "var r = [random(), Math.random(), random()];"
        a.run(source)
        b.run(source)
        assert var(a, "r") == var(b, "r")
        assert all(0.0 <= x < 1.0 for x in var(a, "r"))

    def test_seed_builtin_resets_sequence(self, vm):
        vm.run("seed(3); var a = random(); seed(3); var b = random();")
        assert var(vm, "a") == var(vm, "b")


class TestExecutionLimits:
    """Tests for budgets, cancellation and error continuation."""

    def test_statement_budget(self, make_vm):
        vm = make_vm(max_statements=50)
        with pytest.raises(BudgetExceeded):
            vm.run("while (true) { }")

    def test_budget_resets_between_runs(self, make_vm):
        vm = make_vm(max_statements=20)
        for _ in range(5):
            vm.run("var a = 1; var b = 2; var c = 3;")

    def test_cancellation(self, vm):
        vm.cancel()
        with pytest.raises(ExecutionCancelled):
            vm.run("var x = 1;")
        vm.run("var y = 2;")
        assert var(vm, "y") == 2.0

    def test_continue_on_error(self, make_vm):
        vm = make_vm(continue_on_error=True)
        errors = vm.run("var a = 1;\nb = 2;\nvar c = 3;")
        assert len(errors) == 1
        assert isinstance(errors[0], UndefinedVariable)
        assert var(vm, "c") == 3.0

    def test_statements_before_error_are_kept(self, vm):
        with pytest.raises(TypeMismatch):
            vm.run("set(0, 0); var bad = [] - 1; set(1, 1);")
        assert vm.grid.get(0, 0) == 255
        assert vm.grid.get(1, 1) == 0
