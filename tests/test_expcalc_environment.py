import decimal
import pytest
from decimal import Decimal

from expcalc.expcalc_datatypes import Operation, StaticVariable, ValidationError
from expcalc.expcalc_environment import (
    Environment, Overlay, OperatorBinding, TOMBSTONE, Override,
    context_for, context_name, validate_variable_name, validate_function_name,
    validate_operator_symbol, UNLIMITED_PRECISION, DEFAULT_MAX_DEPTH
)
from expcalc.expcalc_runtime import NativeFunction, build_default_environment


class Mul(Operation):
    symbol = "*"
    precedence = 2

    def calculate(self, left, right, environment):
        return environment.context.multiply(left, right)


def _double(x):
    return x * 2

# --- Name validation ---

@pytest.mark.parametrize("name", ["x", "x1", "_tmp", "a.b", "  padded  "])
def test_valid_variable_names(name):
    assert validate_variable_name(name) == name.strip()


@pytest.mark.parametrize("name, fragment", [
    ("", "empty"),
    ("   ", "empty"),
    ("1x", "numeric"),
    (".x", "numeric"),
    ("x(", "\"(\""),
    ("a-b", "alphanumeric"),
    (None, "None"),
])
def test_invalid_variable_names(name, fragment):
    with pytest.raises(ValidationError) as exc:
        validate_variable_name(name)
    assert fragment in exc.value.message


def test_function_names_allow_parens():
    assert validate_function_name("f()") == "f()"
    with pytest.raises(ValidationError):
        validate_function_name("2f")


@pytest.mark.parametrize("symbol", ["+", "**", "<=", "$"])
def test_valid_operator_symbols(symbol):
    assert validate_operator_symbol(symbol) == symbol


@pytest.mark.parametrize("symbol", ["", "a", "1", ".", "_", "+ +"])
def test_invalid_operator_symbols(symbol):
    with pytest.raises(ValidationError):
        validate_operator_symbol(symbol)

# --- Environment ---

def test_bare_environment_is_empty_and_unlimited():
    env = Environment()
    assert not env.get_operations()
    assert not env.get_functions()
    assert not env.get_variables()
    assert env.context.prec == UNLIMITED_PRECISION
    assert context_name(env.context) == "unlimited"
    assert env.max_depth == DEFAULT_MAX_DEPTH
    assert env.bracket_multiply is False and env.variable_multiply is False


def test_set_variable_wraps_and_removes():
    env = Environment()
    env.set_variable("x", 5)
    assert isinstance(env.get_variable("x"), StaticVariable)
    assert env.get_variable("x").value() == Decimal(5)
    assert env.has_variable("x")
    env.set_variable("x", None)
    assert not env.has_variable("x")
    assert env.get_variable("x") is None


def test_set_variable_validates_name():
    with pytest.raises(ValidationError):
        Environment().set_variable("1bad", 1)


def test_set_variable_rejects_non_numeric_strings():
    env = Environment()
    with pytest.raises(ValidationError):
        env.set_variable("x", "abc")
    assert not env.has_variable("x")


def test_set_operation_records_precedence():
    env = Environment()
    env.set_operation("*", Mul())
    binding = env.get_operation_binding("*")
    assert isinstance(binding, OperatorBinding)
    assert binding.precedence == 2
    env.set_operation("**", Mul(), 7)
    assert env.get_operation_binding("**").precedence == 7
    assert isinstance(env.get_operation("**"), Mul)


@pytest.mark.parametrize("precedence", [-1, 1.5, True])
def test_set_operation_rejects_bad_precedence(precedence):
    with pytest.raises(ValidationError):
        Environment().set_operation("*", Mul(), precedence)


def test_set_function_rejects_non_functions():
    with pytest.raises(ValidationError):
        Environment().set_function("f", lambda x: x)


def test_context_setter_rejects_none():
    env = Environment()
    with pytest.raises(ValidationError):
        env.context = None
    with pytest.raises(ValidationError):
        env.context = 34


@pytest.mark.parametrize("name, prec", [
    ("32bit", 7), ("64 bit", 16), ("128-bit", 34), ("50", 50), (12, 12),
])
def test_context_for(name, prec):
    assert context_for(name).prec == prec


def test_context_for_unlimited_and_unknown():
    assert context_for("*").traps[decimal.Inexact]
    assert context_name(context_for("unlimited")) == "unlimited"
    assert context_name(context_for("64bit")) == "64bit"
    assert context_name(context_for(20)) == "20 digits"
    with pytest.raises(ValidationError):
        context_for("huge")


def test_use_default_installs_library():
    env = Environment().use_default()
    assert {"+", "-", "*", "/", "%", "^", "=="} <= env.get_operations()
    assert {"abs", "max", "min", "floor"} <= env.get_functions()
    assert "pi" in env.get_variables()
    assert context_name(env.context) == "128bit"

# --- Overlay ---

def test_overlay_reads_through_and_shadows():
    parent = Environment()
    parent.set_variable("a", 1)
    parent.set_variable("b", 2)
    child = parent.copy()
    assert isinstance(child, Overlay)
    child.set_variable("b", 20)
    assert child.get_variable("a").value() == Decimal(1)
    assert child.get_variable("b").value() == Decimal(20)
    assert parent.get_variable("b").value() == Decimal(2)
    assert isinstance(child.variables["b"], Override)


def test_overlay_removal_tombstones_parent_entry():
    parent = Environment()
    parent.set_variable("a", 1)
    child = parent.copy()
    child.set_variable("a", None)
    assert child.variables["a"] is TOMBSTONE
    assert not child.has_variable("a")
    assert "a" not in child.get_variables()
    assert parent.get_variable("a").value() == Decimal(1)


def test_overlay_removal_of_local_entry_drops_delta():
    parent = Environment()
    child = parent.copy()
    child.set_variable("tmp", 3)
    child.set_variable("tmp", None)
    assert "tmp" not in child.variables
    assert not child.has_variable("tmp")


def test_overlay_enumeration_merges():
    parent = Environment()
    parent.set_function("double", NativeFunction("double", _double))
    parent.set_function("other", NativeFunction("other", _double))
    child = parent.copy()
    child.set_function("triple", NativeFunction("triple", _double))
    child.set_function("other", None)
    assert child.get_functions() == {"double", "triple"}


def test_overlay_later_parent_changes_are_visible():
    parent = Environment()
    child = parent.copy()
    parent.set_variable("late", 9)
    assert child.get_variable("late").value() == Decimal(9)


def test_overlay_snapshots_context_and_flags():
    parent = build_default_environment()
    parent.bracket_multiply = True
    parent.max_depth = 12
    child = parent.copy()
    assert child.context is parent.context
    assert child.bracket_multiply is True
    assert child.max_depth == 12
    child.context = context_for("32bit")
    child.bracket_multiply = False
    assert parent.context.prec == 34
    assert parent.bracket_multiply is True


def test_copy_deep_is_flat_and_independent():
    parent = build_default_environment()
    parent.set_variable("x", 1)
    child = parent.copy()
    child.set_variable("y", 2)
    child.set_variable("pi", None)
    flat = child.copy_deep()
    assert type(flat) is Environment
    assert flat.get_variable("x").value() == Decimal(1)
    assert flat.get_variable("y").value() == Decimal(2)
    assert not flat.has_variable("pi")
    assert flat.get_operations() == parent.get_operations()
    flat.set_variable("x", 100)
    assert parent.get_variable("x").value() == Decimal(1)
