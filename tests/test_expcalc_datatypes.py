import pytest
from decimal import Decimal

from expcalc.expcalc_datatypes import (
    ExpressionError, ExpressionSyntaxError, UndefinedSymbol, ArityError,
    ValidationError, EvaluationError, NestingDepthError,
    Operation, StaticVariable, Step, StepChain, RETURN
)


class Add(Operation):
    symbol = "+"
    precedence = 1

    def calculate(self, left, right, environment):
        return left + right


ADD = Add()

# --- Errors ---

def test_undefined_symbol_messages():
    assert str(UndefinedSymbol("variable", "x")) == 'Undefined variable "x".'
    assert str(UndefinedSymbol("function", "f")) == 'Undeclared function "f".'
    err = UndefinedSymbol("operator", "$")
    assert err.message == 'Unknown operator "$".'
    assert err.kind == "operator" and err.name == "$"


@pytest.mark.parametrize("expected, text", [
    (1, "requires exactly one parameter."),
    (2, "requires exactly 2 parameters."),
    ("at least 1", "requires at least 1 parameters."),
])
def test_arity_error_message(expected, text):
    err = ArityError(expected, 5)
    assert err.message == text
    assert err.expected == expected
    assert err.received == 5


def test_prefixed_keeps_kind_and_attributes():
    err = ArityError(2, 3)
    prefixed = err.prefixed("max")
    assert isinstance(prefixed, ArityError)
    assert prefixed.message == "max: requires exactly 2 parameters."
    assert str(prefixed) == prefixed.message
    assert prefixed.expected == 2
    # the original is unchanged
    assert err.message == "requires exactly 2 parameters."


def test_error_hierarchy():
    assert issubclass(ExpressionSyntaxError, ExpressionError)
    assert issubclass(NestingDepthError, EvaluationError)
    assert ExpressionSyntaxError.kind_name == "SyntaxError"

# --- Variables ---

def test_static_variable_wraps_values():
    assert StaticVariable(Decimal("1.5")).value() == Decimal("1.5")
    assert StaticVariable(3).value() == Decimal(3)
    assert StaticVariable("2.25").value() == Decimal("2.25")
    assert StaticVariable(Decimal("4")) == StaticVariable(4)


def test_static_variable_rejects_none():
    with pytest.raises(ValidationError):
        StaticVariable(None)


@pytest.mark.parametrize("value", ["abc", "", "NaN", "Infinity", Decimal("NaN")])
def test_static_variable_rejects_non_numbers(value):
    with pytest.raises(ValidationError):
        StaticVariable(value)


def test_return_operation_hands_back_right():
    assert RETURN.calculate(Decimal(1), Decimal(7), None) == Decimal(7)
    assert RETURN.calculate(Decimal(1), None, None) == Decimal(1)

# --- Step chain ---

def _chain(*values):
    chain = StepChain()
    for left, right in zip(values, values[1:]):
        chain.append(Step(Decimal(left), ADD, Decimal(right), 1, "+"))
    return chain


def test_append_links_by_index():
    chain = _chain(1, 2, 3, 4)
    assert len(chain) == 3
    assert chain.head == 0
    assert [chain[i].previous for i in range(3)] == [None, 0, 1]
    assert [chain[i].next for i in range(3)] == [1, 2, None]
    assert list(chain.walk()) == [0, 1, 2]


def test_step_str():
    assert str(Step(Decimal("1.5"), ADD, Decimal(2), 1, "+")) == "1.5+2"


def test_splice_middle_updates_neighbours():
    chain = _chain(1, 2, 3, 4)
    chain.splice(1, Decimal(5))
    assert chain[0].right == Decimal(5)
    assert chain[2].left == Decimal(5)
    assert chain[0].next == 2
    assert chain[2].previous == 0
    assert chain[1].active is False
    assert list(chain.walk()) == [0, 2]


def test_splice_head_moves_head():
    chain = _chain(1, 2, 3)
    chain.splice(0, Decimal(3))
    assert chain.head == 1
    assert chain[1].left == Decimal(3)
    assert chain[1].previous is None
    assert list(chain.walk()) == [1]


def test_splice_last_step_keeps_value():
    chain = _chain(1, 2)
    chain.splice(0, Decimal(3))
    assert chain[0].right == Decimal(3)
    assert chain[0].active is True
    assert list(chain.walk()) == [0]


def test_to_expression_string_and_max_precedence():
    chain = _chain(1, 2, 3)
    assert chain.to_expression_string() == "1+2+3"
    assert chain.max_precedence() == 1
    assert StepChain().to_expression_string() == ""
    assert StepChain().max_precedence() == 0
