"""
Defines the core data types for the expcalc runtime.

This module provides the error hierarchy, the capability contracts that
operators, functions and variables implement, and the Step records the
parser hands to the evaluator.
"""

import decimal
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from expcalc.expcalc_environment import Environment

# =================================================================
# Errors
# =================================================================

class ExpressionError(Exception):
    """Base class for every error raised while parsing or evaluating."""
    kind_name = "ExpressionError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def prefixed(self, prefix: str) -> 'ExpressionError':
        """Returns a copy of this error with `prefix: ` prepended to the message."""
        err = self.__class__.__new__(self.__class__)
        err.__dict__.update(self.__dict__)
        err.message = f"{prefix}: {self.message}"
        err.args = (err.message,)
        return err


class ExpressionSyntaxError(ExpressionError):
    kind_name = "SyntaxError"


class UndefinedSymbol(ExpressionError):
    kind_name = "UndefinedSymbol"

    def __init__(self, kind: str, name: str):
        verb = "Undeclared" if kind == "function" else ("Unknown" if kind == "operator" else "Undefined")
        super().__init__(f'{verb} {kind} "{name}".')
        self.kind = kind
        self.name = name


class InvalidLiteral(ExpressionError):
    kind_name = "InvalidLiteral"


class ArityError(ExpressionError):
    kind_name = "ArityError"

    def __init__(self, expected: Any, received: int):
        if expected == 1:
            text = "requires exactly one parameter."
        elif isinstance(expected, int):
            text = f"requires exactly {expected} parameters."
        else:
            text = f"requires {expected} parameters."
        super().__init__(text)
        self.expected = expected
        self.received = received


class ValidationError(ExpressionError):
    kind_name = "ValidationError"


class EvaluationError(ExpressionError):
    kind_name = "EvaluationError"


class NestingDepthError(EvaluationError):
    kind_name = "NestingDepthError"


# =================================================================
# Capability Contracts
# =================================================================

class Operation(ABC):
    """A binary operator. `precedence` is used unless registration overrides it."""
    symbol: str = "?"
    precedence: int = 0

    @abstractmethod
    def calculate(self, left: Decimal, right: Decimal, environment: 'Environment') -> Decimal:
        raise NotImplementedError

    def describe(self) -> str:
        return self.symbol

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.symbol!r} precedence={self.precedence}>"


class Function(ABC):
    """A named function called with a list of already evaluated parameters."""
    name: str = "?"

    @abstractmethod
    def run(self, parameters: Sequence[Decimal], environment: 'Environment') -> Decimal:
        raise NotImplementedError

    def describe(self) -> str:
        return f"{self.name}()"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class Variable(ABC):
    """A value source, read again on every lookup."""

    @abstractmethod
    def value(self) -> Decimal:
        raise NotImplementedError

    def describe(self) -> str:
        return type(self).__name__


class StaticVariable(Variable):
    """A variable holding one fixed value (user definitions, parameter bindings)."""
    def __init__(self, value: Decimal):
        if value is None:
            raise ValidationError("The variable value cannot be None!")
        if not isinstance(value, Decimal):
            try:
                value = Decimal(str(value))
            except decimal.InvalidOperation as e:
                raise ValidationError(f"Invalid variable value \"{value}\".") from e
        if not value.is_finite():
            raise ValidationError(f"Invalid variable value \"{value}\".")
        self._value = value

    def value(self) -> Decimal:
        return self._value

    def describe(self) -> str:
        return format(self._value, "f")

    def __repr__(self) -> str:
        return f"<StaticVariable {self._value}>"

    def __eq__(self, other):
        return isinstance(other, StaticVariable) and self._value == other._value


class ReturnOperation(Operation):
    """The trivial operation used when an expression has no operator."""
    symbol = "="
    precedence = 0

    def calculate(self, left, right, environment):
        return left if right is None else right


RETURN = ReturnOperation()


# =================================================================
# Step chain
# =================================================================

@dataclass
class Step:
    """One binary operation in a step chain. Links are indices into the chain."""
    left: Decimal
    operation: Operation
    right: Decimal
    precedence: int = 0
    symbol: str = ""
    previous: Optional[int] = None
    next: Optional[int] = None
    active: bool = True

    def __str__(self) -> str:
        return f"{format(self.left, 'f')}{self.symbol or self.operation.symbol}{format(self.right, 'f')}"


class StepChain:
    """An arena of Steps linked by index.

    Steps are appended while parsing and spliced out (marked inactive) while
    evaluating; the list itself never shrinks.
    """
    def __init__(self):
        self.steps: List[Step] = []
        self.head: Optional[int] = None

    def append(self, step: Step) -> int:
        index = len(self.steps)
        if self.steps:
            last = index - 1
            self.steps[last].next = index
            step.previous = last
        else:
            self.head = index
        self.steps.append(step)
        return index

    def __len__(self) -> int:
        return len(self.steps)

    def __getitem__(self, index: int) -> Step:
        return self.steps[index]

    def walk(self):
        """Yields the indices of the active steps from the head, following links."""
        index = self.head
        while index is not None:
            step = self.steps[index]
            following = step.next
            yield index
            index = following

    def splice(self, index: int, value: Decimal):
        """Removes a resolved step, handing its value to its neighbours."""
        step = self.steps[index]
        changed = False
        if step.previous is not None:
            prev = self.steps[step.previous]
            prev.right = value
            prev.next = step.next
            changed = True
        if step.next is not None:
            nxt = self.steps[step.next]
            nxt.left = value
            nxt.previous = step.previous
            changed = True
        if not changed:
            step.right = value
            return
        if self.head == index:
            self.head = step.next
        step.active = False

    def max_precedence(self) -> int:
        return max((self.steps[i].precedence for i in self.walk()), default=0)

    def to_expression_string(self) -> str:
        """Renders the remaining chain back as `left op left op ... right`."""
        parts = []
        last = None
        for index in self.walk():
            step = self.steps[index]
            parts.append(format(step.left, "f"))
            parts.append(step.symbol or step.operation.symbol)
            last = step
        if last is None:
            return ""
        parts.append(format(last.right, "f"))
        return "".join(parts)
