"""
Environments: the registries the parser and evaluator resolve names against.

An `Environment` owns the operator, function and variable maps together with
the decimal context and the implicit-multiplication flags. An `Overlay` is a
child view over a parent environment: it records only its own changes
(`Override` entries and `TOMBSTONE` markers) and falls through to the parent
for everything else, so function calls can bind parameters without touching
the caller's environment.

Environments are not synchronised. Sharing one between threads while it is
being mutated is the caller's responsibility.
"""
from __future__ import annotations

import decimal
from dataclasses import dataclass
from decimal import Decimal, Context
from typing import Any, Dict, FrozenSet, Optional, Union

from expcalc.expcalc_datatypes import (
    Operation, Function, Variable, StaticVariable, ValidationError
)

# =================================================================
# Decimal contexts
# =================================================================

# Digits of precision behind the "unlimited" context. Results are exact or
# the Inexact trap fires.
UNLIMITED_PRECISION = 10_000
DEFAULT_MAX_DEPTH = 100

NAMED_CONTEXTS: Dict[str, int] = {
    "32bit": 7,
    "64bit": 16,
    "128bit": 34,
}


def unlimited_context() -> Context:
    """A context that never rounds: inexact results raise decimal.Inexact."""
    return Context(
        prec=UNLIMITED_PRECISION,
        rounding=decimal.ROUND_HALF_EVEN,
        Emax=decimal.MAX_EMAX,
        Emin=decimal.MIN_EMIN,
        traps=[decimal.DivisionByZero, decimal.InvalidOperation, decimal.Overflow, decimal.Inexact],
    )


def precision_context(digits: int, rounding: str = decimal.ROUND_HALF_EVEN) -> Context:
    if not isinstance(digits, int) or isinstance(digits, bool) or digits < 1:
        raise ValidationError(f"Invalid precision: {digits!r}")
    return Context(
        prec=digits,
        rounding=rounding,
        traps=[decimal.DivisionByZero, decimal.InvalidOperation, decimal.Overflow],
    )


def context_for(name: Union[str, int]) -> Context:
    """Resolves '32bit', '64 bit', '128-bit', 'unlimited', '*' or a digit count."""
    if isinstance(name, int) and not isinstance(name, bool):
        return precision_context(name)
    key = str(name).strip().lower().replace(" ", "").replace("-", "")
    if key in ("unlimited", "*"):
        return unlimited_context()
    if key in NAMED_CONTEXTS:
        return precision_context(NAMED_CONTEXTS[key])
    if key.isdigit():
        return precision_context(int(key))
    raise ValidationError(f"Unknown math context \"{name}\".")


def context_name(context: Context) -> str:
    """The display name of a context: its preset name, 'unlimited' or '<n> digits'."""
    if context.traps[decimal.Inexact]:
        return "unlimited"
    for name, digits in NAMED_CONTEXTS.items():
        if context.prec == digits:
            return name
    return f"{context.prec} digits"


# =================================================================
# Name validation
# =================================================================

def _is_digit(c: str) -> bool:
    return '0' <= c <= '9'


def _validate_name(name: Any, what: str, allow_parens: bool) -> str:
    if name is None:
        raise ValidationError(f"The {what} name cannot be None!")
    name = str(name).strip()
    if not name:
        raise ValidationError(f"The {what} name cannot be empty!")
    first = name[0]
    if _is_digit(first) or first == '.':
        raise ValidationError(f"The {what} name cannot start with a numeric character!")
    if not allow_parens and ('(' in name or ')' in name):
        raise ValidationError(f"The {what} name cannot contain \"(\" or \")\"")
    for c in name:
        if _is_digit(c) or c in "._" or c.isalpha():
            continue
        if allow_parens and c in "()":
            continue
        raise ValidationError(f"The {what} name must be alphanumeric!")
    return name


def validate_variable_name(name: Any) -> str:
    return _validate_name(name, "variable", allow_parens=False)


def validate_function_name(name: Any) -> str:
    return _validate_name(name, "function", allow_parens=True)


def validate_operator_symbol(symbol: Any) -> str:
    if symbol is None:
        raise ValidationError("The operator cannot be None!")
    symbol = str(symbol).strip()
    if not symbol:
        raise ValidationError("The operator cannot be empty!")
    for c in symbol:
        if _is_digit(c) or c == '.':
            raise ValidationError("The operator cannot contain numeric characters!")
        if c == '_':
            raise ValidationError("The operator cannot contain underscores!")
        if c.isalpha():
            raise ValidationError("The operator cannot contain alphabetic characters!")
        if c.isspace():
            raise ValidationError("The operator cannot contain whitespace!")
    return symbol


# =================================================================
# Registration records and overlay markers
# =================================================================

@dataclass(frozen=True)
class OperatorBinding:
    """An operator as registered: the operation plus the precedence it was given."""
    symbol: str
    operation: Operation
    precedence: int


@dataclass(frozen=True)
class Override:
    """An overlay entry that replaces (or adds) a value."""
    value: Any


class _Tombstone:
    __slots__ = ()

    def __repr__(self):
        return "TOMBSTONE"


TOMBSTONE = _Tombstone()

OPERATIONS = "operations"
FUNCTIONS = "functions"
VARIABLES = "variables"


# =================================================================
# Environment
# =================================================================

class Environment:
    """A registry of operators, functions and variables plus a decimal context.

    A bare Environment is empty and computes exactly (the unlimited context);
    call `use_default()` to install the built-in library.
    """

    def __init__(self):
        self.operations: Dict[str, Any] = {}
        self.functions: Dict[str, Any] = {}
        self.variables: Dict[str, Any] = {}
        self._context: Context = unlimited_context()
        self.bracket_multiply: bool = False
        self.variable_multiply: bool = False
        self.max_depth: int = DEFAULT_MAX_DEPTH

    # --- storage primitives (overridden by Overlay) ---

    def _lookup(self, kind: str, key: str) -> Any:
        return getattr(self, kind).get(key)

    def _keys(self, kind: str) -> FrozenSet[str]:
        return frozenset(getattr(self, kind).keys())

    def _store(self, kind: str, key: str, value: Any):
        getattr(self, kind)[key] = value

    def _discard(self, kind: str, key: str):
        getattr(self, kind).pop(key, None)

    # --- variables ---

    def has_variable(self, name: str) -> bool:
        return self._lookup(VARIABLES, name) is not None

    def get_variable(self, name: str) -> Optional[Variable]:
        return self._lookup(VARIABLES, name)

    def get_variables(self) -> FrozenSet[str]:
        return self._keys(VARIABLES)

    def set_variable(self, name: str, value: Union[Variable, Decimal, int, str, None]):
        """Binds a variable; plain numbers are wrapped in a StaticVariable. None removes it."""
        name = validate_variable_name(name)
        if value is None:
            self._discard(VARIABLES, name)
            return
        if not isinstance(value, Variable):
            value = StaticVariable(value)
        self._store(VARIABLES, name, value)

    # --- functions ---

    def has_function(self, name: str) -> bool:
        return self._lookup(FUNCTIONS, name) is not None

    def get_function(self, name: str) -> Optional[Function]:
        return self._lookup(FUNCTIONS, name)

    def get_functions(self) -> FrozenSet[str]:
        return self._keys(FUNCTIONS)

    def set_function(self, name: str, function: Optional[Function]):
        name = validate_function_name(name)
        if function is None:
            self._discard(FUNCTIONS, name)
            return
        if not isinstance(function, Function):
            raise ValidationError(f"Expected a Function for \"{name}\", got {type(function).__name__}")
        self._store(FUNCTIONS, name, function)

    # --- operators ---

    def has_operation(self, symbol: str) -> bool:
        return self._lookup(OPERATIONS, symbol) is not None

    def get_operation_binding(self, symbol: str) -> Optional[OperatorBinding]:
        return self._lookup(OPERATIONS, symbol)

    def get_operation(self, symbol: str) -> Optional[Operation]:
        binding = self._lookup(OPERATIONS, symbol)
        return binding.operation if binding is not None else None

    def get_operations(self) -> FrozenSet[str]:
        return self._keys(OPERATIONS)

    def set_operation(self, symbol: str, operation: Optional[Operation], precedence: Optional[int] = None):
        """Registers an operator. Precedence defaults to the operation's own attribute."""
        symbol = validate_operator_symbol(symbol)
        if operation is None:
            self._discard(OPERATIONS, symbol)
            return
        if not isinstance(operation, Operation):
            raise ValidationError(f"Expected an Operation for \"{symbol}\", got {type(operation).__name__}")
        if precedence is None:
            precedence = getattr(operation, "precedence", 0)
        if not isinstance(precedence, int) or isinstance(precedence, bool) or precedence < 0:
            raise ValidationError(f"The precedence of \"{symbol}\" must be a non-negative integer.")
        self._store(OPERATIONS, symbol, OperatorBinding(symbol, operation, precedence))

    # --- context and options ---

    @property
    def context(self) -> Context:
        return self._context

    @context.setter
    def context(self, context: Context):
        if context is None:
            raise ValidationError("The math context cannot be None!")
        if not isinstance(context, Context):
            raise ValidationError(f"Expected a decimal.Context, got {type(context).__name__}")
        self._context = context

    def use_default(self, library=None) -> 'Environment':
        """Installs a library (the built-in one by default) into this environment."""
        if library is None:
            # Imported lazily: the runtime module depends on this one.
            from expcalc.expcalc_runtime import default_library
            library = default_library()
        library.install(self)
        return self

    # --- copies ---

    def copy(self) -> 'Overlay':
        """A shallow copy: a new Overlay reading through to this environment."""
        return Overlay(self)

    def copy_deep(self) -> 'Environment':
        """An independent, flat snapshot of everything currently visible."""
        env = Environment()
        env.bracket_multiply = self.bracket_multiply
        env.variable_multiply = self.variable_multiply
        env.max_depth = self.max_depth
        env._context = self._context
        for kind in (OPERATIONS, FUNCTIONS, VARIABLES):
            target = getattr(env, kind)
            for key in self._keys(kind):
                value = self._lookup(kind, key)
                if value is not None:
                    target[key] = value
        return env

    def __repr__(self) -> str:
        return (f"<{type(self).__name__} operators={len(self.get_operations())} "
                f"functions={len(self.get_functions())} variables={len(self.get_variables())}>")


class Overlay(Environment):
    """A child environment recording only its differences from `parent`.

    Each delta map holds `Override(value)` for local additions and shadows and
    `TOMBSTONE` for entries removed here but still present in the parent.
    Context, flags and depth limit are copied from the parent on creation.
    """

    def __init__(self, parent: Environment):
        super().__init__()
        self.parent = parent
        self._context = parent.context
        self.bracket_multiply = parent.bracket_multiply
        self.variable_multiply = parent.variable_multiply
        self.max_depth = parent.max_depth

    def _lookup(self, kind: str, key: str) -> Any:
        delta = getattr(self, kind)
        if key in delta:
            entry = delta[key]
            return None if entry is TOMBSTONE else entry.value
        return self.parent._lookup(kind, key)

    def _keys(self, kind: str) -> FrozenSet[str]:
        keys = set(self.parent._keys(kind))
        for key, entry in getattr(self, kind).items():
            if entry is TOMBSTONE:
                keys.discard(key)
            else:
                keys.add(key)
        return frozenset(keys)

    def _store(self, kind: str, key: str, value: Any):
        getattr(self, kind)[key] = Override(value)

    def _discard(self, kind: str, key: str):
        delta = getattr(self, kind)
        if self.parent._lookup(kind, key) is not None:
            delta[key] = TOMBSTONE
        else:
            delta.pop(key, None)

    def __repr__(self) -> str:
        return f"<Overlay over {self.parent!r}>"
