"""
The expcalc interpreter: tokenizer, parser and evaluator.

An expression is scanned into alternating value and operator tokens, parsed
into a flat StepChain of binary operations, and reduced one precedence level
at a time. Bracketed values, function parameters and function bodies are
evaluated by fresh `Expression` objects on the current call stack.
"""
import decimal
import os
import sys
from contextvars import ContextVar
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from expcalc.expcalc_datatypes import (
    ExpressionError, ExpressionSyntaxError, UndefinedSymbol, InvalidLiteral,
    ValidationError, EvaluationError, NestingDepthError,
    Step, StepChain, RETURN
)
from expcalc.expcalc_environment import Environment

# How many Expressions are currently being evaluated on this call stack.
_nesting_depth: ContextVar[int] = ContextVar("expcalc_nesting_depth", default=0)


def _debug_enabled() -> bool:
    return bool(os.environ.get("EXPCALC_DEBUG"))


def _dbg(*parts):
    if _debug_enabled():
        try:
            print("[DBG]", *parts, file=sys.stderr)
        except Exception:
            pass


def describe_fault(e: BaseException) -> str:
    """A short message for a non-expcalc exception, e.g. 'DivisionByZero'."""
    name = type(e).__name__
    if isinstance(e, decimal.DecimalException):
        signals = e.args[0] if e.args and isinstance(e.args[0], list) else []
        detail = ", ".join(n for n in (getattr(s, "__name__", str(s)) for s in signals) if n != name)
        if detail:
            return f"{name} ({detail})"
        return name
    msg = str(e)
    return f"{name}: {msg}" if msg else name


# ===================================================================
# Tokenizer
# ===================================================================

@dataclass
class Seek:
    """The result of a seek: the token text and the index just past it."""
    token: str
    end: int


def _is_digit(c: str) -> bool:
    return '0' <= c <= '9'


def is_value_symbol(c: str) -> bool:
    return _is_digit(c) or c in "._()" or c.isalpha()


def is_numeric(token: str) -> bool:
    """True for tokens made only of digits and dots (validity is checked on parse)."""
    return bool(token) and all(_is_digit(c) or c == '.' for c in token)


def seek_value(text: str, start: int) -> Seek:
    """Reads one value token starting at `start`.

    Leading whitespace is skipped and a leading '-' belongs to the token.
    Parenthesised spans are taken whole, whatever they contain.
    """
    chars: List[str] = []
    skipping = True
    depth = 0
    i = start
    n = len(text)
    while i < n:
        c = text[i]
        if c == '(':
            chars.append(c)
            depth += 1
        elif c == ')':
            chars.append(c)
            depth -= 1
            if depth < 0:
                raise ExpressionSyntaxError("Unmatched ')' bracket.")
        elif depth > 0:
            chars.append(c)
        elif skipping and c.isspace():
            pass
        else:
            skipping = False
            if c == '-' and not chars:
                chars.append(c)
            elif is_value_symbol(c):
                chars.append(c)
            else:
                break
        i += 1

    if depth > 0:
        raise ExpressionSyntaxError("Unmatched '(' bracket.")
    return Seek("".join(chars), i)


def seek_operator(text: str, start: int) -> Seek:
    """Reads one operator symbol starting at `start`, stopping where the next value begins."""
    chars: List[str] = []
    skipping = True
    trailing_space = False
    i = start
    n = len(text)
    while i < n:
        c = text[i]
        if skipping and c.isspace():
            i += 1
            continue
        skipping = False
        if is_value_symbol(c):
            break
        if c.isspace():
            trailing_space = True
            i += 1
            continue
        if trailing_space:
            # "3 - -2": the second '-' starts the value.
            if c == '-':
                break
            raise ExpressionSyntaxError("Invalid whitespace inside operator.")
        chars.append(c)
        i += 1
    return Seek("".join(chars), i)


def split_parameters(text: str) -> List[str]:
    """Splits a parameter string on commas that are not inside brackets."""
    if not text.strip():
        return []
    if text.rstrip().endswith(','):
        raise ExpressionSyntaxError("Trailing \",\" in function parameters.")
    parts = []
    last = 0
    depth = 0
    for i, c in enumerate(text):
        if c == '(':
            depth += 1
        elif c == ')':
            depth -= 1
        elif c == ',' and depth == 0:
            parts.append(text[last:i])
            last = i + 1
    if last < len(text):
        parts.append(text[last:])
    return parts


def parse_literal(token: str) -> Decimal:
    """Parses a decimal numeral: optional '-', digits, at most one '.'."""
    body = token[1:] if token.startswith('-') else token
    if (not body or body.count('.') > 1
            or not any(_is_digit(c) for c in body)
            or not all(_is_digit(c) or c == '.' for c in body)):
        raise InvalidLiteral(f"Invalid numeric value \"{token}\".")
    return Decimal(token)


# ===================================================================
# Parser
# ===================================================================

class Parser:
    """Builds the StepChain for one expression string against one Environment."""

    def __init__(self, text: str, environment: Environment):
        self.text = text
        self.environment = environment

    def parse(self) -> StepChain:
        text = self.text
        env = self.environment
        chain = StepChain()

        seek = seek_value(text, 0)
        left = self.parse_value(seek.token)

        while text[seek.end:].strip():
            seek = seek_operator(text, seek.end)
            if seek.end >= len(text):
                raise ExpressionSyntaxError("Missing right-hand side of operator.")
            if not seek.token:
                raise ExpressionSyntaxError("Missing operator between values.")

            binding = env.get_operation_binding(seek.token)
            if binding is None:
                raise UndefinedSymbol("operator", seek.token)

            seek = seek_value(text, seek.end)
            right = self.parse_value(seek.token)

            chain.append(Step(left, binding.operation, right, binding.precedence, binding.symbol))
            left = right

        if not len(chain):
            # A bare value: a single step that hands its value back.
            chain.append(Step(left, RETURN, left, 0, RETURN.symbol))
        return chain

    # --- value resolution ---

    def parse_value(self, token: str) -> Decimal:
        if not token:
            raise ExpressionSyntaxError("Missing value.")
        if token.startswith('-'):
            return self.parse_value(token[1:]).copy_negate()
        if token.startswith('(') and token.endswith(')'):
            return self.parse_brackets(token)
        if token.endswith(')') and token.find('(') > 0:
            return self.parse_function(token)
        if is_numeric(token):
            return parse_literal(token)
        return self.parse_variable(token)

    def sub_expression(self, text: str) -> Decimal:
        return Expression(text, self.environment).calculate()

    def parse_brackets(self, token: str) -> Decimal:
        return self.sub_expression(token[1:-1])

    def parse_function(self, token: str) -> Decimal:
        env = self.environment
        open_index = token.index('(')
        name = token[:open_index]
        params_text = token[open_index + 1:-1]

        # "3(2+1)" multiplies when bracket multiplication is enabled.
        if env.bracket_multiply and all(_is_digit(c) or c in "-." for c in name):
            factor = parse_literal(name)
            return env.context.multiply(factor, self.sub_expression(params_text))

        function = env.get_function(name)
        if function is None:
            raise UndefinedSymbol("function", name)

        parameters = [self.sub_expression(p) for p in split_parameters(params_text)]
        _dbg("call", name, [format(p, "f") for p in parameters])
        try:
            result = function.run(parameters, env)
        except NestingDepthError:
            raise
        except ExpressionError as e:
            raise e.prefixed(name) from e
        except RecursionError as e:
            raise NestingDepthError("Stack overflow!") from e
        except Exception as e:
            raise EvaluationError(f"{name}: {describe_fault(e)}") from e
        if not isinstance(result, Decimal):
            raise EvaluationError(f"{name}: returned {type(result).__name__}, expected a decimal.")
        return result

    def parse_variable(self, token: str) -> Decimal:
        env = self.environment
        if env.variable_multiply and (_is_digit(token[0]) or token[0] in "-."):
            i = 0
            while i < len(token) and (_is_digit(token[i]) or token[i] in "-."):
                i += 1
            coefficient = parse_literal(token[:i])
            return env.context.multiply(coefficient, self.parse_variable(token[i:]))

        negate = token.startswith('-')
        name = token[1:] if negate else token
        variable = env.get_variable(name)
        if variable is None:
            raise UndefinedSymbol("variable", name)
        value = variable.value()
        return value.copy_negate() if negate else value


# ===================================================================
# Evaluator
# ===================================================================

class Evaluator:
    """Reduces a StepChain, highest precedence first, left to right within a level."""

    def __init__(self, environment: Environment):
        self.environment = environment

    def evaluate(self, chain: StepChain) -> Optional[Decimal]:
        precedence = chain.max_precedence()
        result = None
        while precedence >= 0:
            for index in chain.walk():
                if chain[index].precedence == precedence:
                    result = self.evaluate_step(chain, index)
            precedence -= 1
        return result

    def evaluate_step(self, chain: StepChain, index: int) -> Decimal:
        step = chain[index]
        _dbg("    ", str(step))
        try:
            value = step.operation.calculate(step.left, step.right, self.environment)
        except (ExpressionError, RecursionError):
            raise
        except Exception as e:
            raise EvaluationError(f"{step.symbol}: {describe_fault(e)}") from e
        chain.splice(index, value)
        if _debug_enabled() and not step.active:
            _dbg("     ->", chain.to_expression_string())
        return value


# ===================================================================
# Expression
# ===================================================================

class Expression:
    """An expression string bound to the environment it is evaluated in."""

    def __init__(self, expression: str, environment: Environment):
        if environment is None:
            raise ValidationError("An Expression requires an environment.")
        self.expression = expression
        self.environment = environment
        self._value: Optional[Decimal] = None

    @property
    def value(self) -> Optional[Decimal]:
        """The last successfully calculated value, or None."""
        return self._value

    def get_value(self) -> Optional[Decimal]:
        return self._value

    def parse(self) -> StepChain:
        _dbg("Parsing...", repr(self.expression))
        return Parser(self.expression, self.environment).parse()

    def evaluate_steps(self, chain: StepChain) -> Optional[Decimal]:
        _dbg("Evaluating...")
        return Evaluator(self.environment).evaluate(chain)

    def evaluate(self):
        """Parses and reduces the expression, caching the result in `value`."""
        depth = _nesting_depth.get() + 1
        limit = self.environment.max_depth
        if depth > limit:
            raise NestingDepthError(f"Expression nesting exceeds the maximum depth of {limit}.")
        token = _nesting_depth.set(depth)
        try:
            chain = self.parse()
            self._value = self.evaluate_steps(chain)
        except RecursionError as e:
            raise NestingDepthError("Stack overflow!") from e
        finally:
            _nesting_depth.reset(token)

    def calculate(self) -> Decimal:
        self.evaluate()
        return self._value

    def __repr__(self) -> str:
        return f"<Expression {self.expression!r}>"


def calculate(expression: str, environment: Environment) -> Decimal:
    """Evaluates `expression` in `environment` and returns the result."""
    return Expression(expression, environment).calculate()
