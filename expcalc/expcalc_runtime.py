# expcalc_runtime.py

import decimal
import inspect
import random
import time
import traceback
from dataclasses import dataclass, field
from decimal import Decimal, Context
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Tuple

from expcalc.expcalc_datatypes import (
    ExpressionError, ArityError, ValidationError, NestingDepthError,
    Operation, Function, Variable, StaticVariable
)
from expcalc.expcalc_environment import (
    Environment, context_for, context_name,
    validate_function_name, validate_variable_name
)
from expcalc.expcalc_config import CalcConfig, apply_config
from expcalc.expcalc_interpreter import Expression, _dbg, describe_fault

TRUE = Decimal(1)
FALSE = Decimal(0)

PI = Decimal("3.14159265358979323846264338327950288419716939937510")

# ===================================================================
# 1. Errors raised by the runner and its collaborators
# ===================================================================

class CommandError(ExpressionError):
    """A runner command was used incorrectly. Printed without a kind prefix."""
    kind_name = "CommandError"


class DefinitionError(CommandError):
    kind_name = "DefinitionError"


class StateFileError(CommandError):
    kind_name = "StateFileError"


# ===================================================================
# 2. Adapters for plain Python callables
# ===================================================================

class NativeOperation(Operation):
    """An operator backed by a Python callable `func(left, right, environment)`."""

    def __init__(self, symbol: str, func: Callable[[Decimal, Decimal, Environment], Decimal], precedence: int = 0):
        self.symbol = symbol
        self.func = func
        self.precedence = precedence

    def calculate(self, left, right, environment):
        return self.func(left, right, environment)

    @property
    def qualname(self) -> str:
        return f"{self.func.__module__}.{self.func.__qualname__}"


class NativeFunction(Function):
    """A function backed by a Python callable.

    Arity comes from the callable's positional parameters. A keyword-only
    `env` parameter receives the calling environment.
    """

    def __init__(self, name: str, func: Callable[..., Any]):
        self.name = name
        self.func = func
        sig = inspect.signature(func)
        positional = [
            p for p in sig.parameters.values()
            if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
        ]
        variadic = any(p.kind is inspect.Parameter.VAR_POSITIONAL for p in sig.parameters.values())
        self.min_arity = sum(1 for p in positional if p.default is inspect.Parameter.empty)
        self.max_arity: Optional[int] = None if variadic else len(positional)
        env_param = sig.parameters.get("env")
        self.wants_env = env_param is not None and env_param.kind is inspect.Parameter.KEYWORD_ONLY

    def _expected(self):
        if self.max_arity == self.min_arity:
            return self.min_arity
        if self.max_arity is None:
            return f"at least {self.min_arity}"
        return f"between {self.min_arity} and {self.max_arity}"

    def run(self, parameters, environment):
        count = len(parameters)
        if count < self.min_arity or (self.max_arity is not None and count > self.max_arity):
            raise ArityError(self._expected(), count)
        if self.wants_env:
            result = self.func(*parameters, env=environment)
        else:
            result = self.func(*parameters)
        return result if isinstance(result, Decimal) else Decimal(result)

    @property
    def qualname(self) -> str:
        return f"{self.func.__module__}.{self.func.__qualname__}"


class ConstantVariable(Variable):
    """A built-in constant. Unlike StaticVariable it cannot be redefined by users."""

    def __init__(self, value: Decimal):
        self._value = value

    def value(self):
        return self._value


class TimestampVariable(Variable):
    """The current time in milliseconds since the epoch."""

    def value(self):
        return Decimal(time.time_ns() // 1_000_000)


class AnswerVariable(Variable):
    """The 'last answer' register, updated by the runner after each result."""

    def __init__(self):
        self._answer = Decimal(0)

    def set(self, value: Decimal):
        self._answer = value

    def value(self):
        return self._answer


# ===================================================================
# 3. The Standard Library
# ===================================================================

def _add(left, right, env): return env.context.add(left, right)
def _sub(left, right, env): return env.context.subtract(left, right)
def _mul(left, right, env): return env.context.multiply(left, right)
def _div(left, right, env): return env.context.divide(left, right)
def _rem(left, right, env): return env.context.remainder(left, right)

def _pow(left, right, env):
    # The exponent is floored to an integer.
    exponent = int(right.to_integral_value(rounding=decimal.ROUND_FLOOR))
    if exponent == 0:
        return Decimal(1)
    return env.context.power(left, exponent)

def _truth(flag: bool) -> Decimal:
    return TRUE if flag else FALSE

def _eq(left, right, env): return _truth(left.compare(right) == 0)
def _neq(left, right, env): return _truth(left.compare(right) != 0)
def _lt(left, right, env): return _truth(left < right)
def _gt(left, right, env): return _truth(left > right)
def _lte(left, right, env): return _truth(left <= right)
def _gte(left, right, env): return _truth(left >= right)


# symbol -> (implementation, precedence)
OPERATORS: Dict[str, Tuple[Callable, int]] = {
    "+": (_add, 1),
    "-": (_sub, 1),
    "*": (_mul, 2),
    "/": (_div, 2),
    "%": (_rem, 2),
    "^": (_pow, 3),
    "==": (_eq, 0),
    "!=": (_neq, 0),
    "<": (_lt, 0),
    ">": (_gt, 0),
    "<=": (_lte, 0),
    ">=": (_gte, 0),
}


class StdLib:
    """Contains Python implementations for the built-in functions.

    Every method named `_<name>` becomes the function `<name>`.
    """

    def _abs(self, x): return x.copy_abs()
    def _neg(self, x, *, env): return env.context.minus(x)
    def _floor(self, x): return x.to_integral_value(rounding=decimal.ROUND_FLOOR)
    def _ceil(self, x): return x.to_integral_value(rounding=decimal.ROUND_CEILING)
    def _round(self, x): return x.to_integral_value(rounding=decimal.ROUND_HALF_UP)
    def _min(self, a, b): return a if a.compare(b) <= 0 else b
    def _max(self, a, b): return a if a.compare(b) >= 0 else b
    def _sqrt(self, x, *, env): return env.context.sqrt(x)

    def _random(self, low=None, high=None, *, env):
        """A uniform value in [0, 1), [0, low) or [low, high)."""
        fraction = Decimal(repr(random.random()))
        if low is None:
            return fraction
        if high is None:
            low, high = Decimal(0), low
        ctx = env.context
        return ctx.add(low, ctx.multiply(ctx.subtract(high, low), fraction))

    def functions(self) -> Dict[str, Function]:
        out = {}
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                out[name[1:]] = NativeFunction(name[1:], member)
        return out


@dataclass
class Library:
    """A set of operators, functions and variables to install into an Environment."""
    operations: List[Tuple[str, Operation, int]] = field(default_factory=list)
    functions: Dict[str, Function] = field(default_factory=dict)
    variables: Dict[str, Variable] = field(default_factory=dict)
    context: Optional[Context] = None

    def install(self, env: Environment):
        for symbol, operation, precedence in self.operations:
            env.set_operation(symbol, operation, precedence)
        for name, function in self.functions.items():
            env.set_function(name, function)
        for name, variable in self.variables.items():
            env.set_variable(name, variable)
        if self.context is not None:
            env.context = self.context


def default_library() -> Library:
    """A fresh copy of the built-in library (128 bit context)."""
    operations = [
        (symbol, NativeOperation(symbol, func, precedence), precedence)
        for symbol, (func, precedence) in OPERATORS.items()
    ]
    return Library(
        operations=operations,
        functions=StdLib().functions(),
        variables={
            "pi": ConstantVariable(PI),
            "now": TimestampVariable(),
            "ans": AnswerVariable(),
        },
        context=context_for("128bit"),
    )


def build_default_environment() -> Environment:
    """A new root Environment with the built-in library installed."""
    return Environment().use_default(default_library())


# ===================================================================
# 4. User definitions
# ===================================================================

class UserFunction(Function):
    """A function defined by expressions.

    Parameters are bound in an Overlay over the function's environment (or
    the calling one). With a condition, the return expression is used when
    the condition evaluates to 1, the body expression otherwise.
    """

    def __init__(self, name: str, parameters: Sequence[str], expression: str,
                 condition: Optional[str] = None, return_expression: Optional[str] = None,
                 environment: Optional[Environment] = None):
        if condition is not None and return_expression is None:
            raise DefinitionError("define: missing return expression with condition.")
        self.name = name
        self.parameters = tuple(parameters)
        self.expression = expression
        self.condition = condition
        self.return_expression = return_expression
        self.environment = environment

    def run(self, parameters, environment):
        if len(parameters) != len(self.parameters):
            raise ArityError(len(self.parameters), len(parameters))
        scope = (self.environment or environment).copy()
        for name, value in zip(self.parameters, parameters):
            scope.set_variable(name, value)
        if self.condition is not None:
            if Expression(self.condition, scope).calculate() == TRUE:
                return Expression(self.return_expression, scope).calculate()
        return Expression(self.expression, scope).calculate()

    def describe(self) -> str:
        return f"{self.name}({', '.join(self.parameters)})"

    def definition_line(self) -> str:
        """The state-file form: `name(a,b) = [cond][ret] expression`."""
        head = f"{self.name}({','.join(self.parameters)}) ="
        if self.condition is not None:
            head += f" [{self.condition}][{self.return_expression}]"
        return f"{head} {self.expression}"


@dataclass
class Definition:
    """A parsed `name = expr` or `name(params) = [cond][ret] expr` line."""
    name: str
    expression: str
    parameters: Optional[List[str]] = None
    condition: Optional[str] = None
    return_expression: Optional[str] = None

    @property
    def is_function(self) -> bool:
        return self.parameters is not None


def _parse_guard(body: str) -> Tuple[Optional[str], Optional[str], str]:
    """Splits a leading `[cond][ret]` off a function body."""
    parts: List[str] = []
    rest = body
    while rest.startswith('[') and len(parts) < 2:
        close = rest.find(']')
        if close == -1:
            raise DefinitionError("define: missing \"]\" in function condition.")
        inner = rest[1:close]
        if '[' in inner:
            raise DefinitionError("define: unexpected \"[\" in function condition.")
        parts.append(inner.strip())
        rest = rest[close + 1:].lstrip()
    if not parts:
        return None, None, body
    if len(parts) == 1:
        raise DefinitionError("define: missing return expression with condition.")
    return parts[0], parts[1], rest


def parse_definition(text: str) -> Definition:
    head, sep, body = text.partition('=')
    if not sep:
        raise DefinitionError("define: missing \"=\" in definition.")
    head = "".join(head.split())
    body = body.strip()

    parameters = None
    name = head
    if '(' in head or ')' in head:
        open_index = head.find('(')
        close_index = head.find(')')
        if close_index == -1:
            raise DefinitionError("define: missing \")\" in function definition.")
        if open_index == -1 or close_index < open_index:
            raise DefinitionError("define: unexpected \")\" in function definition.")
        if head.count('(') > 1:
            raise DefinitionError("define: unexpected \"(\" in function definition.")
        if close_index != len(head) - 1:
            raise DefinitionError(f"define: unexpected \"{head[close_index + 1]}\" in definition.")
        name = head[:open_index]
        inner = head[open_index + 1:close_index]
        parameters = inner.split(',') if inner else []
        if any(not p for p in parameters):
            raise DefinitionError("define: no parameter name specified.")
    elif ',' in head:
        raise DefinitionError("define: unexpected \",\" in definition.")

    if not name:
        raise DefinitionError("define: missing variable/function name.")

    condition = return_expression = None
    if parameters is not None:
        condition, return_expression, body = _parse_guard(body)
    if not body:
        raise DefinitionError("define: missing variable/function value.")

    try:
        if parameters is not None:
            validate_function_name(name)
        else:
            validate_variable_name(name)
    except ValidationError as e:
        raise DefinitionError(f"define: {e.message}") from e
    for p in parameters or []:
        try:
            validate_variable_name(p)
        except ValidationError as e:
            raise DefinitionError("define: " + e.message.replace("variable", "parameter")) from e

    return Definition(name, body, parameters, condition, return_expression)


# ===================================================================
# 5. Line execution
# ===================================================================

Effect = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of handling one line."""
    status: Literal['success', 'error']
    value: Optional[Decimal] = None
    error_message: Optional[str] = None
    side_effects: List[Effect] = field(default_factory=list)

    def format_error(self) -> str:
        if self.status != 'error':
            return ""
        return str(self.error_message or "Unknown error")

    @property
    def output(self) -> List[str]:
        return [e['message'] for e in self.side_effects if e.get('topics') == ['stdout']]


HELP_LINES = [
    (":help", "Expression calculator command reference."),
    (":define", "Define a variable or function (also :set, :=)."),
    (":undefine", "Undefine a variable or function (also :unset, :-)."),
    (":stat", "Show a function, operator, or variable definition."),
    (":env", "List the variables and functions defined."),
    (":context", "Change the decimal context (32bit, 64bit, 128bit, unlimited, <digits>)."),
    (":format", "Change the output format (plain, scientific, separated)."),
    (":save", "Save user definitions to a state file."),
    (":load", "Load user definitions from a state file."),
    (":trace", "Show the stack trace of the last error."),
    (":quit", "Exit the calculator."),
]

ENV_PAGE_SIZE = 9


class ExpressionRunner:
    """Evaluates expression lines and `:`-commands against one root Environment."""

    def __init__(self, environment: Optional[Environment] = None, config=None):
        from expcalc.expcalc_printer import Printer

        self.environment = environment if environment is not None else build_default_environment()
        self.config = config if config is not None else CalcConfig()
        apply_config(self.config, self.environment)
        self.printer = Printer(self.config.format)
        self.source_dir: Optional[str] = None
        self.running = True
        self.last_error: Optional[BaseException] = None
        self.user_functions: Dict[str, UserFunction] = {}
        self.user_variables: Dict[str, Decimal] = {}
        self._effects: List[Effect] = []

        answer = self.environment.get_variable("ans")
        if not isinstance(answer, AnswerVariable):
            answer = AnswerVariable()
            self.environment.set_variable("ans", answer)
        self.answer = answer

    # --- output ---

    def emit(self, message: str):
        self._effects.append({'topics': ['stdout'], 'message': message})

    # --- entry point ---

    def handle_line(self, line: str) -> ExecutionResult:
        """Handles one input line. Errors are reported in the result, never raised."""
        self._effects = []
        try:
            line = (line or "").strip()
            if not line:
                return ExecutionResult(status='success', side_effects=self._effects)
            if line.startswith(':'):
                self.handle_command(line[1:])
                return ExecutionResult(status='success', side_effects=self._effects)

            expression = Expression(line, self.environment)
            expression.evaluate()
            value = expression.value
            self.answer.set(value)
            return ExecutionResult(status='success', value=value, side_effects=self._effects)
        except RecursionError as e:
            err = NestingDepthError("Stack overflow!")
            err.__cause__ = e
            return self._error(err)
        except Exception as e:
            return self._error(e)

    def _error(self, e: BaseException) -> ExecutionResult:
        msg = self.format_exception(e)
        _dbg("error", msg)
        if not isinstance(e, CommandError):
            self.last_error = e
        self._effects.append({'topics': ['stderr'], 'message': msg})
        return ExecutionResult(status='error', error_message=msg, side_effects=self._effects)

    @staticmethod
    def format_exception(e: BaseException) -> str:
        if isinstance(e, CommandError):
            return e.message
        if isinstance(e, ExpressionError):
            return f"{e.kind_name}: {e.message}"
        return describe_fault(e)

    # --- commands ---

    def handle_command(self, line: str):
        command, _, arguments = line.strip().partition(' ')
        command = command.lower()
        arguments = arguments.strip()
        handlers = {
            "help": self.command_help, "?": self.command_help,
            "define": self.command_define, "set": self.command_define, "=": self.command_define,
            "undefine": self.command_undefine, "unset": self.command_undefine, "-": self.command_undefine,
            "stat": self.command_stat,
            "env": self.command_env,
            "context": self.command_context,
            "format": self.command_format,
            "save": self.command_save,
            "load": self.command_load,
            "trace": self.command_trace,
            "quit": self.command_quit, "q": self.command_quit,
        }
        handler = handlers.get(command)
        if handler is None:
            raise CommandError(f"expcalc: unknown command \"{command}\"")
        handler(arguments)

    def command_help(self, arguments: str):
        for name, text in HELP_LINES:
            self.emit(f"{name:<10} - {text}")

    def command_define(self, arguments: str):
        self.define(arguments)

    def define(self, text: str, quiet: bool = False):
        definition = parse_definition(text)
        if definition.is_function:
            self.define_function(definition, quiet)
        else:
            self.define_variable(definition, quiet)

    def define_function(self, definition: Definition, quiet: bool = False):
        existing = self.environment.get_function(definition.name)
        if existing is not None and not isinstance(existing, UserFunction):
            raise DefinitionError("define: unable to overwrite native function.")
        function = UserFunction(
            definition.name, definition.parameters, definition.expression,
            definition.condition, definition.return_expression, self.environment
        )
        self.environment.set_function(definition.name, function)
        self.user_functions[definition.name] = function
        if not quiet:
            extra = " with condition" if definition.condition is not None else ""
            self.emit(f"Defined \"{function.describe()}\" as \"{definition.expression}\"{extra}.")

    def define_variable(self, definition: Definition, quiet: bool = False):
        try:
            value = Expression(definition.expression, self.environment).calculate()
        except ExpressionError as e:
            raise DefinitionError(f"define: unable to evaluate variable value. ({e.message})") from e
        existing = self.environment.get_variable(definition.name)
        if existing is not None and not isinstance(existing, StaticVariable):
            raise DefinitionError("define: unable to overwrite native variable.")
        self.environment.set_variable(definition.name, value)
        self.user_variables[definition.name] = value
        if not quiet:
            self.emit(f"Defined \"{definition.name}\" as {format(value, 'f')}.")

    def command_undefine(self, arguments: str):
        if not arguments:
            raise CommandError("undefine: requires argument.")
        if arguments.endswith("()"):
            name = arguments[:-2].strip()
            function = self.environment.get_function(name)
            if function is None:
                raise CommandError("undefine: function is already undefined!")
            if not isinstance(function, UserFunction):
                raise CommandError("undefine: cannot remove native function!")
            self.user_functions.pop(name, None)
            self.environment.set_function(name, None)
            self.emit("Successfully removed function.")
        else:
            variable = self.environment.get_variable(arguments)
            if variable is None:
                raise CommandError("undefine: variable is already undefined!")
            if not isinstance(variable, StaticVariable):
                raise CommandError("undefine: cannot remove native variable!")
            self.user_variables.pop(arguments, None)
            self.environment.set_variable(arguments, None)
            self.emit("Successfully removed variable.")

    def command_stat(self, arguments: str):
        what, _, name = arguments.partition(' ')
        what = what.lower()
        name = name.strip()
        if not what or not name:
            raise CommandError("stat: requires two arguments.")
        env = self.environment
        if what in ("f", "func", "function"):
            function = env.get_function(name)
            if function is None:
                raise CommandError("stat: undefined function.")
            self.emit(self.printer.describe_function(name, function))
        elif what in ("o", "op", "operation", "operator"):
            binding = env.get_operation_binding(name)
            if binding is None:
                raise CommandError("stat: undefined operator.")
            self.emit(self.printer.describe_operator(binding))
        elif what in ("v", "var", "variable"):
            variable = env.get_variable(name)
            if variable is None:
                raise CommandError("stat: undefined variable.")
            self.emit(self.printer.describe_variable(name, variable))
        else:
            raise CommandError("stat: can only stat \"function\", \"operator\", or \"variable\"")

    def command_env(self, arguments: str):
        env = self.environment
        entries = sorted(
            [(name, False) for name in env.get_variables()]
            + [(name, True) for name in env.get_functions()],
            key=lambda e: e[0] + ("()" if e[1] else "")
        )
        pages = max(1, -(-len(entries) // ENV_PAGE_SIZE))
        page = 1
        if arguments:
            try:
                page = int(arguments)
            except ValueError as e:
                raise CommandError("env: invalid page.") from e
            if page < 1 or page > pages:
                raise CommandError("env: invalid page.")
        self.emit(f"Environment ({page} of {pages})")
        for name, is_function in entries[(page - 1) * ENV_PAGE_SIZE:page * ENV_PAGE_SIZE]:
            if is_function:
                origin = "user" if isinstance(env.get_function(name), UserFunction) else "native"
                label = name + "()"
            else:
                origin = "user" if isinstance(env.get_variable(name), StaticVariable) else "native"
                label = name
            self.emit(f"{label:<70} {origin}")

    def command_context(self, arguments: str):
        if not arguments:
            self.emit(f"Current context is {context_name(self.environment.context)}.")
            return
        try:
            self.environment.context = context_for(arguments)
        except ValidationError as e:
            raise CommandError("context: unknown math context.") from e
        self.emit(f"Changed context to {context_name(self.environment.context)}.")

    def command_format(self, arguments: str):
        fmt = arguments.lower()
        if fmt not in self.printer.FORMATS:
            raise CommandError("format: unknown number formatting type.")
        self.printer.format = fmt

    def command_save(self, arguments: str):
        from expcalc.expcalc_file import save_state
        path = save_state(arguments or self.config.state_file, self.user_functions.values(),
                          self.user_variables, base_dir=self.source_dir)
        _dbg("saved", path)
        self.emit("Saved.")

    def command_load(self, arguments: str):
        from expcalc.expcalc_file import read_definitions
        count = 0
        for lineno, line in read_definitions(arguments or self.config.state_file, base_dir=self.source_dir):
            try:
                self.define(line, quiet=True)
            except ExpressionError as e:
                raise StateFileError(f"load: line {lineno}: {e.message}") from e
            count += 1
        self.emit(f"Loaded {count} definitions.")

    def command_trace(self, arguments: str):
        if arguments:
            raise CommandError("trace: requires no arguments.")
        if self.last_error is None:
            raise CommandError("trace: no error recorded")
        text = "".join(traceback.format_exception(type(self.last_error), self.last_error, self.last_error.__traceback__))
        self.emit(text.rstrip())

    def command_quit(self, arguments: str):
        if arguments:
            raise CommandError("quit: requires no arguments.")
        self.running = False


__all__ = [
    "CommandError", "DefinitionError", "StateFileError",
    "NativeOperation", "NativeFunction", "ConstantVariable", "TimestampVariable", "AnswerVariable",
    "StdLib", "Library", "default_library", "build_default_environment",
    "UserFunction", "Definition", "parse_definition",
    "ExecutionResult", "ExpressionRunner",
]
