from expcalc.expcalc_datatypes import (
    ExpressionError, ExpressionSyntaxError, UndefinedSymbol, InvalidLiteral,
    ArityError, ValidationError, EvaluationError, NestingDepthError,
    Operation, Function, Variable, StaticVariable
)
from expcalc.expcalc_environment import Environment, Overlay, context_for
from expcalc.expcalc_interpreter import Expression, calculate
from expcalc.expcalc_runtime import (
    CommandError, DefinitionError, StateFileError,
    UserFunction, build_default_environment, default_library,
    ExpressionRunner, ExecutionResult
)
from expcalc.expcalc_config import CalcConfig, ConfigError, load_config

__version__ = "0.1.0"
