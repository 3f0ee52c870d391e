"""
Formats expcalc values and definitions for display.
"""
from decimal import Decimal

from expcalc.expcalc_datatypes import StaticVariable, Variable, Function
from expcalc.expcalc_environment import OperatorBinding
from expcalc.expcalc_runtime import UserFunction, ConstantVariable


def plain_string(value: Decimal) -> str:
    """Positional notation with trailing fractional zeros removed."""
    text = format(value, "f")
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    if text in ("-0", ""):
        text = "0"
    return text


def separated_string(value: Decimal, separator: str = " ") -> str:
    """Plain notation with the integer digits grouped in threes."""
    text = plain_string(value)
    sign = ""
    if text.startswith('-'):
        sign, text = "-", text[1:]
    whole, dot, fraction = text.partition('.')
    groups = []
    while len(whole) > 3:
        groups.insert(0, whole[-3:])
        whole = whole[:-3]
    groups.insert(0, whole)
    return sign + separator.join(groups) + dot + fraction


class Printer:
    """Formats numbers in one of FORMATS and renders definitions as readable source."""

    FORMATS = ("plain", "scientific", "separated")

    def __init__(self, format: str = "plain", indent_width: int = 4):
        if format not in self.FORMATS:
            raise ValueError(f"Unknown number format: {format!r}")
        self.format = format
        self._indent = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj) -> str:
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, Function): return lambda o: self.describe_function(o.name, o)
        if isinstance(obj, Variable): return lambda o: self.pformat(o.value())
        return repr

    def _create_handlers(self):
        return {
            Decimal: self._pformat_decimal,
            int: lambda o: self._pformat_decimal(Decimal(o)),
            OperatorBinding: self.describe_operator,
            type(None): lambda o: "",
        }

    def _pformat_decimal(self, value: Decimal) -> str:
        if self.format == "scientific":
            return value.normalize().to_eng_string() if value else "0"
        if self.format == "separated":
            return separated_string(value)
        return plain_string(value)

    # --- definitions ---

    @staticmethod
    def _native_name(obj) -> str:
        qualname = getattr(obj, "qualname", None)
        if qualname:
            return qualname
        return f"{type(obj).__module__}.{type(obj).__qualname__}"

    def describe_function(self, name: str, function: Function) -> str:
        i = self._indent
        if isinstance(function, UserFunction):
            lines = [f"function {name}({', '.join(function.parameters)}) {{"]
            if function.condition is not None:
                lines.append(f"{i}if ({function.condition})")
                lines.append(f"{i}{i}return {function.return_expression}")
            lines.append(f"{i}return {function.expression}")
            lines.append("}")
            return "\n".join(lines)
        return f"function {name}() {{\n{i}Python: {self._native_name(function)}\n}}"

    def describe_operator(self, binding: OperatorBinding) -> str:
        i = self._indent
        return (f"@Order({binding.precedence})\noperator {binding.symbol} {{\n"
                f"{i}Python: {self._native_name(binding.operation)}\n}}")

    def describe_variable(self, name: str, variable: Variable) -> str:
        i = self._indent
        if isinstance(variable, StaticVariable):
            body = f"return {self.pformat(variable.value())}"
        elif isinstance(variable, ConstantVariable):
            body = f"return {plain_string(variable.value())}"
        else:
            body = f"Python: {self._native_name(variable)}"
        return f"var {name} {{\n{i}{body}\n}}"


__all__ = ["Printer", "plain_string", "separated_string"]
