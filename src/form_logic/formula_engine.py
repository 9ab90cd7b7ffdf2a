from __future__ import annotations

import ast
import logging
import math
import operator
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, localcontext
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

if TYPE_CHECKING:
    from .models import CalculatedConfig

MAX_FORMULA_LENGTH = 1000
MAX_FORMULA_DEPTH = 32
DEFAULT_LOCALE = "pt_BR"
DEFAULT_DECIMAL_PLACES = 2
REFERENCE_PREFIX = "_ref"
MAX_ROUND_PLACES = 340

logger = logging.getLogger(__name__)

ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.And,
    ast.Or,
    ast.Not,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Mod,
    ast.Pow,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Gt,
    ast.GtE,
    ast.Lt,
    ast.LtE,
    ast.Call,
)

_COMPARISONS: dict[type, Callable[[float, float], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
}

_REFERENCE_PATTERN = re.compile(r"\{([^{}]*)\}")
_NOT_EQUAL_ALIAS = re.compile(r"<>")
_EQUAL_ALIAS = re.compile(r"(?<![<>=!])=(?!=)")


class FormulaParseError(ValueError):
    """Raised when a formula is malformed or uses unsupported syntax."""


class FormatType(str, Enum):
    NUMBER = "number"
    CURRENCY = "currency"
    PERCENTAGE = "percentage"
    CUSTOM = "custom"


class EvalErrorCode(str, Enum):
    DIV_ZERO = "DIV_ZERO"
    NUM = "NUM"
    REF = "REF"
    CYCLE = "CYCLE"
    PARSE = "PARSE"


_ERROR_GLYPHS = {
    EvalErrorCode.DIV_ZERO: "#DIV/0!",
    EvalErrorCode.NUM: "#NUM!",
    EvalErrorCode.REF: "#REF!",
    EvalErrorCode.CYCLE: "#CYCLE!",
    EvalErrorCode.PARSE: "#PARSE!",
}


@dataclass(slots=True, frozen=True)
class EvalError:
    """Sentinel returned in place of a number when a formula cannot produce one."""

    code: EvalErrorCode
    message: str = ""

    def __str__(self) -> str:
        return _ERROR_GLYPHS[self.code]


class _EvaluationAbort(Exception):
    def __init__(self, error: EvalError) -> None:
        super().__init__(error.message)
        self.error = error


@dataclass(slots=True, frozen=True)
class FunctionSpec:
    name: str
    category: str
    syntax: str
    description: str
    min_args: int
    max_args: int | None
    implementation: Callable[..., float] | None = None

    @property
    def arity(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args}"
        if self.min_args == self.max_args:
            return str(self.min_args)
        return f"{self.min_args} to {self.max_args}"


@dataclass(slots=True, frozen=True)
class FormulaProgram:
    """Parsed and validated formula that can be evaluated repeatedly."""

    source: str
    tree: ast.Expression
    references: dict[str, str]
    dependencies: frozenset[str]


@dataclass(slots=True)
class FormulaValidation:
    is_valid: bool
    errors: list[str]
    dependencies: list[str]
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class LocaleFormat:
    decimal_separator: str
    group_separator: str
    currency_symbol: str
    currency_pattern: str


LOCALES = {
    "pt_BR": LocaleFormat(",", ".", "R$", "{symbol} {amount}"),
    "en_US": LocaleFormat(".", ",", "$", "{symbol}{amount}"),
    "de_DE": LocaleFormat(",", ".", "€", "{amount} {symbol}"),
}


def _quantize(value: float | Decimal, places: int) -> Decimal:
    number = Decimal(str(value))
    with localcontext() as context:
        # wide enough to keep every integer digit of a finite float
        context.prec = max(context.prec, number.adjusted() + places + 2)
        return number.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def round_half_up(value: float, places: float = 0) -> float:
    places = max(-MAX_ROUND_PLACES, min(int(places), MAX_ROUND_PLACES))
    return float(_quantize(value, places))


def _mod(dividend: float, divisor: float) -> float:
    if divisor == 0:
        raise _EvaluationAbort(EvalError(EvalErrorCode.DIV_ZERO, "MOD by zero"))
    return math.fmod(dividend, divisor)


def _log(value: float, base: float | None = None) -> float:
    if base is None:
        return math.log(value)
    return math.log(value, base)


def _sign(value: float) -> float:
    return float((value > 0) - (value < 0))


def _average(*values: float) -> float:
    return math.fsum(values) / len(values)


def _all(*values: float) -> float:
    return float(all(values))


def _any(*values: float) -> float:
    return float(any(values))


def _not(value: float) -> float:
    return float(not value)


_FUNCTION_CATALOG = (
    FunctionSpec("ABS", "basic", "ABS(number)", "Absolute value", 1, 1, abs),
    FunctionSpec("SQRT", "basic", "SQRT(number)", "Square root", 1, 1, math.sqrt),
    FunctionSpec("POW", "basic", "POW(base, exponent)", "Raises a number to a power", 2, 2, math.pow),
    FunctionSpec("EXP", "basic", "EXP(number)", "e raised to the number", 1, 1, math.exp),
    FunctionSpec("SIGN", "basic", "SIGN(number)", "Sign of the number (-1, 0, 1)", 1, 1, _sign),
    FunctionSpec("MOD", "basic", "MOD(dividend, divisor)", "Remainder of the division", 2, 2, _mod),
    FunctionSpec("SIN", "trigonometry", "SIN(radians)", "Sine", 1, 1, math.sin),
    FunctionSpec("COS", "trigonometry", "COS(radians)", "Cosine", 1, 1, math.cos),
    FunctionSpec("TAN", "trigonometry", "TAN(radians)", "Tangent", 1, 1, math.tan),
    FunctionSpec("ASIN", "trigonometry", "ASIN(number)", "Arcsine in radians", 1, 1, math.asin),
    FunctionSpec("ACOS", "trigonometry", "ACOS(number)", "Arccosine in radians", 1, 1, math.acos),
    FunctionSpec("ATAN", "trigonometry", "ATAN(number)", "Arctangent in radians", 1, 1, math.atan),
    FunctionSpec("ATAN2", "trigonometry", "ATAN2(y, x)", "Arctangent of y/x in radians", 2, 2, math.atan2),
    FunctionSpec("DEGREES", "trigonometry", "DEGREES(radians)", "Converts radians to degrees", 1, 1, math.degrees),
    FunctionSpec("RADIANS", "trigonometry", "RADIANS(degrees)", "Converts degrees to radians", 1, 1, math.radians),
    FunctionSpec("LOG", "logarithmic", "LOG(number[, base])", "Natural logarithm, or logarithm in base", 1, 2, _log),
    FunctionSpec("LN", "logarithmic", "LN(number)", "Natural logarithm", 1, 1, math.log),
    FunctionSpec("LOG10", "logarithmic", "LOG10(number)", "Base 10 logarithm", 1, 1, math.log10),
    FunctionSpec("ROUND", "rounding", "ROUND(number[, places])", "Rounds half away from zero", 1, 2, round_half_up),
    FunctionSpec("CEIL", "rounding", "CEIL(number)", "Rounds up", 1, 1, math.ceil),
    FunctionSpec("FLOOR", "rounding", "FLOOR(number)", "Rounds down", 1, 1, math.floor),
    FunctionSpec("TRUNC", "rounding", "TRUNC(number)", "Drops the decimal part", 1, 1, math.trunc),
    FunctionSpec("MIN", "statistical", "MIN(n1, n2, ...)", "Smallest value", 1, None, lambda *values: min(values)),
    FunctionSpec("MAX", "statistical", "MAX(n1, n2, ...)", "Largest value", 1, None, lambda *values: max(values)),
    FunctionSpec("SUM", "statistical", "SUM(n1, n2, ...)", "Sum of the values", 1, None, lambda *values: math.fsum(values)),
    FunctionSpec("AVG", "statistical", "AVG(n1, n2, ...)", "Arithmetic mean", 1, None, _average),
    FunctionSpec("AVERAGE", "statistical", "AVERAGE(n1, n2, ...)", "Alias of AVG", 1, None, _average),
    FunctionSpec("IF", "logical", "IF(condition, if_true[, if_false])", "Chooses a value by condition", 2, 3),
    FunctionSpec("AND", "logical", "AND(c1, c2, ...)", "1 when every condition holds", 1, None, _all),
    FunctionSpec("OR", "logical", "OR(c1, c2, ...)", "1 when any condition holds", 1, None, _any),
    FunctionSpec("NOT", "logical", "NOT(condition)", "Negates a condition", 1, 1, _not),
)

FUNCTIONS: dict[str, FunctionSpec] = {spec.name: spec for spec in _FUNCTION_CATALOG}
CONSTANTS = {"PI": math.pi, "E": math.e}

FORMULA_EXAMPLES = [
    {"name": "Sum", "formula": "{field1} + {field2}", "description": "Adds two fields", "category": "basic"},
    {"name": "Line total", "formula": "{quantity} * {unit_price}", "description": "Quantity times price", "category": "basic"},
    {"name": "Installment", "formula": "{total} / {installments}", "description": "Value of each installment", "category": "basic"},
    {"name": "Average", "formula": "({grade1} + {grade2} + {grade3}) / 3", "description": "Mean of three grades", "category": "basic"},
    {"name": "Absolute difference", "formula": "ABS({difference})", "description": "Always positive", "category": "advanced"},
    {"name": "Rounded", "formula": "ROUND({value}, 2)", "description": "Two decimal places", "category": "advanced"},
    {"name": "Conditional", "formula": "IF({age} >= 18, {adult_price}, {minor_price})", "description": "If-then-else", "category": "advanced"},
    {"name": "Hypotenuse", "formula": "SQRT(POW({side1}, 2) + POW({side2}, 2))", "description": "Pythagorean theorem", "category": "trigonometry"},
    {"name": "Sine in degrees", "formula": "SIN(RADIANS({angle}))", "description": "Sine of an angle given in degrees", "category": "trigonometry"},
    {"name": "Circle area", "formula": "PI * POW({radius}, 2)", "description": "Area of a circle", "category": "statistical"},
    {"name": "Compound interest", "formula": "{capital} * POW(1 + {rate} / 100, {periods})", "description": "Capital after compounding", "category": "statistical"},
    {"name": "Percent deviation", "formula": "ABS(({actual} - {expected}) / {expected}) * 100", "description": "Deviation between values", "category": "statistical"},
]


def list_functions(category: str | None = None) -> list[FunctionSpec]:
    return [spec for spec in _FUNCTION_CATALOG if category is None or spec.category == category]


def _scan_references(formula: str) -> list[str]:
    names: list[str] = []
    start: int | None = None
    for index, char in enumerate(formula):
        if char == "{":
            if start is not None:
                raise FormulaParseError(f"nested '{{' at position {index}")
            start = index
        elif char == "}":
            if start is None:
                raise FormulaParseError(f"unmatched '}}' at position {index}")
            name = formula[start + 1 : index]
            if not name.strip():
                raise FormulaParseError(f"empty field reference at position {start}")
            names.append(name)
            start = None
    if start is not None:
        raise FormulaParseError(f"unclosed '{{' at position {start}")
    return names


def extract_dependencies(formula: str) -> set[str]:
    """Return the field names referenced as ``{name}`` in ``formula``."""
    return set(_scan_references(formula))


def _check_parentheses(text: str, max_depth: int) -> None:
    depth = 0
    for index, char in enumerate(text):
        if char == "(":
            depth += 1
            if depth > max_depth:
                raise FormulaParseError(f"formula exceeds maximum nesting depth of {max_depth}")
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise FormulaParseError(f"unmatched ')' at position {index}")
    if depth:
        raise FormulaParseError("unbalanced parentheses: missing ')'")


def _substitute_references(formula: str) -> tuple[str, dict[str, str]]:
    placeholders: dict[str, str] = {}
    by_name: dict[str, str] = {}

    def _placeholder(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in by_name:
            by_name[name] = f"{REFERENCE_PREFIX}{len(by_name)}"
            placeholders[by_name[name]] = name
        return f" {by_name[name]} "

    source = _REFERENCE_PATTERN.sub(_placeholder, formula)
    source = _EQUAL_ALIAS.sub("==", _NOT_EQUAL_ALIAS.sub("!=", source))
    return " ".join(source.split()), placeholders


class _FormulaValidator(ast.NodeVisitor):
    def __init__(self, references: dict[str, str]) -> None:
        self.references = references

    def visit(self, node: ast.AST) -> Any:
        if not isinstance(node, ALLOWED_NODES):
            raise FormulaParseError(f"unsupported syntax: {type(node).__name__}")
        return super().visit(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise FormulaParseError(f"unsupported literal: {node.value!r}")

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.references or node.id.upper() in CONSTANTS:
            return
        raise FormulaParseError(f"unknown identifier: {node.id} (field references need braces)")

    def visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name):
            raise FormulaParseError("unsupported function call")
        spec = FUNCTIONS.get(node.func.id.upper())
        if spec is None:
            raise FormulaParseError(f"unknown function: {node.func.id}")
        if node.keywords:
            raise FormulaParseError(f"{spec.name} does not accept keyword arguments")
        count = len(node.args)
        if count < spec.min_args or (spec.max_args is not None and count > spec.max_args):
            raise FormulaParseError(f"{spec.name} expects {spec.arity} argument(s), got {count}")
        for argument in node.args:
            self.visit(argument)


def parse_formula(
    formula: str,
    *,
    max_length: int = MAX_FORMULA_LENGTH,
    max_depth: int = MAX_FORMULA_DEPTH,
) -> FormulaProgram:
    if not isinstance(formula, str):
        raise FormulaParseError("formula must be a string")
    if not formula.strip():
        raise FormulaParseError("formula is empty")
    if len(formula) > max_length:
        raise FormulaParseError(f"formula exceeds maximum length of {max_length} characters")

    names = _scan_references(formula)
    _check_parentheses(_REFERENCE_PATTERN.sub(lambda match: " " * len(match.group(0)), formula), max_depth)
    source, references = _substitute_references(formula)
    try:
        tree = ast.parse(source, mode="eval")
        _FormulaValidator(references).visit(tree)
    except FormulaParseError:
        raise
    except SyntaxError as exc:
        raise FormulaParseError(f"invalid syntax: {exc.msg}") from exc
    except ValueError as exc:
        raise FormulaParseError(f"invalid formula: {exc}") from exc
    except RecursionError as exc:
        raise FormulaParseError("formula is nested too deeply") from exc
    return FormulaProgram(source=formula, tree=tree, references=references, dependencies=frozenset(names))


def coerce_number(value: Any) -> float | None:
    """Best-effort numeric view of a field value; ``None`` when there is none."""
    if value is None or isinstance(value, EvalError):
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text or "_" in text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class _FormulaEvaluator(ast.NodeVisitor):
    def __init__(self, program: FormulaProgram, values: Mapping[str, Any]) -> None:
        self.program = program
        self.values = values
        self.coerced: list[str] = []

    def generic_visit(self, node: ast.AST) -> Any:
        raise TypeError(f"cannot evaluate {type(node).__name__}")

    def visit_Expression(self, node: ast.Expression) -> float:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> float:
        return float(node.value)

    def visit_Name(self, node: ast.Name) -> float:
        field_name = self.program.references.get(node.id)
        if field_name is None:
            return CONSTANTS[node.id.upper()]
        raw = self.values.get(field_name)
        if isinstance(raw, EvalError):
            raise _EvaluationAbort(EvalError(EvalErrorCode.REF, f"field '{field_name}' has no valid value"))
        number = coerce_number(raw)
        if number is None:
            if not _is_blank(raw):
                self.coerced.append(field_name)
            return 0.0
        return number

    def visit_UnaryOp(self, node: ast.UnaryOp) -> float:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return float(not operand)
        if isinstance(node.op, ast.USub):
            return -operand
        return operand

    def visit_BinOp(self, node: ast.BinOp) -> float:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Add):
            return left + right
        if isinstance(node.op, ast.Sub):
            return left - right
        if isinstance(node.op, ast.Mult):
            return left * right
        if isinstance(node.op, ast.Div):
            if right == 0:
                raise _EvaluationAbort(EvalError(EvalErrorCode.DIV_ZERO, "division by zero"))
            return left / right
        if isinstance(node.op, ast.Mod):
            return _mod(left, right)
        return math.pow(left, right)

    def visit_BoolOp(self, node: ast.BoolOp) -> float:
        if isinstance(node.op, ast.And):
            return float(all(self.visit(value) for value in node.values))
        return float(any(self.visit(value) for value in node.values))

    def visit_Compare(self, node: ast.Compare) -> float:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not _COMPARISONS[type(op)](left, right):
                return 0.0
            left = right
        return 1.0

    def visit_Call(self, node: ast.Call) -> float:
        spec = FUNCTIONS[node.func.id.upper()]
        if spec.implementation is None:
            if self.visit(node.args[0]):
                return self.visit(node.args[1])
            return self.visit(node.args[2]) if len(node.args) > 2 else 0.0
        return float(spec.implementation(*(self.visit(argument) for argument in node.args)))


def evaluate_formula(formula: FormulaProgram | str, values: Mapping[str, Any]) -> float | EvalError:
    if isinstance(formula, str):
        try:
            program = parse_formula(formula)
        except FormulaParseError as exc:
            logger.warning("formula_parse_failed", extra={"formula": formula, "error": str(exc)})
            return EvalError(EvalErrorCode.PARSE, str(exc))
    else:
        program = formula

    evaluator = _FormulaEvaluator(program, values)
    try:
        result = evaluator.visit(program.tree)
    except _EvaluationAbort as abort:
        error = abort.error
    except ZeroDivisionError as exc:
        error = EvalError(EvalErrorCode.DIV_ZERO, str(exc))
    except (ValueError, ArithmeticError) as exc:
        error = EvalError(EvalErrorCode.NUM, str(exc))
    except RecursionError:
        error = EvalError(EvalErrorCode.NUM, "formula is nested too deeply")
    else:
        if evaluator.coerced:
            logger.info(
                "formula_value_coerced",
                extra={"formula": program.source, "fields": sorted(set(evaluator.coerced)), "coerced_to": 0},
            )
        if math.isfinite(result):
            return result
        error = EvalError(EvalErrorCode.NUM, "result is not a finite number")

    logger.warning(
        "formula_evaluation_failed",
        extra={"formula": program.source, "code": error.code.value, "error": error.message},
    )
    return error


def validate_formula(
    formula: str,
    known_fields: Iterable[Any],
    field_name: str | None = None,
    *,
    max_length: int = MAX_FORMULA_LENGTH,
    max_depth: int = MAX_FORMULA_DEPTH,
) -> FormulaValidation:
    """Check a formula against the fields of a template.

    ``known_fields`` holds field names or field definitions; definitions also
    enable a warning when a referenced field is not numeric. ``field_name`` is
    the field that owns the formula, used to reject direct self-references.
    Cycles spanning several formulas are reported by the dependency graph.
    """
    field_types: dict[str, str | None] = {}
    for known in known_fields:
        if isinstance(known, str):
            field_types[known] = None
        else:
            field_types[known.name] = getattr(known.type, "value", known.type)

    try:
        names = _scan_references(formula)
    except FormulaParseError as exc:
        return FormulaValidation(is_valid=False, errors=[str(exc)], dependencies=[])

    errors: list[str] = []
    warnings: list[str] = []
    dependencies = list(dict.fromkeys(names))
    for name in dependencies:
        if field_name is not None and name == field_name:
            errors.append(f"formula references its own field: {name}")
        elif name not in field_types:
            errors.append(f"unknown field reference: {name}")
        elif field_types[name] not in (None, "number", "calculated"):
            warnings.append(f"field '{name}' is not numeric ({field_types[name]})")

    try:
        parse_formula(formula, max_length=max_length, max_depth=max_depth)
    except FormulaParseError as exc:
        errors.append(str(exc))

    return FormulaValidation(is_valid=not errors, errors=errors, dependencies=dependencies, warnings=warnings)


def _format_amount(amount: Decimal, places: int, locale_format: LocaleFormat) -> str:
    text = f"{amount.copy_abs():,.{places}f}"
    integer, _, fraction = text.partition(".")
    integer = integer.replace(",", locale_format.group_separator)
    sign = "-" if amount < 0 else ""
    if fraction:
        return f"{sign}{integer}{locale_format.decimal_separator}{fraction}"
    return f"{sign}{integer}"


def _plain(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def format_value(
    value: float | EvalError,
    config: CalculatedConfig | None = None,
    locale: str = DEFAULT_LOCALE,
) -> str:
    if isinstance(value, EvalError):
        return str(value)
    if config is None:
        return _plain(value)
    try:
        locale_format = LOCALES[locale]
    except KeyError:
        raise ValueError(f"unsupported locale: {locale}") from None

    places = DEFAULT_DECIMAL_PLACES if config.decimal_places is None else int(config.decimal_places)
    format_type = FormatType(config.format_type)
    prefix = config.prefix or ""
    suffix = config.suffix or ""

    if format_type is FormatType.CURRENCY:
        amount = _quantize(value, places)
        text = locale_format.currency_pattern.format(
            symbol=locale_format.currency_symbol,
            amount=_format_amount(amount.copy_abs(), places, locale_format),
        )
        text = f"-{text}" if amount < 0 else text
    elif format_type is FormatType.PERCENTAGE:
        text = _format_amount(_quantize(Decimal(str(value)) * 100, places), places, locale_format) + "%"
    elif format_type is FormatType.CUSTOM:
        number = _format_amount(_quantize(value, places), places, locale_format)
        template = config.custom_format or "{value}"
        return template.replace("{value}", f"{prefix}{number}{suffix}")
    else:
        text = _format_amount(_quantize(value, places), places, locale_format)

    return f"{prefix}{text}{suffix}"
