import pytest

from form_logic.formula_engine import (
    FORMULA_EXAMPLES,
    EvalError,
    EvalErrorCode,
    FormatType,
    FormulaParseError,
    coerce_number,
    evaluate_formula,
    extract_dependencies,
    format_value,
    list_functions,
    parse_formula,
    validate_formula,
)
from form_logic.models import CalculatedConfig, FieldDefinition, FieldType


def test_extract_dependencies_returns_each_referenced_name_once() -> None:
    assert extract_dependencies("{a} + {b} * {a}") == {"a", "b"}
    assert extract_dependencies("2 * 3") == set()


def test_extract_dependencies_keeps_names_with_spaces() -> None:
    assert extract_dependencies("{unit price} * {qty}") == {"unit price", "qty"}


@pytest.mark.parametrize(
    ("formula", "message"),
    [
        ("{a + 1", "unclosed"),
        ("a} + 1", "unmatched"),
        ("{} + 1", "empty field reference"),
        ("{{a}}", "nested"),
    ],
)
def test_extract_dependencies_rejects_malformed_braces(formula: str, message: str) -> None:
    with pytest.raises(FormulaParseError, match=message):
        extract_dependencies(formula)


def test_parse_formula_records_dependencies() -> None:
    program = parse_formula("ROUND({total} / {installments}, 2)")
    assert program.dependencies == frozenset({"total", "installments"})
    assert program.source == "ROUND({total} / {installments}, 2)"


@pytest.mark.parametrize(
    ("formula", "message"),
    [
        ("", "empty"),
        ("   ", "empty"),
        ("{a} +", "invalid syntax"),
        ("({a} + 1", "missing"),
        ("{a} + 1)", "unmatched"),
        ("FOO(1)", "unknown function"),
        ("a + 1", "unknown identifier"),
        ("POW(2)", "POW expects 2 argument"),
        ("IF(1)", "IF expects 2 to 3 argument"),
        ("IF({a} > 1, 'x', 2)", "unsupported literal"),
        ("{a}.real", "unsupported syntax"),
        ("__import__('os').system('echo bad')", "unsupported"),
        ("[1, 2]", "unsupported syntax"),
        ("1 if {a} else 2", "unsupported syntax"),
    ],
)
def test_parse_formula_rejects_invalid_formulas(formula: str, message: str) -> None:
    with pytest.raises(FormulaParseError, match=message):
        parse_formula(formula)


def test_parse_formula_enforces_length_and_depth_limits() -> None:
    with pytest.raises(FormulaParseError, match="maximum length"):
        parse_formula("1 + 1", max_length=3)
    with pytest.raises(FormulaParseError, match="maximum nesting depth"):
        parse_formula("(" * 40 + "1" + ")" * 40)
    assert evaluate_formula(parse_formula("((1 + 2))", max_depth=2), {}) == 3.0


def test_evaluate_formula_substitutes_field_values() -> None:
    program = parse_formula("{a} + {b}")
    assert evaluate_formula(program, {"a": 2, "b": 3}) == 5.0
    assert evaluate_formula(program, {"a": 10, "b": 0.5}) == 10.5


def test_evaluate_formula_respects_precedence_and_parentheses() -> None:
    assert evaluate_formula("2 + 3 * 4", {}) == 14.0
    assert evaluate_formula("(2 + 3) * 4", {}) == 20.0
    assert evaluate_formula("-{a} + 10 / 4", {"a": 1}) == 1.5


def test_evaluate_formula_coerces_blank_and_non_numeric_values_to_zero() -> None:
    assert evaluate_formula("{a} + {b} + {c} + 1", {"a": "abc", "b": "", "c": None}) == 1.0
    assert evaluate_formula("{a} + 5", {"a": " 10 "}) == 15.0
    assert evaluate_formula("{missing} * 2", {}) == 0.0


def test_evaluate_formula_division_by_zero_returns_sentinel() -> None:
    result = evaluate_formula("{a} / {b}", {"a": 1, "b": 0})
    assert isinstance(result, EvalError)
    assert result.code is EvalErrorCode.DIV_ZERO
    assert str(result) == "#DIV/0!"

    assert evaluate_formula("MOD(5, 0)", {}).code is EvalErrorCode.DIV_ZERO
    assert evaluate_formula("7 % 0", {}).code is EvalErrorCode.DIV_ZERO


def test_evaluate_formula_if_only_evaluates_the_chosen_branch() -> None:
    assert evaluate_formula("IF({b} != 0, {a} / {b}, 0)", {"a": 10, "b": 0}) == 0.0
    assert evaluate_formula("IF({b} != 0, {a} / {b}, 0)", {"a": 10, "b": 4}) == 2.5
    assert evaluate_formula("IF({age} >= 18, 100, 50)", {"age": 17}) == 50.0
    assert evaluate_formula("IF(0, 1)", {}) == 0.0


def test_evaluate_formula_accepts_spreadsheet_comparison_aliases() -> None:
    assert evaluate_formula("IF({status} = 1, 10, 20)", {"status": 1}) == 10.0
    assert evaluate_formula("IF({status} <> 1, 10, 20)", {"status": 1}) == 20.0
    assert evaluate_formula("{a=b} + 1", {"a=b": 1}) == 2.0


def test_evaluate_formula_function_library() -> None:
    assert evaluate_formula("ROUND(2.5)", {}) == 3.0
    assert evaluate_formula("ROUND(-2.5)", {}) == -3.0
    assert evaluate_formula("round(2.345, 2)", {}) == 2.35
    assert evaluate_formula("MAX({a}, {b}, 7)", {"a": 3, "b": 9}) == 9.0
    assert evaluate_formula("MIN(5)", {}) == 5.0
    assert evaluate_formula("AVG(1, 2, 3, 4)", {}) == 2.5
    assert evaluate_formula("SUM(1, 2, 3)", {}) == 6.0
    assert evaluate_formula("ABS(-4) + SIGN(-3)", {}) == 3.0
    assert evaluate_formula("TRUNC(3.9) + FLOOR(-1.5) + CEIL(1.1)", {}) == 3.0
    assert evaluate_formula("MOD(10, 3)", {}) == 1.0
    assert evaluate_formula("LOG10(100)", {}) == 2.0
    assert evaluate_formula("LOG(8, 2)", {}) == pytest.approx(3.0)
    assert evaluate_formula("ROUND(PI, 2)", {}) == 3.14
    assert evaluate_formula("ROUND(SIN(RADIANS(90)), 6)", {}) == 1.0
    assert evaluate_formula("DEGREES(PI)", {}) == pytest.approx(180.0)
    assert evaluate_formula("AND(1, {a} > 2) + OR(0, 0) + NOT(0)", {"a": 3}) == 2.0


def test_evaluate_formula_comparisons_and_boolean_operators() -> None:
    assert evaluate_formula("3 > 2", {}) == 1.0
    assert evaluate_formula("1 < 2 < 3", {}) == 1.0
    assert evaluate_formula("1 and 0", {}) == 0.0
    assert evaluate_formula("not 0", {}) == 1.0


def test_evaluate_formula_math_errors_return_num_sentinel() -> None:
    assert evaluate_formula("SQRT(-1)", {}).code is EvalErrorCode.NUM
    assert evaluate_formula("POW(10, 400)", {}).code is EvalErrorCode.NUM
    assert evaluate_formula("1e308 * 10", {}).code is EvalErrorCode.NUM
    assert str(evaluate_formula("LOG10(0)", {})) == "#NUM!"


def test_evaluate_formula_propagates_upstream_errors() -> None:
    upstream = EvalError(EvalErrorCode.DIV_ZERO, "division by zero")
    result = evaluate_formula("{a} + 1", {"a": upstream})
    assert isinstance(result, EvalError)
    assert result.code is EvalErrorCode.REF


def test_evaluate_formula_returns_parse_sentinel_for_bad_source() -> None:
    result = evaluate_formula("{a} +", {"a": 1})
    assert isinstance(result, EvalError)
    assert result.code is EvalErrorCode.PARSE


def test_validate_formula_reports_unknown_fields() -> None:
    result = validate_formula("{a} + {c}", ["a", "b"])
    assert result.is_valid is False
    assert result.errors == ["unknown field reference: c"]
    assert result.dependencies == ["a", "c"]


def test_validate_formula_accepts_known_fields() -> None:
    result = validate_formula("{a} * 2", ["a"])
    assert result.is_valid is True
    assert result.errors == []
    assert result.dependencies == ["a"]


def test_validate_formula_reports_syntax_and_brace_errors() -> None:
    syntax = validate_formula("{a} +", ["a"])
    assert syntax.is_valid is False
    assert any("invalid syntax" in error for error in syntax.errors)

    braces = validate_formula("{a", ["a"])
    assert braces.is_valid is False
    assert braces.dependencies == []


def test_validate_formula_rejects_self_reference() -> None:
    result = validate_formula("{total} + 1", ["total"], field_name="total")
    assert result.is_valid is False
    assert "formula references its own field: total" in result.errors


def test_validate_formula_warns_about_non_numeric_fields() -> None:
    fields = [
        FieldDefinition(id="1", name="notes", type=FieldType.TEXT),
        FieldDefinition(id="2", name="qty", type=FieldType.NUMBER),
    ]
    result = validate_formula("{notes} + {qty}", fields)
    assert result.is_valid is True
    assert result.warnings == ["field 'notes' is not numeric (text)"]


def test_format_value_currency_in_brl() -> None:
    config = CalculatedConfig(formula="{a}+{b}", format_type=FormatType.CURRENCY, decimal_places=2)
    value = evaluate_formula(parse_formula("{a}+{b}"), {"a": 2, "b": 3})
    formatted = format_value(value, config, locale="pt_BR")
    assert formatted == "R$ 5,00"
    assert format_value(value, config, locale="pt_BR") == formatted


def test_format_value_currency_locales_and_sign() -> None:
    config = CalculatedConfig(formula="1", format_type=FormatType.CURRENCY, decimal_places=2)
    assert format_value(1234.5, config) == "R$ 1.234,50"
    assert format_value(1234.5, config, locale="en_US") == "$1,234.50"
    assert format_value(1234.5, config, locale="de_DE") == "1.234,50 €"
    assert format_value(-5, config) == "-R$ 5,00"


def test_format_value_number_and_percentage() -> None:
    number = CalculatedConfig(formula="1", format_type=FormatType.NUMBER, decimal_places=2)
    assert format_value(1234.567, number) == "1.234,57"
    assert format_value(2.675, number) == "2,68"

    whole = CalculatedConfig(formula="1", decimal_places=0, prefix="Qty ")
    assert format_value(7, whole) == "Qty 7"

    percentage = CalculatedConfig(formula="1", format_type=FormatType.PERCENTAGE, decimal_places=1)
    assert format_value(0.125, percentage) == "12,5%"
    assert format_value(0.125, percentage, locale="en_US") == "12.5%"


def test_format_value_custom_template_wraps_prefix_and_suffix() -> None:
    config = CalculatedConfig(
        formula="1",
        format_type=FormatType.CUSTOM,
        decimal_places=1,
        prefix="~",
        suffix=" kg",
        custom_format="Total: {value}",
    )
    assert format_value(3.25, config) == "Total: ~3,3 kg"


def test_format_value_renders_error_glyph_and_plain_values() -> None:
    config = CalculatedConfig(formula="1", format_type=FormatType.CURRENCY)
    assert format_value(EvalError(EvalErrorCode.CYCLE), config) == "#CYCLE!"
    assert format_value(5.0) == "5"
    assert format_value(2.5) == "2.5"


def test_format_value_unknown_locale_raises() -> None:
    config = CalculatedConfig(formula="1")
    with pytest.raises(ValueError, match="unsupported locale"):
        format_value(1, config, locale="xx_XX")


def test_function_catalog_covers_every_category() -> None:
    categories = {spec.category for spec in list_functions()}
    assert categories == {"basic", "trigonometry", "logarithmic", "rounding", "statistical", "logical"}
    assert "IF" in {spec.name for spec in list_functions("logical")}


def test_formula_examples_are_valid() -> None:
    for example in FORMULA_EXAMPLES:
        parse_formula(example["formula"])


def test_round_keeps_large_values() -> None:
    assert evaluate_formula("ROUND({a}, 2)", {"a": 1e27}) == 1e27
    assert evaluate_formula("ROUND({a}, 2)", {"a": -1e300}) == -1e300
    assert evaluate_formula("ROUND(1234.5, -2)", {}) == 1200.0
    assert evaluate_formula("ROUND(2, 500)", {}) == 2.0


def test_format_value_handles_large_magnitudes() -> None:
    currency = CalculatedConfig(formula="1", format_type=FormatType.CURRENCY, decimal_places=2)
    number = CalculatedConfig(formula="1", format_type=FormatType.NUMBER, decimal_places=0)
    percentage = CalculatedConfig(formula="1", format_type=FormatType.PERCENTAGE, decimal_places=1)

    assert format_value(1e27, currency) == "R$ 1" + ".000" * 9 + ",00"
    assert format_value(-1e27, currency) == "-R$ 1" + ".000" * 9 + ",00"
    assert format_value(1e27, number, locale="en_US") == "1" + ",000" * 9
    assert format_value(1e27, percentage) == "100" + ".000" * 9 + ",0%"

    largest = format_value(1.7976931348623157e308, CalculatedConfig(formula="1", decimal_places=2))
    assert largest.startswith("179.769.313.486.231.570.000")
    assert largest.endswith(",00")


def test_format_value_without_decimal_places() -> None:
    assert format_value(5.5, CalculatedConfig(formula="1", format_type=FormatType.CURRENCY, decimal_places=0)) == "R$ 6"
    assert format_value(-2.5, CalculatedConfig(formula="1", decimal_places=0)) == "-3"
    assert format_value(1234.5, CalculatedConfig(formula="1", decimal_places=0)) == "1.235"


def test_format_value_negative_percentages() -> None:
    one_place = CalculatedConfig(formula="1", format_type=FormatType.PERCENTAGE, decimal_places=1)
    whole = CalculatedConfig(formula="1", format_type=FormatType.PERCENTAGE, decimal_places=0)
    assert format_value(-0.125, one_place) == "-12,5%"
    assert format_value(-0.5, whole, locale="en_US") == "-50%"


def test_text_with_digit_separators_is_not_numeric() -> None:
    assert coerce_number("1_000") is None
    assert coerce_number("1e3") == 1000.0
    assert evaluate_formula("{a} + 1", {"a": "1_000"}) == 1.0
