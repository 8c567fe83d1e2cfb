import pytest

from app.services.report_formats.params import (
    PARAM_MAX_ABSENT,
    PARAM_MIN_ABSENT,
    ParamType,
    is_valid_bounds,
    parse_bound,
    parse_c_integer,
    split_report_format_list,
    validate_param_value,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("42", 42),
        ("  -7", -7),
        ("0x1f", 31),
        ("017", 15),
        ("12abc", 12),
        ("abc", 0),
        ("", 0),
        ("99999999999999999999999", PARAM_MAX_ABSENT),
    ],
)
def test_parse_c_integer(text, expected):
    assert parse_c_integer(text) == expected


def test_parse_bound_is_strict():
    assert parse_bound("10") == 10
    assert parse_bound(" 0x10 ") == 16
    assert parse_bound("10abc") is None
    assert parse_bound("") is None
    assert parse_bound(str(PARAM_MAX_ABSENT)) is None
    assert parse_bound(str(PARAM_MIN_ABSENT)) is None


def test_sentinel_bounds_are_not_valid_explicit_bounds():
    assert is_valid_bounds(0, 10)
    assert not is_valid_bounds(PARAM_MIN_ABSENT, 10)
    assert not is_valid_bounds(0, PARAM_MAX_ABSENT)


def test_integer_out_of_range_is_rejected_not_clamped():
    assert validate_param_value(ParamType.INTEGER, "5", type_min=1, type_max=10)
    assert not validate_param_value(ParamType.INTEGER, "0", type_min=1, type_max=10)
    assert not validate_param_value(ParamType.INTEGER, "11", type_min=1, type_max=10)


def test_unbounded_integer_accepts_anything():
    assert validate_param_value(ParamType.INTEGER, "-123456789")


def test_string_length_is_counted_in_bytes():
    assert validate_param_value(ParamType.STRING, "abc", type_min=0, type_max=3)
    assert not validate_param_value(ParamType.STRING, "abcd", type_min=0, type_max=3)
    # two bytes in UTF-8
    assert not validate_param_value(ParamType.TEXT, "éé", type_min=0, type_max=3)


def test_selection_requires_membership():
    assert validate_param_value(ParamType.SELECTION, "b", options=["a", "b"])
    assert not validate_param_value(ParamType.SELECTION, "c", options=["a", "b"])


def test_report_format_list_pattern():
    assert validate_param_value(ParamType.REPORT_FORMAT_LIST, "")
    assert validate_param_value(ParamType.REPORT_FORMAT_LIST, "abc-1,def_2")
    assert not validate_param_value(ParamType.REPORT_FORMAT_LIST, "abc,")
    assert not validate_param_value(ParamType.REPORT_FORMAT_LIST, "abc def")


def test_boolean_accepts_any_value():
    assert validate_param_value(ParamType.BOOLEAN, "whatever")


def test_split_report_format_list_keeps_order_and_drops_repeats():
    assert split_report_format_list("b,a,b,,c") == ["b", "a", "c"]
    assert split_report_format_list(None) == []


def test_param_type_names():
    assert ParamType.from_name("report_format_list") is ParamType.REPORT_FORMAT_LIST
    assert ParamType.from_name("Integer") is ParamType.INTEGER
    assert ParamType.from_name("float") is None
    assert ParamType.SELECTION.type_name == "selection"
