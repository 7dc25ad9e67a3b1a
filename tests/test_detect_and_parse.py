import pytest

import cfgdiff


@pytest.mark.parametrize(
    "data, expected",
    [
        (b"", "raw"),
        (b"   \n\t\n", "raw"),
        (b"[DEFAULT]\nfoo=1\n", "ini"),
        (b"\n  [section]\nkey=value\n", "ini"),
        (b'  {"a": 1, "b": [1, 2]}', "json"),
        (b"42", "json"),
        (b"a: 1\nb:\n  c: two\n", "yaml"),
        (b"- a\n- b\n", "yaml"),
        (b"just some text", "raw"),
        (b"key=value\nother line\n", "raw"),
        (b"a: [unclosed", "raw"),
        (b"\xff\xfe\x00garbage", "raw"),
    ],
)
def test_detect_type(data, expected):
    assert cfgdiff.detect_type(data) == expected


def test_detect_type_prefers_ini_for_leading_bracket():
    # A JSON array starts with "[" too; the INI check runs first
    assert cfgdiff.detect_type(b"[1, 2, 3]") == "ini"


def test_parse_ini_preserves_case_and_order():
    doc = cfgdiff.parse_ini(b"[Sec]\nKey=1\nother = two\n[b]\nx=\n", "l")
    assert list(doc.sections) == ["Sec", "b"]
    assert doc.sections["Sec"] == {"Key": "1", "other": "two"}
    assert doc.sections["b"] == {"x": ""}


def test_parse_ini_keys_before_first_section_land_in_default():
    doc = cfgdiff.parse_ini(b"top=1\n[a]\nx=%(notinterpolated)s\n", "l")
    assert doc.sections["DEFAULT"] == {"top": "1"}
    assert doc.sections["a"] == {"x": "%(notinterpolated)s"}


def test_parse_ini_default_is_an_ordinary_section():
    doc = cfgdiff.parse_ini(b"[DEFAULT]\ndebug=true\n[a]\nx=1\n", "l")
    assert doc.sections["DEFAULT"] == {"debug": "true"}
    # Values from [DEFAULT] are not inherited by other sections
    assert doc.sections["a"] == {"x": "1"}


def test_parse_ini_merges_duplicate_sections():
    doc = cfgdiff.parse_ini(b"[a]\nx=1\n[a]\ny=2\nx=3\n", "l")
    assert doc.sections == {"a": {"x": "3", "y": "2"}}


def test_parse_ini_valueless_key():
    doc = cfgdiff.parse_ini(b"[mysqld]\nskip-external-locking\n", "l")
    assert doc.sections["mysqld"] == {"skip-external-locking": ""}


def test_parse_json_and_yaml_errors():
    with pytest.raises(cfgdiff.ParseError):
        cfgdiff.parse_json(b"{not json", "left.json")
    with pytest.raises(cfgdiff.ParseError):
        cfgdiff.parse_yaml(b"a: [unclosed", "left.yaml")


def test_parse_yaml_empty_document_is_empty_mapping():
    assert cfgdiff.parse_yaml(b"", "x") == {}
    assert cfgdiff.parse_yaml(b"# only a comment\n", "x") == {}


def test_parse_json_is_permissive_with_control_characters():
    assert cfgdiff.parse_json(b'{"a": "tab\there"}', "x") == {"a": "tab\there"}


def test_line_document_content_skips_comments_and_blanks():
    doc = cfgdiff.LineDocument.from_bytes(b"a\n# c\n\n   \nb\n")
    assert doc.lines == ["a", "# c", "", "   ", "b", ""]
    assert doc.content() == {"a", "b"}


def test_error_hierarchy():
    for exc in (cfgdiff.ParseError, cfgdiff.StructureMismatch, cfgdiff.FetchError):
        assert issubclass(exc, cfgdiff.CfgDiffError)
    assert issubclass(cfgdiff.CfgDiffError, RuntimeError)
