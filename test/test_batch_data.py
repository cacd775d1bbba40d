from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from batch_data import auto_convert, load_data_file, parse_delimited, parse_json
from render_pipeline.errors import ValidationError


@pytest.mark.parametrize(
    "text,expected",
    [
        ("true", True),
        ("false", False),
        ("42", 42),
        ("-7", -7),
        ("3.5", 3.5),
        ("0", 0),
        ("0.5", 0.5),
        ("007", "007"),
        ("1e3", "1e3"),
        ("True", "True"),
        ("", ""),
        ("hello", "hello"),
    ],
)
def test_auto_convert(text: str, expected) -> None:
    result = auto_convert(text)
    assert result == expected
    assert type(result) is type(expected)


def test_parse_delimited_handles_quotes_and_short_rows() -> None:
    content = 'name,quote,count\nAlice,"Hello, world",3\nBob,"Say ""hi"""\n'
    rows = parse_delimited(content)
    assert rows == [
        {"name": "Alice", "quote": "Hello, world", "count": 3},
        {"name": "Bob", "quote": 'Say "hi"', "count": ""},
    ]


def test_parse_delimited_requires_data_row() -> None:
    with pytest.raises(ValidationError, match="header row and at least one data row"):
        parse_delimited("name,score\n")


def test_parse_json_requires_array_of_objects() -> None:
    with pytest.raises(ValidationError, match="top-level array"):
        parse_json('{"name": "x"}')
    with pytest.raises(ValidationError, match="row 1"):
        parse_json('[{"name": "x"}, 3]')


def test_load_data_file_formats(tmp_path: Path) -> None:
    csv_file = tmp_path / "rows.csv"
    csv_file.write_text("name,age\nAlice,30\n", encoding="utf-8")
    tsv_file = tmp_path / "rows.tsv"
    tsv_file.write_text("name\tage\nBob\t41\n", encoding="utf-8")
    json_file = tmp_path / "rows.json"
    json_file.write_text('[{"name": "Carol", "age": 52}]', encoding="utf-8")
    yaml_file = tmp_path / "rows.yaml"
    yaml_file.write_text("- name: Dan\n  age: 63\n", encoding="utf-8")

    assert load_data_file(csv_file) == [{"name": "Alice", "age": 30}]
    assert load_data_file(tsv_file) == [{"name": "Bob", "age": 41}]
    assert load_data_file(json_file) == [{"name": "Carol", "age": 52}]
    assert load_data_file(yaml_file) == [{"name": "Dan", "age": 63}]


def test_load_data_file_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_data_file(tmp_path / "missing.csv")

    empty = tmp_path / "empty.csv"
    empty.write_text("   \n", encoding="utf-8")
    with pytest.raises(ValidationError, match="empty"):
        load_data_file(empty)

    text = tmp_path / "rows.txt"
    text.write_text("a,b\n1,2\n", encoding="utf-8")
    with pytest.raises(ValidationError, match="Unsupported"):
        load_data_file(text)

    no_rows = tmp_path / "rows.json"
    no_rows.write_text("[]", encoding="utf-8")
    with pytest.raises(ValidationError, match="no rows"):
        load_data_file(no_rows)
