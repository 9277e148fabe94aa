"""Tests for bops.analysis.extract — JSON out of free text."""

from __future__ import annotations

import pytest

from bops.analysis.extract import (
    extract_array,
    extract_object,
    read_bool,
    read_float,
    read_int,
    read_str,
    read_str_list,
    read_str_map,
)
from bops.core.errors import ParseFailure


class TestExtractObject:
    @pytest.mark.parametrize(
        "text",
        [
            '{"confidence": 0.8}',
            '```json\n{"confidence": 0.8}\n```',
            'Here is my analysis:\n```\n{"confidence": 0.8}\n```\nHope that helps.',
            'Sure! {"confidence": 0.8} is my answer.',
        ],
    )
    def test_finds_object(self, text: str) -> None:
        assert extract_object(text) == {"confidence": 0.8}

    @pytest.mark.parametrize("text", ["", "   ", "no json here", "{broken: json", "[1, 2]"])
    def test_parse_failure(self, text: str) -> None:
        with pytest.raises(ParseFailure):
            extract_object(text)


class TestExtractArray:
    def test_bare_list(self) -> None:
        assert extract_array('["CVE-2021-44228"]') == ["CVE-2021-44228"]

    def test_list_in_prose(self) -> None:
        assert extract_array('The matches are ["a", "b"].') == ["a", "b"]

    @pytest.mark.parametrize("key", ["cves", "cve_ids", "matches"])
    def test_wrapped_list(self, key: str) -> None:
        assert extract_array(f'{{"{key}": ["x"]}}') == ["x"]

    def test_object_without_list(self) -> None:
        with pytest.raises(ParseFailure):
            extract_array('{"answer": "none"}')


class TestReaders:
    def test_read_bool(self) -> None:
        data = {"a": True, "b": "false", "c": "yes", "d": 1}
        assert read_bool(data, "a") is True
        assert read_bool(data, "b", default=True) is False
        assert read_bool(data, "c") is False
        assert read_bool(data, "d") is False
        assert read_bool(data, "missing", default=True) is True

    def test_read_float_clamps(self) -> None:
        data = {"hi": 1.7, "lo": -0.2, "s": "0.65", "bad": "n/a", "flag": True, "nan": float("nan")}
        assert read_float(data, "hi") == 1.0
        assert read_float(data, "lo") == 0.0
        assert read_float(data, "s") == 0.65
        assert read_float(data, "bad") == 0.0
        assert read_float(data, "flag", default=0.3) == 0.3
        assert read_float(data, "nan") == 0.0
        assert read_float({"m": 90}, "m", lo=0, hi=10_000) == 90.0

    def test_read_int(self) -> None:
        data = {"i": 30, "f": 45.0, "s": " 12 ", "x": "twelve", "frac": 2.5}
        assert read_int(data, "i") == 30
        assert read_int(data, "f") == 45
        assert read_int(data, "s") == 12
        assert read_int(data, "x", default=-1) == -1
        assert read_int(data, "frac", default=-1) == -1

    def test_read_str(self) -> None:
        assert read_str({"a": "x", "b": 3}, "a") == "x"
        assert read_str({"b": 3}, "b", default="d") == "d"

    def test_read_str_list(self) -> None:
        assert read_str_list({"f": ["a.py", 3, "", "b.py"]}, "f") == ["a.py", "b.py"]
        assert read_str_list({"f": "only.py"}, "f") == ["only.py"]
        assert read_str_list({"f": {"x": 1}}, "f") == []

    def test_read_str_map(self) -> None:
        assert read_str_map({"c": {"a.py": "code", "b.py": 1}}, "c") == {"a.py": "code"}
        assert read_str_map({"c": ["a"]}, "c") == {}
