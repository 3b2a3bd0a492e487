"""Tests for parity.py"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from app.core.parity import (
    DatasetLoadError,
    EXIT_LOAD_ERROR,
    EXIT_MISMATCH,
    EXIT_OK,
    check_parity,
    compare_dataset,
    compare_exports,
    main,
    normalize_value,
)


def _write(directory, name, payload):
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"{name}.json").write_text(json.dumps(payload))


@pytest.fixture
def dirs(tmp_path):
    return tmp_path / "baseData", tmp_path / "data"


class TestNormalize:
    def test_sorts_keys_recursively(self):
        value = {"b": 1, "a": {"d": 2, "c": 3}}
        assert list(normalize_value(value)) == ["a", "b"]
        assert list(normalize_value(value)["a"]) == ["c", "d"]

    def test_arrays_keep_order(self):
        assert normalize_value([3, 1, 2]) == [3, 1, 2]

    def test_datetimes_canonical(self):
        aware = datetime(2024, 1, 1, 1, 0, tzinfo=timezone(timedelta(hours=1)))
        assert normalize_value(aware) == "2024-01-01T00:00:00.000Z"
        assert normalize_value(datetime(2024, 1, 1)) == "2024-01-01T00:00:00.000Z"

    def test_timestamp_strings_canonical(self):
        assert normalize_value("2024-01-01T00:00:00Z") == "2024-01-01T00:00:00.000Z"
        assert normalize_value("2024-01-01T00:00:00.000+00:00") == "2024-01-01T00:00:00.000Z"

    def test_plain_strings_untouched(self):
        assert normalize_value("2025-10-01") == "2025-10-01"
        assert normalize_value("hello") == "hello"


class TestCompare:
    def test_key_order_does_not_matter(self):
        result = compare_exports(
            "tags", {"mockTags": [{"id": 1, "name": "x"}]}, {"mockTags": [{"name": "x", "id": 1}]}
        )
        assert result.match is True

    def test_length_mismatch_names_both_lengths(self):
        result = compare_exports("tags", {"mockTags": [{"id": 1}]}, {"mockTags": [{"id": 1}, {"id": 2}]})
        assert result.match is False
        assert "Length mismatch" in result.reason
        assert "base=1" in result.reason
        assert "working=2" in result.reason

    def test_export_key_mismatch(self):
        result = compare_exports("tags", {"mockTags": []}, {"tags": []})
        assert result.match is False
        assert "Export key mismatch" in result.reason

    def test_reports_first_differing_line(self):
        base = {"mockTags": [{"id": 1, "name": "x"}, {"id": 2, "name": "y"}]}
        working = {"mockTags": [{"id": 1, "name": "x"}, {"id": 2, "name": "z"}]}
        result = compare_exports("tags", base, working)

        assert result.match is False
        expected_text = json.dumps(base, indent=2).split("\n")
        assert expected_text[result.line - 1].strip() == '"name": "y"'
        assert '"name": "z"' in result.reason

    def test_dates_in_different_formats_match(self):
        result = compare_exports(
            "tags",
            {"mockTags": [{"createdAt": "2024-01-01T00:00:00.000Z"}]},
            {"mockTags": [{"createdAt": "2024-01-01T00:00:00+00:00"}]},
        )
        assert result.match is True


class TestFiles:
    def test_match_and_mismatch_across_datasets(self, dirs):
        base, working = dirs
        _write(base, "tags", {"mockTags": [{"id": 1, "name": "x"}]})
        _write(working, "tags", {"mockTags": [{"name": "x", "id": 1}]})
        _write(base, "users", {"mockUsers": [{"id": 1}]})
        _write(working, "users", {"mockUsers": [{"id": 1}, {"id": 2}]})

        report = check_parity(["tags", "users"], base, working)

        assert [r.match for r in report.results] == [True, False]
        assert report.ok is False
        assert [r.dataset for r in report.mismatches] == ["users"]

    def test_rereads_files_each_time(self, dirs):
        base, working = dirs
        _write(base, "tags", {"mockTags": [{"id": 1}]})
        _write(working, "tags", {"mockTags": [{"id": 2}]})
        assert compare_dataset("tags", base, working).match is False

        _write(working, "tags", {"mockTags": [{"id": 1}]})
        assert compare_dataset("tags", base, working).match is True

    def test_missing_file_raises(self, dirs):
        base, working = dirs
        _write(base, "tags", {"mockTags": []})
        with pytest.raises(DatasetLoadError):
            compare_dataset("tags", base, working)

    def test_invalid_json_raises(self, dirs):
        base, working = dirs
        _write(base, "tags", {"mockTags": []})
        working.mkdir(parents=True, exist_ok=True)
        (working / "tags.json").write_text("{not json")
        with pytest.raises(DatasetLoadError):
            compare_dataset("tags", base, working)


class TestMain:
    def test_exit_ok(self, dirs, capsys):
        base, working = dirs
        _write(base, "tags", {"mockTags": [{"id": 1}]})
        _write(working, "tags", {"mockTags": [{"id": 1}]})
        assert main(["tags", "--base", str(base), "--working", str(working)]) == EXIT_OK
        assert "All datasets match" in capsys.readouterr().out

    def test_exit_mismatch(self, dirs, capsys):
        base, working = dirs
        _write(base, "tags", {"mockTags": [{"id": 1}]})
        _write(working, "tags", {"mockTags": [{"id": 1}, {"id": 2}]})
        assert main(["tags", "--base", str(base), "--working", str(working)]) == EXIT_MISMATCH
        assert "base=1, working=2" in capsys.readouterr().out

    def test_exit_load_error(self, dirs):
        base, working = dirs
        assert main(["tags", "--base", str(base), "--working", str(working)]) == EXIT_LOAD_ERROR
