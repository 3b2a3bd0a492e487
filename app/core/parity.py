"""Parity check between the base and working copies of the seed datasets.

Each dataset is a JSON file `<name>.json` whose top-level object maps export
names (e.g. "mockTags") to their records. Both copies are read from disk on
every check; nothing is cached between runs.

Usage:
    python -m app.core.parity --base seed/baseData --working seed/data [NAME ...]

Exit codes: 0 all datasets match, 1 at least one mismatch, 2 a file could not
be read or parsed.
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from app.core.settings import Settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_MISMATCH = 1
EXIT_LOAD_ERROR = 2

_ISO_TIMESTAMP_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$"
)


class DatasetLoadError(Exception):
    """A dataset file is missing, unreadable or not valid JSON."""


def canonical_datetime(value: datetime) -> str:
    """Render as UTC with millisecond precision, e.g. 2024-01-01T00:00:00.000Z.

    Naive values are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _canonical_timestamp_string(value: str) -> str:
    if not _ISO_TIMESTAMP_RE.match(value):
        return value
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        return canonical_datetime(datetime.fromisoformat(text))
    except ValueError:
        return value


def normalize_value(obj: Any) -> Any:
    """Normalize recursively for comparison.

    - datetimes and ISO timestamp strings -> one canonical UTC string
    - object keys sorted, so key order never matters
    - arrays keep their order
    """
    if isinstance(obj, datetime):
        return canonical_datetime(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, str):
        return _canonical_timestamp_string(obj)
    if isinstance(obj, (list, tuple)):
        return [normalize_value(v) for v in obj]
    if isinstance(obj, dict):
        return {str(k): normalize_value(obj[k]) for k in sorted(obj, key=str)}
    return obj


def load_dataset(path: Path) -> dict[str, Any]:
    """Read one dataset file fresh from disk."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise DatasetLoadError(f"Dataset file not found: {path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise DatasetLoadError(f"Cannot read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise DatasetLoadError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise DatasetLoadError(f"{path}: expected a JSON object of exports, got {type(data).__name__}")
    return data


@dataclass
class ParityResult:
    """Verdict for one dataset."""

    dataset: str
    match: bool
    reason: str | None = None
    line: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "dataset": self.dataset,
            "match": self.match,
            "reason": self.reason,
            "line": self.line,
        }


@dataclass
class ParityReport:
    results: list[ParityResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.match for r in self.results)

    @property
    def mismatches(self) -> list[ParityResult]:
        return [r for r in self.results if not r.match]


def _first_difference(base_text: str, working_text: str) -> tuple[int, str, str]:
    base_lines = base_text.split("\n")
    working_lines = working_text.split("\n")
    for i in range(min(len(base_lines), len(working_lines))):
        if base_lines[i] != working_lines[i]:
            return i + 1, base_lines[i], working_lines[i]
    i = min(len(base_lines), len(working_lines))
    base_line = base_lines[i] if i < len(base_lines) else "<end of data>"
    working_line = working_lines[i] if i < len(working_lines) else "<end of data>"
    return i + 1, base_line, working_line


def compare_exports(dataset: str, base: dict[str, Any], working: dict[str, Any]) -> ParityResult:
    """Compare two loaded datasets: export names, array lengths, then content."""
    base_keys = sorted(base)
    working_keys = sorted(working)
    if base_keys != working_keys:
        return ParityResult(
            dataset, False, f"Export key mismatch: base={base_keys}, working={working_keys}"
        )

    base_norm = normalize_value(base)
    working_norm = normalize_value(working)

    for key in base_keys:
        b, w = base_norm[key], working_norm[key]
        if isinstance(b, list) and isinstance(w, list) and len(b) != len(w):
            return ParityResult(
                dataset, False, f"Length mismatch in '{key}': base={len(b)}, working={len(w)}"
            )

    base_text = json.dumps(base_norm, indent=2, ensure_ascii=False)
    working_text = json.dumps(working_norm, indent=2, ensure_ascii=False)
    if base_text == working_text:
        return ParityResult(dataset, True)

    line, base_line, working_line = _first_difference(base_text, working_text)
    return ParityResult(
        dataset,
        False,
        f"Content differs at line {line}:\n  base:    {base_line.strip()}\n  working: {working_line.strip()}",
        line=line,
    )


def compare_dataset(dataset: str, base_dir: Path, working_dir: Path) -> ParityResult:
    base = load_dataset(Path(base_dir) / f"{dataset}.json")
    working = load_dataset(Path(working_dir) / f"{dataset}.json")
    return compare_exports(dataset, base, working)


def check_parity(datasets: Iterable[str], base_dir: Path, working_dir: Path) -> ParityReport:
    """Compare every tracked dataset. Raises DatasetLoadError on unreadable files."""
    report = ParityReport()
    for dataset in datasets:
        result = compare_dataset(dataset, base_dir, working_dir)
        if not result.match:
            logger.warning(f"Dataset '{dataset}' differs: {result.reason}")
        report.results.append(result)
    return report


def main(argv: list[str] | None = None) -> int:
    s = Settings.from_env()
    parser = argparse.ArgumentParser(description="Verify base and working seed datasets match.")
    parser.add_argument("datasets", nargs="*", help="dataset names (default: PARITY_DATASETS)")
    parser.add_argument("--base", default=s.base_data_dir, help="base dataset directory")
    parser.add_argument("--working", default=s.data_dir, help="working dataset directory")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.ERROR, format="%(levelname)s %(name)s: %(message)s")
    datasets = args.datasets or list(s.parity_datasets)

    print(f"Verifying {args.base} and {args.working} parity...\n")
    try:
        report = check_parity(datasets, Path(args.base), Path(args.working))
    except DatasetLoadError as e:
        print(f"ERROR: {e}")
        return EXIT_LOAD_ERROR

    for result in report.results:
        if result.match:
            print(f"OK       {result.dataset:<20} content matches")
        else:
            print(f"MISMATCH {result.dataset:<20} {result.reason}\n")

    print("\n" + "=" * 60)
    if report.ok:
        print("All datasets match.")
        return EXIT_OK
    print(f"{len(report.mismatches)} dataset(s) differ. Sync {args.base} and {args.working}.")
    return EXIT_MISMATCH


if __name__ == "__main__":
    sys.exit(main())
