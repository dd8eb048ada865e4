"""Unit tests for the CSV unit import script."""

from pathlib import Path

import pytest

from scripts.import_units import read_units


def test_reads_serials_and_secrets(tmp_path: Path) -> None:
    """Rows map to unit dicts and blank secrets become None."""
    path = tmp_path / "units.csv"
    path.write_text("serial_number,secret\nA-1, 1234 \nA-2,\n,9999\n", encoding="utf-8")

    assert read_units(path) == [
        {"serial_number": "A-1", "secret": "1234"},
        {"serial_number": "A-2", "secret": None},
    ]


def test_serial_only_file(tmp_path: Path) -> None:
    """The secret column is optional."""
    path = tmp_path / "units.csv"
    path.write_text("serial_number\nB-1\n", encoding="utf-8")

    assert read_units(path) == [{"serial_number": "B-1", "secret": None}]


def test_missing_serial_column(tmp_path: Path) -> None:
    """Files without serial numbers are refused."""
    path = tmp_path / "units.csv"
    path.write_text("pin\n1234\n", encoding="utf-8")

    with pytest.raises(ValueError):
        read_units(path)
