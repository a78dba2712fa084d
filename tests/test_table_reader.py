from pathlib import Path

import numpy as np
import pytest

from allometric.csv_processor import (
    BiomassTableReader,
    FileAccessError,
    InvalidRangeError,
)

CSV_TEXT = """Species,DBH,Ptot
Pinus sylvestris L.,10.5,35.2
Pinus sylvestris L.,NA,40.0
Picea abies (L.) H. Karst.,22.0,210.4
Pinus sylvestris L.,31.0,
Pinus sylvestris L.,18.2,95.1
"""


def make_csv(tmp_path: Path, text: str = CSV_TEXT, name: str = "biomass.csv") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_reads_all_rows_with_header(tmp_path: Path):
    reader = BiomassTableReader(make_csv(tmp_path))
    df = reader.read_range()
    assert list(df.columns) == ["Species", "DBH", "Ptot"]
    assert len(df) == 5
    assert reader.get_total_rows() == 5


def test_missing_markers_load_as_nan(tmp_path: Path):
    df = BiomassTableReader(make_csv(tmp_path)).read_range()
    assert np.isnan(df.loc[1, "DBH"])
    assert np.isnan(df.loc[3, "Ptot"])


def test_range_is_one_based_and_inclusive(tmp_path: Path):
    with BiomassTableReader(make_csv(tmp_path)) as reader:
        df = reader.read_range(2, 4)
    assert len(df) == 3
    assert df.iloc[1]["Species"] == "Picea abies (L.) H. Karst."
    assert list(df.columns) == ["Species", "DBH", "Ptot"]


def test_end_line_past_end_is_clamped(tmp_path: Path):
    df = BiomassTableReader(make_csv(tmp_path)).read_range(4, 100)
    assert len(df) == 2


@pytest.mark.parametrize("start,end", [(0, None), (6, None), (3, 2), (1, -1)])
def test_invalid_ranges(tmp_path: Path, start, end):
    reader = BiomassTableReader(make_csv(tmp_path))
    with pytest.raises(InvalidRangeError):
        reader.read_range(start, end)


def test_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        BiomassTableReader(tmp_path / "nope.csv")


def test_directory_is_not_a_file(tmp_path: Path):
    with pytest.raises(FileAccessError):
        BiomassTableReader(tmp_path)

