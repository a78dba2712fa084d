import json
import re
from pathlib import Path

from allometric.main import (
    AnalysisParams,
    LoadParams,
    build_manifest_dict,
    build_run_identity,
)
from allometric.utils import (
    canonical_json_dumps,
    utc_timestamp_seconds,
    write_manifest,
)


def test_build_manifest_dict_counts():
    counts = {"rows_in": 100, "rows_other_species": 60, "rows_missing": 5, "rows_out": 35}
    effective_params = {
        "load": {"data_path": "/test/biomass.csv", "start_line": None, "end_line": None},
        "analysis": {"species": "Pinus sylvestris L.", "verbose_filtering": False},
    }
    manifest = build_manifest_dict(
        "/test/biomass.csv",
        counts,
        effective_params,
        ("testhash", "fulltesthash"),
        ["plot-testhash-00-LOG_LOG_FIT.svg"],
    )

    assert manifest["version"] == "1"
    assert manifest["absolute_input_path"] == "/test/biomass.csv"
    assert manifest["total_input_rows"] == 100
    assert manifest["processed_row_count"] == 35
    assert manifest["excluded_row_count"] == 65
    assert "other_species_rows=60" in manifest["exclusion_reasons"]
    assert "missing_value_rows=5" in manifest["exclusion_reasons"]
    assert manifest["canonical_hash_short"] == "testhash"
    assert manifest["artifacts"]["plot_svgs"] == ["plot-testhash-00-LOG_LOG_FIT.svg"]


def test_utc_timestamp_format():
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z", utc_timestamp_seconds())


def test_run_identity_is_deterministic(tmp_path: Path):
    load = LoadParams(data_path=tmp_path / "biomass.csv")
    a = build_run_identity(load, AnalysisParams())
    b = build_run_identity(LoadParams(data_path=tmp_path / "biomass.csv"), AnalysisParams())
    assert a[1] == b[1] and a[2] == b[2]
    assert len(a[1]) == 8
    assert a[3]["analysis"]["species"] == "Pinus sylvestris L."
    assert a[3]["load"]["data_path"] == (tmp_path / "biomass.csv").resolve().as_posix()


def test_run_identity_changes_with_species(tmp_path: Path):
    load = LoadParams(data_path=tmp_path / "biomass.csv")
    a = build_run_identity(load, AnalysisParams(species="Pinus sylvestris L."))
    b = build_run_identity(load, AnalysisParams(species="Picea abies (L.) H. Karst."))
    assert a[1] != b[1]


def test_canonical_json_is_key_order_independent():
    assert canonical_json_dumps({"b": 1, "a": "ä"}) == canonical_json_dumps({"a": "ä", "b": 1})


def test_write_manifest_roundtrip(tmp_path: Path):
    path = tmp_path / "manifest-x.json"
    write_manifest(path, {"species": "Pinus sylvestris L.", "n": 3})
    assert json.loads(path.read_text(encoding="utf-8")) == {
        "species": "Pinus sylvestris L.",
        "n": 3,
    }
