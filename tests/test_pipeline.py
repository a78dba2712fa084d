import numpy as np
import pandas as pd
import pytest

from allometric.pipeline import (
    EXPLANATORY_COL,
    RESPONSE_COL,
    SPECIES_COL,
    DataQualityError,
    EmptyInputError,
    InsufficientDataError,
    PipelineOutputs,
    run_pipeline,
)

PINE = "Pinus sylvestris L."


def make_raw(dbh, ptot, species=PINE, extra_other=True) -> pd.DataFrame:
    rows = pd.DataFrame(
        {SPECIES_COL: [species] * len(dbh), EXPLANATORY_COL: dbh, RESPONSE_COL: ptot}
    )
    if extra_other:
        other = pd.DataFrame(
            {
                SPECIES_COL: ["Betula pendula Roth"] * 3,
                EXPLANATORY_COL: [5.0, -1.0, 0.0],
                RESPONSE_COL: [3.0, 2.0, 0.0],
            }
        )
        rows = pd.concat([other, rows], ignore_index=True)
    return rows


def test_end_to_end_square_law():
    dbh = [10.0, 20.0, 30.0, 40.0]
    raw = make_raw(dbh, [d**2 for d in dbh])

    out = run_pipeline(raw, PINE)

    assert isinstance(out, PipelineOutputs)
    assert out.species == PINE
    assert len(out.dataset) == 4
    assert out.fit.slope == pytest.approx(2.0, abs=1e-9)
    assert out.fit.intercept == pytest.approx(0.0, abs=1e-9)
    assert out.equation.predict_original(50.0) == pytest.approx(2500.0, rel=1e-9)
    assert out.error.rmse_log == pytest.approx(0.0, abs=1e-9)
    assert out.error.n_obs == 4


def test_noisy_power_law_recovers_parameters():
    rng = np.random.default_rng(42)
    dbh = rng.uniform(5.0, 60.0, 40)
    ptot = 0.05 * dbh**2.4 * 10 ** rng.normal(0.0, 0.05, 40)

    out = run_pipeline(make_raw(dbh, ptot), PINE)

    assert out.fit.slope == pytest.approx(2.4, abs=0.15)
    assert out.fit.intercept == pytest.approx(np.log10(0.05), abs=0.2)
    assert 0.0 < out.error.rmse_log < 0.1
    # residuals line up with the filtered rows
    assert len(out.fit.residuals) == len(out.transformed) == 40
    # the in-sample error uses the fitted line, so it equals the residual RMS
    assert out.error.rmse_log == pytest.approx(
        np.sqrt(np.mean(out.fit.residuals**2)), rel=1e-9
    )


def test_zero_dbh_fails_at_transform():
    raw = make_raw([0.0, 10.0, 20.0], [1.0, 100.0, 400.0])
    with pytest.raises(DataQualityError):
        run_pipeline(raw, PINE)


def test_missing_species_is_empty_input():
    raw = make_raw([10.0, 20.0], [100.0, 400.0])
    with pytest.raises(EmptyInputError, match="empty observation set"):
        run_pipeline(raw, "Quercus robur L.")


def test_single_tree_is_insufficient():
    raw = make_raw([10.0], [100.0])
    with pytest.raises(InsufficientDataError):
        run_pipeline(raw, PINE)


def test_same_dbh_for_all_trees_is_degenerate():
    raw = make_raw([25.0, 25.0, 25.0], [300.0, 320.0, 310.0], extra_other=False)
    with pytest.raises(InsufficientDataError, match="identical"):
        run_pipeline(raw, PINE)


def test_missing_rows_are_skipped_not_fatal():
    raw = make_raw([10.0, np.nan, 20.0, 30.0], [100.0, 50.0, np.nan, 900.0])
    out = run_pipeline(raw, PINE)
    assert out.dataset[EXPLANATORY_COL].tolist() == [10.0, 30.0]
    assert out.fit.slope == pytest.approx(2.0)


def test_three_tree_square_law_scenario():
    raw = make_raw([1.0, 10.0, 100.0], [1.0, 100.0, 10000.0], extra_other=False)

    out = run_pipeline(raw, PINE)

    assert out.fit.slope == pytest.approx(2.0, abs=1e-9)
    assert out.fit.intercept == pytest.approx(0.0, abs=1e-9)
    assert out.equation.predict_original(50.0) == pytest.approx(2500.0, rel=1e-9)
    assert out.error.rmse_log == pytest.approx(0.0, abs=1e-9)
    assert out.error.rmse_original_units == pytest.approx(1.0)
