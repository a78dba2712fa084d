import numpy as np
import pandas as pd
import pytest

from allometric.pipeline import (
    EXPLANATORY_COL,
    LOG_EXPLANATORY_COL,
    LOG_RESPONSE_COL,
    RESPONSE_COL,
    SPECIES_COL,
    DataQualityError,
    back_transform,
    log10_transform,
    max_back_transform_error,
)


def _ds(x, y) -> pd.DataFrame:
    return pd.DataFrame(
        {
            SPECIES_COL: ["Pinus sylvestris L."] * len(x),
            EXPLANATORY_COL: x,
            RESPONSE_COL: y,
        }
    )


def test_adds_base10_log_columns():
    out = log10_transform(_ds([10.0, 100.0, 31.6], [1000.0, 1.0, 0.5]))
    np.testing.assert_allclose(out[LOG_EXPLANATORY_COL], [1.0, 2.0, np.log10(31.6)])
    np.testing.assert_allclose(out[LOG_RESPONSE_COL], [3.0, 0.0, np.log10(0.5)])
    assert out[EXPLANATORY_COL].tolist() == [10.0, 100.0, 31.6]


def test_input_frame_untouched():
    ds = _ds([10.0, 20.0], [5.0, 6.0])
    log10_transform(ds)
    assert LOG_EXPLANATORY_COL not in ds.columns


@pytest.mark.parametrize(
    "x,y",
    [
        ([10.0, 0.0], [5.0, 6.0]),
        ([10.0, 20.0], [5.0, -1.0]),
        ([-3.0, 20.0], [5.0, 6.0]),
    ],
)
def test_non_positive_values_rejected(x, y):
    with pytest.raises(DataQualityError, match="non-positive value for log transform"):
        log10_transform(_ds(x, y))


def test_error_names_offending_positions_and_is_a_value_error():
    with pytest.raises(ValueError) as excinfo:
        log10_transform(_ds([1.0, 0.0, 2.0, -1.0], [1.0, 1.0, 1.0, 1.0]))
    assert "[1, 3]" in str(excinfo.value)


def test_empty_dataset_transforms_to_empty():
    out = log10_transform(_ds([], []))
    assert out.empty
    assert LOG_RESPONSE_COL in out.columns


def test_back_transform_reproduces_original_values():
    transformed = log10_transform(_ds([7.5, 12.0, 48.3], [14.2, 55.0, 1210.0]))
    reverse = back_transform(transformed)
    np.testing.assert_allclose(reverse["reverse_explanatory"], transformed[EXPLANATORY_COL])
    np.testing.assert_allclose(reverse["reverse_response"], transformed[RESPONSE_COL])
    assert max_back_transform_error(transformed) < 1e-12
