"""
Allometry pipeline - pure functional stages.

Stages, in order:
- filter_species()
- log10_transform()
- fit_ols()
- build_equation()
- quantify_error()

Each stage takes explicit inputs and returns a new value; inputs are never mutated.
run_pipeline() composes the stages and aborts on the first error.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# Canonical Observation schema
SPECIES_COL = "species"
EXPLANATORY_COL = "explanatory"
RESPONSE_COL = "response"
LOG_EXPLANATORY_COL = "log_explanatory"
LOG_RESPONSE_COL = "log_response"

OBSERVATION_COLUMNS = [SPECIES_COL, EXPLANATORY_COL, RESPONSE_COL]


class DomainError(ValueError):
    """Base class for pipeline precondition failures."""

    category = "domain error"

    def __str__(self) -> str:
        detail = super().__str__()
        return f"{self.category}: {detail}" if detail else self.category


class DataQualityError(DomainError):
    """Raised when a value cannot be log-transformed."""

    category = "non-positive value for log transform"


class InsufficientDataError(DomainError):
    """Raised when the regression has too few points or no spread in x."""

    category = "insufficient or degenerate data for regression"


class EmptyInputError(DomainError):
    """Raised when a stage receives zero observations."""

    category = "empty observation set"


class DomainInputError(DomainError):
    """Raised when predict_original() gets a non-positive explanatory value."""

    category = "non-positive explanatory value"


class FilterResult:
    """Container for filter diagnostics: row counters, warnings, metrics and timing."""

    def __init__(self, label: Optional[str] = None) -> None:
        self.label: Optional[str] = label

        self.original_rows: int = 0
        self.filtered_rows: int = 0
        self.excluded_rows: int = 0

        self.warnings: list[str] = []
        self.metrics: dict[str, int | float | str] = {}

        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.elapsed_ms: Optional[float] = None

    def start(self) -> None:
        self.started_at = time.perf_counter()

    def stop(self) -> None:
        self.finished_at = time.perf_counter()
        if self.started_at is not None:
            self.elapsed_ms = (self.finished_at - self.started_at) * 1000.0

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)
        logger.warning(message)

    def add_metric(self, name: str, value: int | float | str) -> None:
        self.metrics[name] = value

    def summarize(self) -> str:
        """Produce a concise summary string for diagnostics."""
        lbl = f"{self.label} " if self.label else ""
        parts = [f"{lbl}result: {self.original_rows} → {self.filtered_rows}"]
        if self.excluded_rows:
            parts.append(f"excluded_rows={self.excluded_rows}")
        if self.elapsed_ms is not None:
            parts.append(f"elapsed_ms={self.elapsed_ms:.1f}")
        if self.metrics:
            parts.append(f"metrics={self.metrics}")
        return " | ".join(parts)


@dataclass(frozen=True, eq=False)
class FitResult:
    slope: float
    intercept: float
    # Aligned by position with the transformed rows passed to fit_ols()
    residuals: np.ndarray
    standard_error: float
    n_obs: int


@dataclass(frozen=True)
class AllometricEquation:
    """
    Power-law relation recovered from the log10-log10 fit.

        log10(response) = slope * log10(explanatory) + intercept
        response        = 10**intercept * explanatory**slope
    """

    slope: float
    intercept: float

    @property
    def multiplier(self) -> float:
        """Power-law coefficient in original units (10**intercept)."""
        return float(np.power(10.0, self.intercept))

    def predict_log(self, explanatory_log10):
        """Predicted log10 response for log10 explanatory value(s); scalars or arrays."""
        return self.slope * explanatory_log10 + self.intercept

    def predict_original(self, explanatory):
        """
        Predicted response in original units for explanatory value(s) > 0.
        Raises DomainInputError for any non-positive (or NaN) input.
        """
        values = np.asarray(explanatory, dtype=float)
        if not np.all(values > 0):
            raise DomainInputError(f"explanatory must be > 0, got {explanatory!r}")
        predicted = np.power(10.0, self.predict_log(np.log10(values)))
        if predicted.ndim == 0:
            return float(predicted)
        return predicted

    def describe(
        self, explanatory_label: str = "DBH", response_label: str = "Ptot"
    ) -> str:
        """Render the equation in log10 form and in power-law form."""
        sign = "+" if self.intercept >= 0 else "-"
        log_form = (
            f"log10({response_label}) = {self.slope:.4f} * log10({explanatory_label}) "
            f"{sign} {abs(self.intercept):.4f}"
        )
        power_form = (
            f"{response_label} = {self.multiplier:.6g} * "
            f"{explanatory_label}^{self.slope:.4f}"
        )
        return f"{log_form}\n{power_form}"


@dataclass(frozen=True, eq=False)
class ErrorReport:
    # predicted log10 response - observed log10 response, aligned by position
    per_observation_difference: np.ndarray
    rmse_log: float
    rmse_original_units: float
    mean_difference: float
    n_obs: int


@dataclass(frozen=True, eq=False)
class PipelineOutputs:
    species: str
    dataset: pd.DataFrame
    transformed: pd.DataFrame
    fit: FitResult
    equation: AllometricEquation
    error: ErrorReport


def _readonly(values: np.ndarray) -> np.ndarray:
    arr = np.array(values, dtype=float, copy=True)
    arr.setflags(write=False)
    return arr


def _require_columns(df: pd.DataFrame, required: Sequence[str]) -> None:
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(
            f"Missing required columns: {', '.join(missing)}. Found columns: {list(df.columns)}"
        )


def list_species(raw: pd.DataFrame) -> list[str]:
    """Sorted unique, non-missing species labels present in a raw table."""
    _require_columns(raw, [SPECIES_COL])
    labels = raw[SPECIES_COL].dropna().astype(str).unique()
    return sorted(labels)


def filter_species(
    raw: pd.DataFrame, species: str, verbose: bool = False
) -> pd.DataFrame:
    """
    Select one species and drop rows with a missing explanatory or response value.

    Behavior:
    - Species match is an exact, case-sensitive string comparison.
    - Only the Observation columns are kept; row order is preserved and the index
      is reset to 0..n-1 so downstream arrays align by position.
    - Non-positive values are NOT removed here; log10_transform() rejects them.
    - An empty result is valid and never raises.

    Counts are recorded in result.attrs["filter_counts"].
    """
    result = FilterResult(label="filter_species")
    result.start()
    result.original_rows = len(raw)

    _require_columns(raw, OBSERVATION_COLUMNS)

    mask_species = raw[SPECIES_COL].eq(species)
    mask_present = raw[EXPLANATORY_COL].notna() & raw[RESPONSE_COL].notna()

    rows_other_species = int((~mask_species).sum())
    rows_missing = int((mask_species & ~mask_present).sum())

    df_out = raw.loc[mask_species & mask_present, OBSERVATION_COLUMNS].reset_index(
        drop=True
    )
    df_out.attrs = {
        "filter_counts": {
            "rows_in": int(len(raw)),
            "rows_other_species": rows_other_species,
            "rows_missing": rows_missing,
            "rows_out": int(len(df_out)),
        }
    }

    result.filtered_rows = len(df_out)
    result.excluded_rows = result.original_rows - result.filtered_rows
    result.add_metric("species", species)
    result.add_metric("rows_other_species", rows_other_species)
    result.add_metric("rows_missing", rows_missing)
    if df_out.empty:
        result.add_warning(f"No usable rows for species {species!r}")
    result.stop()

    if verbose:
        logger.info(result.summarize())

    return df_out


def log10_transform(ds: pd.DataFrame) -> pd.DataFrame:
    """
    Add log_explanatory and log_response (base 10) to a filtered dataset.

    Raises DataQualityError, without producing any output, when an explanatory or
    response value is zero, negative or non-finite.
    """
    _require_columns(ds, [EXPLANATORY_COL, RESPONSE_COL])

    x = pd.to_numeric(ds[EXPLANATORY_COL], errors="coerce").to_numpy(dtype=float)
    y = pd.to_numeric(ds[RESPONSE_COL], errors="coerce").to_numpy(dtype=float)

    bad = ~(np.isfinite(x) & (x > 0) & np.isfinite(y) & (y > 0))
    if bad.any():
        positions = np.flatnonzero(bad)
        shown = ", ".join(str(int(p)) for p in positions[:10])
        more = f" (+{len(positions) - 10} more)" if len(positions) > 10 else ""
        raise DataQualityError(
            f"{len(positions)} row(s) with non-positive or non-finite "
            f"{EXPLANATORY_COL}/{RESPONSE_COL} at positions [{shown}]{more}"
        )

    out = ds.copy()
    out[LOG_EXPLANATORY_COL] = np.log10(x)
    out[LOG_RESPONSE_COL] = np.log10(y)
    return out


def back_transform(transformed: pd.DataFrame) -> pd.DataFrame:
    """
    Return a copy with reverse_explanatory / reverse_response = 10**log value.
    Values should reproduce the original columns.
    """
    _require_columns(transformed, [LOG_EXPLANATORY_COL, LOG_RESPONSE_COL])
    out = transformed.copy()
    out["reverse_explanatory"] = np.power(10.0, out[LOG_EXPLANATORY_COL])
    out["reverse_response"] = np.power(10.0, out[LOG_RESPONSE_COL])
    return out


def max_back_transform_error(transformed: pd.DataFrame) -> float:
    """Worst relative error between back-transformed and original values (0.0 when empty)."""
    reversed_df = back_transform(transformed)
    if reversed_df.empty:
        return 0.0
    errs = []
    for orig, rev in (
        (EXPLANATORY_COL, "reverse_explanatory"),
        (RESPONSE_COL, "reverse_response"),
    ):
        o = reversed_df[orig].to_numpy(dtype=float)
        r = reversed_df[rev].to_numpy(dtype=float)
        errs.append(np.max(np.abs(r - o) / np.abs(o)))
    return float(max(errs))


def _as_xy(points: Union[pd.DataFrame, Sequence, np.ndarray]) -> tuple[np.ndarray, np.ndarray]:
    if isinstance(points, pd.DataFrame):
        _require_columns(points, [LOG_EXPLANATORY_COL, LOG_RESPONSE_COL])
        x = points[LOG_EXPLANATORY_COL].to_numpy(dtype=float)
        y = points[LOG_RESPONSE_COL].to_numpy(dtype=float)
        return x, y
    arr = np.asarray(points, dtype=float)
    if arr.size == 0:
        return np.empty(0), np.empty(0)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise TypeError(f"points must be an (n, 2) array of (x, y) pairs, got shape {arr.shape}")
    return arr[:, 0].copy(), arr[:, 1].copy()


def fit_ols(points: Union[pd.DataFrame, Sequence, np.ndarray]) -> FitResult:
    """
    Closed-form simple linear regression of y on x.

    Args:
        points: a transformed frame (log_explanatory -> x, log_response -> y) or an
            (n, 2) array-like of (x, y) pairs.

    Returns:
        FitResult with slope, intercept, residuals y - (slope*x + intercept) and
        standard_error = sqrt(SSR / (n - 2)). With exactly two points the line is
        exact and standard_error is reported as 0.0.

    Raises:
        InsufficientDataError: fewer than two points, or all x identical.
    """
    x, y = _as_xy(points)
    n = int(len(x))
    if n < 2:
        raise InsufficientDataError(f"need at least 2 points, got {n}")
    if not (np.isfinite(x).all() and np.isfinite(y).all()):
        raise InsufficientDataError("points contain non-finite values")

    x_mean = float(np.mean(x))
    y_mean = float(np.mean(y))
    dx = x - x_mean
    sxx = float(np.sum(dx * dx))
    if np.all(x == x[0]) or sxx == 0.0:
        raise InsufficientDataError("all x values are identical (zero variance)")

    slope = float(np.sum(dx * (y - y_mean)) / sxx)
    intercept = float(y_mean - slope * x_mean)
    residuals = y - (slope * x + intercept)

    if n > 2:
        standard_error = float(np.sqrt(np.sum(residuals**2) / (n - 2)))
    else:
        logger.warning("Only 2 points supplied to fit_ols; standard_error reported as 0.0")
        standard_error = 0.0

    return FitResult(
        slope=slope,
        intercept=intercept,
        residuals=_readonly(residuals),
        standard_error=standard_error,
        n_obs=n,
    )


def build_equation(fit: FitResult) -> AllometricEquation:
    return AllometricEquation(slope=fit.slope, intercept=fit.intercept)


def quantify_error(
    eq: AllometricEquation, observed: pd.DataFrame
) -> ErrorReport:
    """
    Compare the equation's log10 predictions with observed log10 responses.

    difference_i = eq.predict_log(log_explanatory_i) - log_response_i
    rmse_log     = sqrt(mean(difference_i ** 2))
    rmse_original_units = 10 ** rmse_log  (inf when that overflows a float)

    Raises EmptyInputError when observed has no rows.
    """
    _require_columns(observed, [LOG_EXPLANATORY_COL, LOG_RESPONSE_COL])
    n = int(len(observed))
    if n == 0:
        raise EmptyInputError("no observations supplied to quantify_error")

    x_log = observed[LOG_EXPLANATORY_COL].to_numpy(dtype=float)
    y_log = observed[LOG_RESPONSE_COL].to_numpy(dtype=float)
    difference = eq.predict_log(x_log) - y_log

    rmse_log = float(np.sqrt(np.mean(np.square(difference))))
    return ErrorReport(
        per_observation_difference=_readonly(difference),
        rmse_log=rmse_log,
        rmse_original_units=float(np.power(10.0, rmse_log)),
        mean_difference=float(np.mean(difference)),
        n_obs=n,
    )


def run_pipeline(
    raw: pd.DataFrame, species: str, verbose: bool = False
) -> PipelineOutputs:
    """
    Filter -> Transform -> Fit -> Equation -> Error-quantify for one species.
    Raises the first stage error encountered; no partial outputs are returned.
    """
    dataset = filter_species(raw, species, verbose=verbose)
    if dataset.empty:
        raise EmptyInputError(f"no rows remain after filtering for species {species!r}")
    logger.info(f"Filtered {len(raw)} raw rows to {len(dataset)} rows of {species!r}")

    transformed = log10_transform(dataset)
    fit = fit_ols(transformed)
    logger.info(
        f"OLS fit: slope={fit.slope:.6g} intercept={fit.intercept:.6g} "
        f"se={fit.standard_error:.6g} n={fit.n_obs}"
    )

    equation = build_equation(fit)
    error = quantify_error(equation, transformed)
    logger.info(
        f"RMSE: log10={error.rmse_log:.6g} original_units={error.rmse_original_units:.6g}"
    )

    return PipelineOutputs(
        species=species,
        dataset=dataset,
        transformed=transformed,
        fit=fit,
        equation=equation,
        error=error,
    )
