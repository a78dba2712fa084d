#!/usr/bin/env python3
"""
Allometric equation calculator.

Outer layer around the pure stages in pipeline.py:
- load_dataset()          CSV slice -> raw Observation table
- run_pipeline()          filter -> log10 transform -> OLS -> equation -> RMSE
- regression_analysis()   statsmodels diagnostics, untransformed vs log10 model
- render_plots()          distributions, log-log fit and residual Q-Q plots
- assemble_text_report()  plain-text summary of a run

main() is the CLI; _orchestrate() runs one analysis and writes the report,
manifest and plots into output/<timestamp>/.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

# Select a non-interactive backend before pyplot is imported anywhere.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy import stats

# Support both package and script execution modes
try:
    # When run as a package: python -m allometric.main
    from .csv_processor import BiomassTableReader, TableReadError
    from .pipeline import (
        EXPLANATORY_COL,
        LOG_EXPLANATORY_COL,
        LOG_RESPONSE_COL,
        RESPONSE_COL,
        SPECIES_COL,
        FitResult,
        PipelineOutputs,
        list_species,
        max_back_transform_error,
        run_pipeline,
    )
    from .utils import (
        build_effective_parameters,
        canonical_json_hash,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_manifest,
        write_text_report,
    )
except ImportError:
    # When run directly: python allometric/main.py
    from csv_processor import BiomassTableReader, TableReadError
    from pipeline import (
        EXPLANATORY_COL,
        LOG_EXPLANATORY_COL,
        LOG_RESPONSE_COL,
        RESPONSE_COL,
        SPECIES_COL,
        FitResult,
        PipelineOutputs,
        list_species,
        max_back_transform_error,
        run_pipeline,
    )
    from utils import (
        build_effective_parameters,
        canonical_json_hash,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_manifest,
        write_text_report,
    )

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

DEFAULT_SPECIES = "Pinus sylvestris L."
# Raw column name -> canonical Observation column
DEFAULT_HEADER_MAP: dict[str, str] = {
    "Species": SPECIES_COL,
    "DBH": EXPLANATORY_COL,
    "Ptot": RESPONSE_COL,
}


@dataclass
class LoadParams:
    """
    Parameters used when loading the biomass table.

    Attributes:
        data_path: Path to the CSV file to read.
        start_line: 1-based inclusive first data row (header excluded) or None.
        end_line: 1-based inclusive last data row or None to read to the end.
        header_map: Mapping of input header name -> canonical column name.
            - Matching is case-insensitive and whitespace-trimmed.
            - Two keys mapping to the same target, or a rename that would duplicate
              an existing column, raise ValueError.
    """

    data_path: Optional[Path]
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    header_map: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_HEADER_MAP)
    )


@dataclass
class AnalysisParams:
    species: str = DEFAULT_SPECIES
    verbose_filtering: bool = False


class PlotKind(Enum):
    """One SVG per kind; see render_outputs()."""

    DISTRIBUTION_RAW = "distribution_raw"
    DISTRIBUTION_LOG = "distribution_log"
    LOG_LOG_FIT = "log_log_fit"
    QQ_ORIGINAL = "qq_original"
    QQ_LOG = "qq_log"


@dataclass
class PlotParams:
    """
    Plot selection and optional axis bounds.

    x_min/x_max/y_min/y_max are applied via plt.xlim/plt.ylim when set; one-sided
    limits leave the other side automatic. bins only affects distribution plots
    (None -> 30 for explanatory, 50 for response).
    """

    kind: PlotKind = PlotKind.LOG_LOG_FIT
    x_min: Optional[float] = None
    x_max: Optional[float] = None
    y_min: Optional[float] = None
    y_max: Optional[float] = None
    bins: Optional[int] = None


def get_default_params() -> tuple[LoadParams, AnalysisParams, List[PlotParams]]:
    """
    Policy defaults: the whole table, the default species and one plot per PlotKind.
    """
    load = LoadParams(
        data_path=None,
        start_line=None,
        end_line=None,
        header_map=dict(DEFAULT_HEADER_MAP),
    )
    analysis = AnalysisParams(species=DEFAULT_SPECIES, verbose_filtering=False)
    plot_defaults = [PlotParams(kind=kind) for kind in PlotKind]
    return load, analysis, plot_defaults


def apply_header_map(df: pd.DataFrame, header_map: Dict[str, str]) -> pd.DataFrame:
    """
    Rename columns through header_map (case-insensitive, trimmed keys).

    Raises ValueError when two keys target the same name or when a rename would
    produce duplicate column names. Keys that match no column are logged as a warning.
    """
    if not header_map:
        return df

    value_to_keys: dict[str, list[str]] = {}
    for k, v in header_map.items():
        value_to_keys.setdefault(v.strip(), []).append(k)
    duplicate_targets = {t: ks for t, ks in value_to_keys.items() if len(ks) > 1}
    if duplicate_targets:
        parts = [f"target '{t}' specified by keys {ks}" for t, ks in duplicate_targets.items()]
        raise ValueError(
            "Conflicting --header-map targets specified (multiple OLD map to same NEW): "
            + "; ".join(parts)
        )

    lower_map = {k.strip().lower(): v.strip() for k, v in header_map.items()}
    original_columns = [str(c) for c in df.columns]

    remap: dict[str, str] = {}
    for col in original_columns:
        mapped = lower_map.get(col.strip().lower())
        if mapped and mapped != col:
            remap[col] = mapped

    new_names = [remap.get(col, col) for col in original_columns]
    seen: set[str] = set()
    dup_targets: set[str] = set()
    for name in new_names:
        if name in seen:
            dup_targets.add(name)
        seen.add(name)
    if dup_targets:
        conflicts: dict[str, list[str]] = {}
        for col in original_columns:
            target = remap.get(col, col)
            if target in dup_targets:
                conflicts.setdefault(target, []).append(col)
        msg_parts = [f"'{tgt}' <= columns {cols}" for tgt, cols in conflicts.items()]
        raise ValueError(
            "Header mapping would produce duplicate column names after rename: "
            + "; ".join(msg_parts)
        )

    if remap:
        df = df.rename(columns=remap)
        logger.info(f"Applied header mappings: {remap}")

    found_lower = {c.strip().lower() for c in original_columns}
    missing = [k for k in header_map if k.strip().lower() not in found_lower]
    # Keys whose target already exists are expected to be absent
    missing = [k for k in missing if header_map[k].strip() not in original_columns]
    if missing:
        logger.warning(f"Header map keys not found in CSV columns: {missing}")

    return df


def load_dataset(params: LoadParams) -> pd.DataFrame:
    """
    Load a CSV slice as a raw Observation table (species / explanatory / response
    plus any other columns in the file). No filtering happens here.

    explanatory and response are coerced to numeric; cells that are present but
    not numbers become NaN and are counted in a warning.
    """
    if params.data_path is None:
        raise ValueError("No data path given")
    data_path = Path(params.data_path)
    if not data_path.exists():
        raise FileNotFoundError(f"CSV file not found at {data_path}")

    with BiomassTableReader(data_path) as reader:
        df_raw = reader.read_range(params.start_line, params.end_line)

    df_raw = apply_header_map(df_raw, params.header_map)
    if df_raw.empty:
        raise ValueError("No data found in the specified range")

    for col in (EXPLANATORY_COL, RESPONSE_COL):
        if col not in df_raw.columns:
            continue
        numeric = pd.to_numeric(df_raw[col], errors="coerce")
        n_unparseable = int((numeric.isna() & df_raw[col].notna()).sum())
        if n_unparseable:
            logger.warning(
                f"{n_unparseable} non-numeric value(s) in column '{col}' treated as missing"
            )
        df_raw[col] = numeric

    return df_raw


def _variable_labels(header_map: Dict[str, str]) -> tuple[str, str]:
    """(explanatory_label, response_label) taken from the raw names in header_map."""
    inverse = {v: k for k, v in header_map.items()}
    return (
        inverse.get(EXPLANATORY_COL, EXPLANATORY_COL),
        inverse.get(RESPONSE_COL, RESPONSE_COL),
    )


def regression_analysis(
    transformed: pd.DataFrame, fit: Optional[FitResult] = None
) -> Dict[str, Dict[str, Any]]:
    """
    Fit the untransformed and log10 simple regressions with statsmodels.

    Keys:
      - 'original': response ~ explanatory
      - 'log10':    log_response ~ log_explanatory

    Each entry holds R-squared, adjusted R-squared, F-statistic and p-value,
    coefficients, standard errors, confidence intervals, residuals, residual
    standard error, AIC/BIC, in-sample RMSE, the ANOVA table, a Shapiro-Wilk test
    of the residuals and the statsmodels summary. A model that cannot be fit is
    recorded under '<key>_error' instead.

    When `fit` is given, 'log10' also carries `coefficients_agree`: whether the
    statsmodels coefficients match the closed-form fit.
    """

    def _stats_dict(res) -> Dict[str, Any]:
        # An exact two-point line leaves no residual degrees of freedom
        has_dof = res.df_resid > 0
        return {
            "R-squared": res.rsquared,
            "Adj. R-squared": res.rsquared_adj if has_dof else None,
            "F-statistic": res.fvalue if has_dof else None,
            "p-value": res.f_pvalue if has_dof else None,
            "Coefficients": res.params,
            "Standard Errors": res.bse,
            "Confidence Intervals": res.conf_int(),
            "Residuals": res.resid,
            "Residual SE": float(np.sqrt(res.mse_resid)) if has_dof else None,
            "aic": float(res.aic),
            "bic": float(res.bic),
            "RMSE": float(np.sqrt(np.mean(np.square(res.resid)))),
            "n_obs": int(res.nobs),
        }

    specs = {
        "original": (RESPONSE_COL, EXPLANATORY_COL),
        "log10": (LOG_RESPONSE_COL, LOG_EXPLANATORY_COL),
    }
    diagnostics: Dict[str, Dict[str, Any]] = {}
    for key, (y_col, x_col) in specs.items():
        try:
            res = smf.ols(f"{y_col} ~ {x_col}", data=transformed).fit()
            node = _stats_dict(res)
        except Exception as e:
            diagnostics[f"{key}_error"] = {"message": str(e)}
            logger.warning(f"Regression '{key}' failed: {e}")
            continue

        try:
            node["anova"] = sm.stats.anova_lm(res, typ=1)
        except Exception as e:
            node["anova_exception"] = str(e)

        # shapiro needs n >= 3
        resid = np.asarray(res.resid, dtype=float)
        if len(resid) >= 3 and np.ptp(resid) > 0:
            w_stat, p_val = stats.shapiro(resid)
            node["shapiro_W"] = float(w_stat)
            node["shapiro_p"] = float(p_val)
        else:
            node["shapiro_W"] = None
            node["shapiro_p"] = None

        try:
            node["Summary"] = res.summary()
        except Exception as e:
            node["summary_exception"] = str(e)

        diagnostics[key] = node

    if fit is not None and "log10" in diagnostics:
        params = diagnostics["log10"]["Coefficients"]
        diagnostics["log10"]["coefficients_agree"] = bool(
            np.isclose(params["Intercept"], fit.intercept, rtol=1e-9, atol=1e-12)
            and np.isclose(params[LOG_EXPLANATORY_COL], fit.slope, rtol=1e-9, atol=1e-12)
        )

    return diagnostics


def build_model_comparison(
    diag: dict, explanatory_label: str = "DBH", response_label: str = "Ptot"
) -> tuple[str, str]:
    """
    Build the untransformed-vs-log10 comparison table; return (best_label, table_text).

    Columns: Model, R², Adj R², Resid SE, Shapiro p. Missing or non-finite values
    render as a centered "-". The preferred model is the one whose residuals are
    closest to normal (higher Shapiro-Wilk p), ties broken by adjusted R².
    Residual SE is in each model's own response units and is not comparable
    across rows.
    """

    def _fmt_fixed(x: Optional[float], width: int, decimals: int) -> str:
        s = "-"
        if x is not None:
            try:
                xf = float(x)
                if math.isfinite(xf):
                    s = f"{xf:.{decimals}f}"
            except (TypeError, ValueError):
                s = "-"
        return s.center(width) if s == "-" else s.rjust(width)

    rows_spec = [
        (f"Untransformed ({response_label} ~ {explanatory_label})", "original"),
        (f"Log10 (log {response_label} ~ log {explanatory_label})", "log10"),
    ]

    raw_rows = []
    for label, key in rows_spec:
        node = diag.get(key) or {}
        raw_rows.append(
            (
                label,
                node.get("R-squared"),
                node.get("Adj. R-squared"),
                node.get("Residual SE"),
                node.get("shapiro_p"),
            )
        )

    def _key(row):
        shapiro_p = row[4] if row[4] is not None and np.isfinite(row[4]) else -1.0
        adj = row[2] if row[2] is not None and np.isfinite(row[2]) else -np.inf
        return (shapiro_p, adj)

    best_label = max(raw_rows, key=_key)[0]

    headers = ("Model", "R²", "Adj R²", "Resid SE", "Shapiro p")
    width = 12
    table_rows = [
        (
            r[0],
            _fmt_fixed(r[1], width, 5),
            _fmt_fixed(r[2], width, 5),
            _fmt_fixed(r[3], width, 5),
            _fmt_fixed(r[4], width, 4),
        )
        for r in raw_rows
    ]
    col0_width = max(len(headers[0]), max(len(r[0]) for r in table_rows))
    header_line = f"{headers[0]:<{col0_width}}  " + "  ".join(
        f"{h:>{width}}" for h in headers[1:]
    )

    lines = ["Model Comparison (untransformed vs log10)", header_line, "-" * len(header_line)]
    for r in table_rows:
        lines.append(f"{r[0]:<{col0_width}}  " + "  ".join(r[1:]))
    lines.append("")
    lines.append(f"Residuals closest to normal: {best_label}")
    lines.append("")
    return best_label, "\n".join(lines)


def _apply_limits(plot_params: PlotParams) -> None:
    if plot_params.x_min is not None or plot_params.x_max is not None:
        plt.xlim(left=plot_params.x_min, right=plot_params.x_max)
    if plot_params.y_min is not None or plot_params.y_max is not None:
        plt.ylim(bottom=plot_params.y_min, top=plot_params.y_max)


def render_outputs(
    outputs: PipelineOutputs,
    plot_params: PlotParams,
    output_svg: str = "plot.svg",
    diagnostics: Optional[Dict[str, Dict[str, Any]]] = None,
    labels: tuple[str, str] = ("DBH", "Ptot"),
) -> str:
    """
    Render one figure for plot_params.kind and save it as SVG; returns the path.

    Kinds:
      - DISTRIBUTION_RAW / DISTRIBUTION_LOG: histograms of both variables before /
        after the log10 transform.
      - LOG_LOG_FIT: log10 scatter with the fitted line from outputs.equation.
      - QQ_ORIGINAL / QQ_LOG: normal Q-Q plot of the residuals of the untransformed
        model (from diagnostics) or of the log10 fit (from outputs.fit).

    Axis limits from plot_params apply to single-axes plots only.
    """
    if plot_params is None:
        raise TypeError("render_outputs requires plot_params (PlotParams)")
    x_label, y_label = labels
    df = outputs.transformed
    kind = plot_params.kind

    if kind in (PlotKind.DISTRIBUTION_RAW, PlotKind.DISTRIBUTION_LOG):
        is_log = kind is PlotKind.DISTRIBUTION_LOG
        cols = (
            (LOG_EXPLANATORY_COL, LOG_RESPONSE_COL)
            if is_log
            else (EXPLANATORY_COL, RESPONSE_COL)
        )
        color = "#1C86EE" if is_log else "#006400"
        default_bins = (30, 50)
        fig, axes = plt.subplots(1, 2, figsize=(12, 5))
        for ax, col, label, nbins in zip(axes, cols, labels, default_bins):
            ax.hist(df[col], bins=plot_params.bins or nbins, color=color)
            ax.set_xlabel(f"log10 {label}" if is_log else label)
            ax.set_ylabel("count")
        fig.suptitle(f"{outputs.species}: {'log10' if is_log else 'raw'} distributions")
    elif kind is PlotKind.LOG_LOG_FIT:
        fig = plt.figure(figsize=(10, 6))
        plt.scatter(
            df[LOG_EXPLANATORY_COL],
            df[LOG_RESPONSE_COL],
            s=20,
            color="#528B8B",
            label="Observations",
        )
        x_line = np.linspace(
            float(df[LOG_EXPLANATORY_COL].min()),
            float(df[LOG_EXPLANATORY_COL].max()),
            100,
        )
        plt.plot(
            x_line,
            outputs.equation.predict_log(x_line),
            color="#8F8F8F",
            label=f"OLS: slope={outputs.fit.slope:.3f}, intercept={outputs.fit.intercept:.3f}",
        )
        plt.xlabel(f"log10 {x_label}")
        plt.ylabel(f"log10 {y_label}")
        plt.title(outputs.species)
        plt.legend(loc="upper left")
        _apply_limits(plot_params)
    elif kind in (PlotKind.QQ_ORIGINAL, PlotKind.QQ_LOG):
        if kind is PlotKind.QQ_LOG:
            resid = np.asarray(outputs.fit.residuals, dtype=float)
            title = "Q-Q Plot Transformed Data"
        else:
            node = (diagnostics or {}).get("original") or {}
            if "Residuals" not in node:
                raise ValueError("QQ_ORIGINAL requires regression diagnostics for the untransformed model")
            resid = np.asarray(node["Residuals"], dtype=float)
            title = "Q-Q Plot Original Data"
        fig = plt.figure(figsize=(8, 6))
        stats.probplot(resid, dist="norm", plot=plt.gca())
        plt.title(title)
        _apply_limits(plot_params)
    else:
        raise ValueError(f"Unknown plot kind: {kind}")

    fig.savefig(output_svg, format="svg", bbox_inches="tight")
    plt.close(fig)
    return output_svg


def render_plots(
    list_plot_params: list[PlotParams],
    outputs: PipelineOutputs,
    short_hash: str,
    diagnostics: Optional[Dict[str, Dict[str, Any]]] = None,
    output_dir: Optional[str] = None,
    labels: tuple[str, str] = ("DBH", "Ptot"),
) -> list[str]:
    """
    Render every PlotParams; returns artifact paths named
    plot-{short_hash}-{ii}-{KIND}.svg with a zero-padded 0-based index.
    """
    n = len(list_plot_params)
    pad = max(2, len(str(max(0, n - 1))))

    artifact_paths: list[str] = []
    for idx, pp in enumerate(list_plot_params):
        filename = f"plot-{short_hash}-{idx:0{pad}}-{pp.kind.name}.svg"
        output_path = Path(output_dir) / filename if output_dir else Path(filename)
        render_outputs(
            outputs,
            pp,
            output_svg=str(output_path),
            diagnostics=diagnostics,
            labels=labels,
        )
        artifact_paths.append(str(output_path))
    return artifact_paths


def build_run_identity(
    load: LoadParams, analysis: AnalysisParams
) -> tuple[str, str, str, dict]:
    """
    Returns (abs_input_posix, short_hash, full_hash, effective_params)
    """
    abs_input_posix = normalize_abs_posix(load.data_path)
    effective_params = build_effective_parameters(load, analysis)
    short_hash, full_hash = canonical_json_hash(
        {
            "absolute_input_path": abs_input_posix,
            "effective_parameters": effective_params,
        }
    )
    return abs_input_posix, short_hash, full_hash, effective_params


def build_manifest_dict(
    abs_input_posix: str,
    counts: dict,
    effective_params: dict,
    hashes: tuple[str, str],
    artifact_paths: list[str],
) -> dict:
    short_hash, full_hash = hashes
    exclusion_reasons = (
        f"other_species_rows={counts.get('rows_other_species', 0)}; "
        f"missing_value_rows={counts.get('rows_missing', 0)}"
    )
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "absolute_input_path": abs_input_posix,
        "total_input_rows": int(counts.get("rows_in", 0)),
        "processed_row_count": int(counts.get("rows_out", 0)),
        "excluded_row_count": int(counts.get("rows_in", 0))
        - int(counts.get("rows_out", 0)),
        "exclusion_reasons": exclusion_reasons,
        "effective_parameters": effective_params,
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": {"plot_svgs": artifact_paths},
    }


def assemble_text_report(
    raw_df: pd.DataFrame,
    outputs: PipelineOutputs,
    table_text: str,
    labels: tuple[str, str] = ("DBH", "Ptot"),
    verbose_filtering: bool = False,
) -> str:
    """
    Plain-text summary of one run.

    Parameters:
      - verbose_filtering: when True, print every filtered row instead of head/tail.
    """
    x_label, y_label = labels
    ds = outputs.dataset
    counts = ds.attrs.get("filter_counts", {})

    def _fmt_head_tail(df: pd.DataFrame, n: int = 10) -> str:
        if df.empty:
            return "(no rows)"
        if verbose_filtering or len(df) <= 2 * n:
            return df.to_string(index=False)
        return f"{df.head(n).to_string(index=False)}\n...\n{df.tail(n).to_string(index=False)}"

    display = ds.rename(columns={EXPLANATORY_COL: x_label, RESPONSE_COL: y_label})
    fit = outputs.fit
    err = outputs.error

    parts: list[str] = [""]
    parts.append(f"Species: {outputs.species}")
    parts.append(
        f"Rows: input={counts.get('rows_in', len(raw_df))}, "
        f"other species={counts.get('rows_other_species', 0)}, "
        f"missing {x_label}/{y_label}={counts.get('rows_missing', 0)}, "
        f"used={len(ds)}"
    )
    parts.append(
        f"{x_label} range: {ds[EXPLANATORY_COL].min():.6g} .. {ds[EXPLANATORY_COL].max():.6g}"
    )
    parts.append(
        f"{y_label} range: {ds[RESPONSE_COL].min():.6g} .. {ds[RESPONSE_COL].max():.6g}"
    )
    parts.append("")
    parts.append("Filtered data")
    parts.append(_fmt_head_tail(display))
    parts.append("")
    parts.append(f"OLS fit (log10 {y_label} ~ log10 {x_label})")
    parts.append(f"  slope          : {fit.slope:.6f}")
    parts.append(f"  intercept      : {fit.intercept:.6f}")
    parts.append(f"  standard error : {fit.standard_error:.6f}")
    parts.append(f"  n              : {fit.n_obs}")
    parts.append("")
    parts.append("Allometric equation")
    for line in outputs.equation.describe(x_label, y_label).splitlines():
        parts.append(f"  {line}")
    parts.append("")
    parts.append("Error quantification")
    parts.append(f"  RMSE (log10 units)          : {err.rmse_log:.6f}")
    parts.append(f"  RMSE back-transformed (10^x): {err.rmse_original_units:.6f}")
    parts.append(f"  mean difference (log10)     : {err.mean_difference:.6g}")
    parts.append("")
    parts.append(
        "Back-transformation check (10^log10 vs original), max relative error: "
        f"{max_back_transform_error(outputs.transformed):.3e}"
    )
    parts.append("")
    parts.append(table_text)
    return "\n".join(parts)


def _orchestrate(
    params_load: LoadParams,
    params_analysis: AnalysisParams,
    list_plot_params: List[PlotParams],
    output_root: Path = Path("output"),
) -> Path:
    """
    Run one analysis end to end and write report, manifest and plots into
    output_root/<timestamp>/. Returns the run directory.
    """
    run_output_dir = Path(output_root) / datetime.now().strftime("%Y%m%dT%H%M%S")
    run_output_dir.mkdir(parents=True, exist_ok=True)

    abs_input_posix, short_hash, full_hash, effective_params = build_run_identity(
        params_load, params_analysis
    )
    labels = _variable_labels(params_load.header_map)

    raw_df = load_dataset(params_load)
    outputs = run_pipeline(
        raw_df, params_analysis.species, verbose=params_analysis.verbose_filtering
    )
    diagnostics = regression_analysis(outputs.transformed, outputs.fit)
    if diagnostics.get("log10", {}).get("coefficients_agree") is False:
        logger.warning("statsmodels coefficients differ from the closed-form OLS fit")
    _, table_text = build_model_comparison(diagnostics, *labels)

    artifact_paths = render_plots(
        list_plot_params,
        outputs,
        short_hash,
        diagnostics=diagnostics,
        output_dir=str(run_output_dir),
        labels=labels,
    )

    manifest = build_manifest_dict(
        abs_input_posix=abs_input_posix,
        counts=outputs.dataset.attrs.get("filter_counts", {}),
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        artifact_paths=artifact_paths,
    )
    write_manifest(str(run_output_dir / f"manifest-{short_hash}.json"), manifest)

    report = assemble_text_report(
        raw_df, outputs, table_text, labels, params_analysis.verbose_filtering
    )
    write_text_report(report, run_output_dir, short_hash)
    print(report)
    return run_output_dir


def _parse_plot_kind(spec: str) -> PlotKind:
    """Plot kind by name (e.g. 'LOG_LOG_FIT') or value ('log_log_fit'), case-insensitive."""
    s = str(spec).strip()
    for kind in PlotKind:
        if s.upper() == kind.name or s.lower() == kind.value:
            return kind
    raise ValueError(f"Unknown plot kind: {spec}")


def _copy_plot_params(default: PlotParams) -> PlotParams:
    return PlotParams(
        kind=default.kind,
        x_min=default.x_min,
        x_max=default.x_max,
        y_min=default.y_min,
        y_max=default.y_max,
        bins=default.bins,
    )


def _parse_plot_spec_kv(spec: str, default: PlotParams) -> PlotParams:
    """
    Parse a plot specification in key=value[,key=value...] format.
    """
    params = _copy_plot_params(default)
    for kv in spec.split(","):
        if not kv.strip():
            continue
        if "=" not in kv:
            raise ValueError(f"Invalid key=value pair: {kv!r}")
        key, value = kv.split("=", 1)
        key = key.strip()
        value = value.strip()
        if key == "kind":
            params.kind = _parse_plot_kind(value)
        elif key in ("x_min", "x_max", "y_min", "y_max"):
            setattr(params, key, float(value))
        elif key == "bins":
            params.bins = int(value)
        else:
            raise ValueError(f"Unknown key in plot spec: {key}")
    return params


def _parse_plot_spec_json(spec: str, default: PlotParams) -> PlotParams:
    """
    Parse a plot specification as a JSON object. null bounds mean "no limit".
    """
    import json

    params = _copy_plot_params(default)
    spec_dict = json.loads(spec)
    if not isinstance(spec_dict, dict):
        raise ValueError(f"JSON plot spec must be an object, got {type(spec_dict).__name__}")
    unknown = set(spec_dict) - {"kind", "x_min", "x_max", "y_min", "y_max", "bins"}
    if unknown:
        raise ValueError(f"Unknown key(s) in plot spec: {sorted(unknown)}")
    if "kind" in spec_dict:
        params.kind = _parse_plot_kind(spec_dict["kind"])
    for key in ("x_min", "x_max", "y_min", "y_max"):
        if key in spec_dict:
            value = spec_dict[key]
            setattr(params, key, None if value is None else float(value))
    if "bins" in spec_dict:
        params.bins = None if spec_dict["bins"] is None else int(spec_dict["bins"])
    return params


def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="allometric-calc",
        description="Allometric equation pipeline (load -> filter -> log10 -> OLS -> RMSE -> plot).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also ALLOMETRIC_DEBUG=1).",
    )
    parser.add_argument(
        "--list-species",
        action="store_true",
        help="List the species labels found in the data and exit.",
    )

    g_load = parser.add_argument_group("LoadParams")
    g_load.add_argument(
        "--data-path", type=str, required=True, help="Path to the biomass CSV (required)."
    )
    g_load.add_argument("--start-line", type=int, help="1-based inclusive start line.")
    g_load.add_argument("--end-line", type=int, help="1-based inclusive end line.")
    g_load.add_argument(
        "--header-map",
        action="append",
        metavar="OLD:NEW",
        help="Map input header OLD to canonical NEW (species, explanatory, response). Repeatable.",
    )

    g_an = parser.add_argument_group("AnalysisParams")
    g_an.add_argument("--species", type=str, help="Species label to analyse (exact match).")
    g_an.add_argument(
        "--verbose-filtering",
        action="store_true",
        default=None,
        help="Log filter diagnostics and print every filtered row in the report.",
    )

    g_plot = parser.add_argument_group("PlotParams")
    g_plot.add_argument(
        "--plot-spec",
        action="append",
        help="Plot specification in key=value[,key=value...] format. Repeatable.",
    )
    g_plot.add_argument(
        "--plot-spec-json",
        action="append",
        help="Plot specification as a JSON object. Repeatable.",
    )
    return parser


def _args_to_params(args) -> tuple[LoadParams, AnalysisParams, List[PlotParams]]:
    """
    Merge CLI args over defaults. Only values the user provided override defaults.
    A --header-map entry replaces the default entry with the same target.
    """
    d_load, d_analysis, d_plots = get_default_params()

    data_path = (
        Path(args.data_path).resolve()
        if getattr(args, "data_path", None)
        else d_load.data_path
    )

    user_map: dict[str, str] = {}
    for item in getattr(args, "header_map", None) or []:
        try:
            old, new = item.split(":", 1)
        except ValueError:
            raise ValueError(f"Invalid --header-map value: '{item}'. Expected OLD:NEW")
        old, new = old.strip(), new.strip()
        if not old or not new:
            raise ValueError(
                f"Invalid --header-map value: '{item}'. OLD and NEW must be non-empty"
            )
        user_map[old] = new

    header_map = {
        k: v for k, v in d_load.header_map.items() if v not in user_map.values()
    }
    header_map.update(user_map)

    load = LoadParams(
        data_path=data_path,
        start_line=args.start_line if args.start_line is not None else d_load.start_line,
        end_line=args.end_line if args.end_line is not None else d_load.end_line,
        header_map=header_map,
    )

    analysis = AnalysisParams(
        species=args.species if getattr(args, "species", None) else d_analysis.species,
        verbose_filtering=bool(args.verbose_filtering)
        if getattr(args, "verbose_filtering", None) is not None
        else d_analysis.verbose_filtering,
    )

    plot_params_list: List[PlotParams] = []
    for spec in getattr(args, "plot_spec", None) or []:
        plot_params_list.append(_parse_plot_spec_kv(spec, d_plots[0]))
    for spec in getattr(args, "plot_spec_json", None) or []:
        plot_params_list.append(_parse_plot_spec_json(spec, d_plots[0]))
    if not plot_params_list:
        plot_params_list = [_copy_plot_params(pp) for pp in d_plots]

    return load, analysis, plot_params_list


def _defaults_payload() -> dict:
    d_load, d_analysis, d_plots = get_default_params()
    return {
        "LoadParams": {
            "data_path": None if d_load.data_path is None else str(d_load.data_path),
            "start_line": d_load.start_line,
            "end_line": d_load.end_line,
            "header_map": d_load.header_map,
        },
        "AnalysisParams": {
            "species": d_analysis.species,
            "verbose_filtering": d_analysis.verbose_filtering,
        },
        "PlotParams": [
            {
                "kind": pp.kind.name,
                "x_min": pp.x_min,
                "x_max": pp.x_max,
                "y_min": pp.y_min,
                "y_max": pp.y_max,
                "bins": pp.bins,
            }
            for pp in d_plots
        ],
    }


def main(argv: Optional[List[str]] = None) -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    import json
    import sys

    argv = sys.argv[1:] if argv is None else argv
    parser = _build_cli_parser()

    # --print-defaults does not need --data-path
    if "--print-defaults" in argv:
        print(json.dumps(_defaults_payload(), indent=2))
        return

    args = parser.parse_args(argv)
    debug_mode = bool(
        getattr(args, "debug", False) or os.getenv("ALLOMETRIC_DEBUG", "") == "1"
    )
    if debug_mode:
        logger.setLevel(logging.DEBUG)

    try:
        params_load, params_analysis, plot_params_list = _args_to_params(args)
        if args.list_species:
            for label in list_species(load_dataset(params_load)):
                print(label)
            return
        _orchestrate(params_load, params_analysis, plot_params_list)
    except (FileNotFoundError, ValueError, TypeError, TableReadError) as e:
        # User-correctable problems, including every pipeline DomainError
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set ALLOMETRIC_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
