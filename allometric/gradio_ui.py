"""Gradio UI wrapper for the allometric pipeline.

Upload a biomass CSV, pick a species and get the report, SVG plots and a ZIP.
"""

import os
import shutil
from pathlib import Path
from typing import List, Optional

# Backend selection is enforced centrally in allometric.main at import-time.
# Do NOT set or override MPLBACKEND here.

try:
    from .main import (
        DEFAULT_HEADER_MAP,
        AnalysisParams,
        LoadParams,
        PlotParams,
        _parse_plot_spec_json,
        _parse_plot_spec_kv,
        _variable_labels,
        assemble_text_report,
        build_model_comparison,
        build_run_identity,
        get_default_params,
        load_dataset,
        regression_analysis,
        render_plots,
    )
    from .pipeline import list_species, run_pipeline
    from .utils import create_zip_async, ensure_run_dir, write_text_report
except ImportError:
    from main import (  # type: ignore
        DEFAULT_HEADER_MAP,
        AnalysisParams,
        LoadParams,
        PlotParams,
        _parse_plot_spec_json,
        _parse_plot_spec_kv,
        _variable_labels,
        assemble_text_report,
        build_model_comparison,
        build_run_identity,
        get_default_params,
        load_dataset,
        regression_analysis,
        render_plots,
    )
    from pipeline import list_species, run_pipeline  # type: ignore
    from utils import create_zip_async, ensure_run_dir, write_text_report  # type: ignore

import logging
import time
import traceback

import gradio as gr

logger = logging.getLogger(__name__)

RUN_ROOT = "output_gradio"


def _parse_optional_int(val) -> Optional[int]:
    if val is None:
        return None
    s = val
    if isinstance(val, str):
        s = val.strip()
        if s == "":
            return None
    try:
        # Gradio numbers arrive as floats
        return int(float(s))
    except (TypeError, ValueError):
        return None


def parse_header_map(raw: Optional[str]) -> dict[str, str]:
    """
    Parse OLD:NEW lines (or comma-separated pairs) into a header map.
    Blank input returns the default map. Raises ValueError on malformed entries.
    """
    if raw is None or str(raw).strip() == "":
        return dict(DEFAULT_HEADER_MAP)
    header_map: dict[str, str] = {}
    for item in str(raw).replace(",", "\n").splitlines():
        item = item.strip()
        if not item:
            continue
        old, sep, new = item.partition(":")
        if not sep or not old.strip() or not new.strip():
            raise ValueError(f"Invalid header map entry: {item!r}. Expected OLD:NEW")
        header_map[old.strip()] = new.strip()
    return header_map


def parse_plot_specs(raw: Optional[str], default_plot: PlotParams) -> List[PlotParams]:
    """
    Parse multiline plot spec input. Each non-empty line is either a JSON object
    (starts with '{') or a key=value[,key=value...] spec.
    Returns [] for blank input; raises ValueError naming the offending line.
    """
    if raw is None or str(raw).strip() == "":
        return []

    lines = [ln.strip() for ln in str(raw).splitlines() if ln.strip()]
    parsed: List[PlotParams] = []
    for ln in lines:
        try:
            if ln.startswith("{"):
                parsed.append(_parse_plot_spec_json(ln, default_plot))
            else:
                parsed.append(_parse_plot_spec_kv(ln, default_plot))
        except ValueError as e:
            raise ValueError(f"Failed to parse plot spec line: {ln!r} -> {e}") from e
    return parsed


def _prune_old_runs(run_root: Path, keep: Optional[int] = None) -> None:
    """
    Keep only the newest `keep` subdirectories under `run_root`.

    keep defaults to ALLOMETRIC_GRADIO_RETENTION_KEEP (10). Timestamp-named run
    directories (YYYYmmddTHHMMSS) are ordered by name, anything else by mtime.
    Symlinks and paths resolving outside run_root are never deleted; deletion
    failures are logged and retried on a later run.
    """
    if keep is None:
        try:
            keep = int(os.getenv("ALLOMETRIC_GRADIO_RETENTION_KEEP", "10"))
        except ValueError:
            keep = 10
    if keep <= 0:
        logger.debug(f"retention keep <=0 ({keep}) -> skipping prune")
        return

    if not run_root.exists() or not run_root.is_dir():
        return

    subdirs = [p for p in run_root.iterdir() if p.is_dir()]
    if not subdirs:
        return

    def _looks_like_run_ts(name: str) -> bool:
        return (
            len(name) >= 15
            and name[0:8].isdigit()
            and name[8] == "T"
            and name[9:15].isdigit()
        )

    if all(_looks_like_run_ts(p.name) for p in subdirs):
        subdirs_sorted = sorted(subdirs, key=lambda p: p.name, reverse=True)
    else:
        subdirs_sorted = sorted(subdirs, key=lambda p: p.stat().st_mtime, reverse=True)

    run_root_resolved = run_root.resolve()
    for d in subdirs_sorted[keep:]:
        if d.is_symlink():
            logger.warning(f"Skipping symlink during prune: {d}")
            continue
        if os.path.commonpath([str(run_root_resolved), str(d.resolve())]) != str(
            run_root_resolved
        ):
            logger.warning(f"Skipping prune of {d} - resolved outside run_root")
            continue
        try:
            shutil.rmtree(d)
            logger.info(f"Pruned old run dir: {d}")
        except OSError as e:
            logger.warning(f"Failed to prune {d}: {e}")


def species_choices(
    uploaded_file_path: Optional[str], header_map_raw: Optional[str] = None
) -> List[str]:
    """
    Species labels in the uploaded file for the species dropdown.
    Returns [] when nothing is uploaded or the file cannot be read.
    """
    if not uploaded_file_path:
        return []
    try:
        lp = LoadParams(
            data_path=Path(uploaded_file_path).resolve(),
            header_map=parse_header_map(header_map_raw),
        )
        return list_species(load_dataset(lp))
    except Exception as e:
        # the Run button reports the same problem in full
        logger.warning(f"Could not list species for {uploaded_file_path!r}: {e}")
        return []


def _run_pipeline(
    uploaded_file_path: Optional[str],
    start_line,
    end_line,
    species: Optional[str],
    verbose_filtering: bool,
    header_map_raw: Optional[str] = None,
    plot_specs_raw: Optional[str] = None,
):
    """
    Execute the pipeline and return (html_embed, zip_path, report_text), or
    (error_text, None, error_text) on failure.
    """
    t0 = time.time()
    logger.info(f"_run_pipeline START - uploaded_file_path={uploaded_file_path!r}")

    if not uploaded_file_path:
        msg = "Error: No CSV file uploaded. Please upload a CSV file."
        return msg, None, msg

    _, d_analysis, d_plots = get_default_params()

    try:
        lp = LoadParams(
            data_path=Path(uploaded_file_path).resolve(),
            start_line=_parse_optional_int(start_line),
            end_line=_parse_optional_int(end_line),
            header_map=parse_header_map(header_map_raw),
        )
        ap = AnalysisParams(
            species=(species or "").strip() or d_analysis.species,
            verbose_filtering=bool(verbose_filtering),
        )
        parsed_list = parse_plot_specs(plot_specs_raw, d_plots[0])
    except ValueError as e:
        msg = f"Input error\n{e}"
        return msg, None, msg

    list_plot_params = parsed_list or d_plots
    logger.debug(f"Built LoadParams -> {lp}; AnalysisParams -> {ap}")

    try:
        _, short_hash, _, _ = build_run_identity(lp, ap)
        run_dir = ensure_run_dir(prefix=RUN_ROOT).resolve()
        labels = _variable_labels(lp.header_map)

        raw_df = load_dataset(lp)
        outputs = run_pipeline(raw_df, ap.species, verbose=ap.verbose_filtering)
        diagnostics = regression_analysis(outputs.transformed, outputs.fit)
        _, table_text = build_model_comparison(diagnostics, *labels)
        report_text = assemble_text_report(
            raw_df, outputs, table_text, labels, ap.verbose_filtering
        )
        report_path = write_text_report(report_text, run_dir, short_hash)

        artifact_paths = render_plots(
            list_plot_params,
            outputs,
            short_hash,
            diagnostics=diagnostics,
            output_dir=str(run_dir),
            labels=labels,
        )
        saved_svgs = [Path(p) for p in artifact_paths if Path(p).exists()]

        _prune_old_runs(Path(RUN_ROOT))

        # Zip in the background so the Gradio worker returns immediately
        zip_path = str(run_dir / f"plots-{short_hash}.zip")
        create_zip_async(zip_path, saved_svgs + [report_path])

        parts = []
        for svg_path in sorted(saved_svgs):
            parts.append(f"<div>{svg_path.read_text(encoding='utf-8')}</div>")
        html = "\n".join(parts)

        logger.info(
            f"_run_pipeline COMPLETE (duration_ms={(time.time() - t0) * 1000:.1f})"
        )
        return html, zip_path, report_text

    except Exception as e:
        tb = traceback.format_exc()
        msg = f"Error running pipeline\n{e}\n{tb}"
        logger.debug(f"_run_pipeline EXCEPTION: {e}\n{tb}")
        return msg, None, msg


def _file_path_of(file_obj) -> Optional[str]:
    # gr.File returns a dict, a str or a tempfile wrapper depending on version
    if file_obj is None:
        return None
    if isinstance(file_obj, dict):
        return file_obj.get("name") or file_obj.get("tmp_path")
    if isinstance(file_obj, str):
        return file_obj
    return getattr(file_obj, "name", None)


def _build_ui():
    with gr.Blocks() as demo:
        d_load, d_analysis, d_plots = get_default_params()
        gr.Markdown("### Allometric Equation Calculator")
        gr.HTML("""
<style>
  #report_box textarea {
    font-family: "SF Mono", "Menlo", "Monaco", "Consolas", "Liberation Mono", "Courier New", monospace;
    font-size: 13px;
    line-height: 1.3;
    resize: vertical;
    min-height: 200px;
    max-height: 800px;
  }
</style>
""")
        with gr.Row():
            file_input = gr.File(label="Upload CSV file", file_types=[".csv"])
        with gr.Row():
            start_line = gr.Number(
                label="start_line (optional)",
                value=d_load.start_line,
                precision=0,
                placeholder="leave blank to read from the first data row",
            )
            end_line = gr.Number(
                label="end_line (optional)",
                value=d_load.end_line,
                precision=0,
                placeholder="leave blank to read to end of file",
            )
            header_map = gr.Textbox(
                label="Header map (OLD:NEW, one per line)",
                value="\n".join(f"{k}:{v}" for k, v in d_load.header_map.items()),
                lines=3,
            )
        with gr.Row():
            species = gr.Dropdown(
                label="species",
                choices=[d_analysis.species],
                value=d_analysis.species,
                allow_custom_value=True,
            )
            verbose = gr.Checkbox(label="verbose_filtering", value=False)

        plot_specs = gr.Textbox(
            label="Plot specs (optional) - one per line (key=value,... or JSON)",
            placeholder='kind=LOG_LOG_FIT,x_min=0,x_max=2\n{"kind":"DISTRIBUTION_RAW","bins":40}',
            value="\n".join(f"kind={pp.kind.name}" for pp in d_plots),
            lines=5,
        )
        run_button = gr.Button("Run")
        report_code = gr.Textbox(
            value="", lines=20, interactive=False, elem_id="report_box", label="Report"
        )
        output_html = gr.HTML(label="Plots")
        output_zip = gr.File(label="Download ZIP")

        def _click(file_obj, s_line, e_line, hmap_raw, species_v, verbose_v, plot_specs_raw):
            html, zip_p, report_p = _run_pipeline(
                _file_path_of(file_obj),
                s_line,
                e_line,
                species_v,
                verbose_v,
                hmap_raw,
                plot_specs_raw,
            )
            return html, zip_p, report_p

        def _populate_species(file_obj, hmap_raw, current):
            choices = species_choices(_file_path_of(file_obj), hmap_raw)
            if not choices:
                return gr.update(choices=[d_analysis.species], value=current)
            if current in choices:
                value = current
            elif d_analysis.species in choices:
                value = d_analysis.species
            else:
                value = choices[0]
            return gr.update(choices=choices, value=value)

        file_input.change(
            _populate_species,
            inputs=[file_input, header_map, species],
            outputs=[species],
        )
        run_button.click(
            _click,
            inputs=[
                file_input,
                start_line,
                end_line,
                header_map,
                species,
                verbose,
                plot_specs,
            ],
            outputs=[output_html, output_zip, report_code],
        )

    return demo


if __name__ == "__main__":
    demo = _build_ui()
    demo.launch()
