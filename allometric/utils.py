from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import logging
import threading
import time
import zipfile
from pathlib import Path
from typing import Any, Dict

import numpy as np

logger = logging.getLogger(__name__)


# -------------------------
# Path utilities
# -------------------------
def normalize_abs_posix(path: str | Path) -> str:
    """Absolute POSIX-style path string, identical across platforms."""
    return Path(path).resolve().as_posix()


# -------------------------
# Hashing utilities
# -------------------------
def canonical_json_dumps(payload: dict[str, Any]) -> str:
    """
    Deterministic JSON used for run hashes:
    compact separators, sorted keys, non-ASCII kept as-is (species names).
    """
    return json.dumps(
        payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True
    )


def canonical_json_hash(payload: dict[str, Any]) -> tuple[str, str]:
    """Return (short_hash8, full_sha256_hex) of the canonical JSON encoding."""
    digest = hashlib.sha256(canonical_json_dumps(payload).encode("utf-8")).hexdigest()
    return digest[:8], digest


# -------------------------
# Manifest helpers
# -------------------------
def _sanitize_for_json(obj: Any) -> Any:
    """
    Convert parameter objects into JSON primitives.

    Paths become absolute POSIX strings, enums their .name, dataclasses dicts,
    numpy scalars/arrays Python numbers/lists, datetimes ISO strings. Containers
    are converted recursively; anything else falls back to str().
    """
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, Path):
        return normalize_abs_posix(obj)
    if isinstance(obj, _dt.datetime):
        return obj.isoformat()
    if hasattr(obj, "name") and isinstance(getattr(obj, "name"), str):
        return obj.name
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return _sanitize_for_json(dataclasses.asdict(obj))
    if isinstance(obj, dict):
        return {str(k): _sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_sanitize_for_json(x) for x in obj]
    return str(obj)


def build_effective_parameters(load: Any, analysis: Any) -> dict[str, Any]:
    """
    JSON-serializable view of the LoadParams and AnalysisParams used for a run,
    shaped as {"load": {...}, "analysis": {...}}.
    """

    def _as_map(obj: Any) -> Any:
        if dataclasses.is_dataclass(obj):
            return dataclasses.asdict(obj)
        if hasattr(obj, "__dict__"):
            return vars(obj)
        return {"value": obj}

    return {
        "load": _sanitize_for_json(_as_map(load)),
        "analysis": _sanitize_for_json(_as_map(analysis)),
    }


def write_manifest(path: str | Path, manifest: Dict[str, Any]) -> None:
    """Write manifest JSON (UTF-8, indent=2)."""
    Path(path).write_text(
        json.dumps(manifest, ensure_ascii=False, indent=2), encoding="utf-8"
    )


def utc_timestamp_seconds() -> str:
    """ISO-8601 UTC timestamp with seconds precision and Z suffix."""
    now = _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)
    return now.isoformat(timespec="seconds") + "Z"


# -------------------------
# Run directory helpers (shared by CLI and Gradio UI)
# -------------------------
def ensure_run_dir(base: Path | str = ".", prefix: str = "output") -> Path:
    """Create and return `base`/`prefix`/<YYYYmmddTHHMMSS>."""
    run_ts = time.strftime("%Y%m%dT%H%M%S", time.localtime())
    run_dir = Path(base) / prefix / run_ts
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Ensured run_dir=%s", str(run_dir))
    return run_dir


def write_text_report(report_text: str, run_dir: Path, short_hash: str) -> Path:
    """
    Write run_dir/report-<short_hash>.txt (UTF-8) and return its path.
    Write failures are logged; the intended path is still returned.
    """
    target = Path(run_dir) / f"report-{short_hash}.txt"
    try:
        target.write_text(report_text, encoding="utf-8")
        logger.debug("Wrote textual report to %s", str(target))
    except OSError:
        logger.exception("Failed to write textual report to %s", str(target))
    return target


def create_zip_async(zip_path: str, artifact_paths: list[Path]) -> threading.Thread:
    """
    Zip artifact_paths into zip_path on a started daemon thread.
    Missing artifacts are skipped; failures are logged inside the thread.
    """

    def _worker(zip_path_local: str, paths: list[Path]) -> None:
        try:
            with zipfile.ZipFile(
                zip_path_local, "w", compression=zipfile.ZIP_DEFLATED
            ) as zf:
                for p in paths:
                    pth = Path(p)
                    if pth.exists():
                        zf.write(str(pth), arcname=pth.name)
                    else:
                        logger.debug("Skipping missing artifact for zip: %s", str(pth))
            logger.debug("Async zip created at %s", zip_path_local)
        except (OSError, zipfile.BadZipFile) as e:
            logger.warning("Async zip failed for %s: %s", zip_path_local, e)

    thread = threading.Thread(
        target=_worker, args=(zip_path, list(artifact_paths)), daemon=True
    )
    thread.start()
    return thread
