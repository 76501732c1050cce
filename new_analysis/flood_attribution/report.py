"""
Estimation Report & Output Helpers
==================================
Per-estimate success/failure bookkeeping plus the serialisation helpers the
phase scripts share (JSON conversion, ADM3 join table).

Every city- or scenario-level estimate runs through ``run_estimate``: a
``FloodAttributionError`` aborts that estimate only and is recorded as an
``EffectFailure``; anything else propagates.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
import json
import logging

import numpy as np
import pandas as pd

from .config import Config
from .errors import EffectFailure, FloodAttributionError

logger = logging.getLogger("flood_attribution.report")


@dataclass(frozen=True)
class EffectResult:
    """Either a value or an EffectFailure, never both."""

    key: Any
    stage: str
    value: Any = None
    failure: Optional[EffectFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class EstimationReport:
    """Collects which estimates succeeded and which were skipped, and why."""

    def __init__(self):
        self.successes: List[Dict[str, Any]] = []
        self.failures: List[EffectFailure] = []

    def record_success(self, key: Any, stage: str) -> None:
        self.successes.append({'key': key, 'stage': stage})

    def record_failure(self, failure: EffectFailure) -> None:
        self.failures.append(failure)

    def record(self, result: EffectResult) -> EffectResult:
        if result.ok:
            self.record_success(result.key, result.stage)
        else:
            self.record_failure(result.failure)
        return result

    @property
    def defects(self) -> List[EffectFailure]:
        return [f for f in self.failures if f.defect]

    def summary(self) -> Dict[str, Any]:
        by_stage: Dict[str, Dict[str, int]] = {}
        for s in self.successes:
            by_stage.setdefault(s['stage'], {'succeeded': 0, 'failed': 0})['succeeded'] += 1
        for f in self.failures:
            by_stage.setdefault(f.stage, {'succeeded': 0, 'failed': 0})['failed'] += 1
        return {
            'n_succeeded': len(self.successes),
            'n_failed': len(self.failures),
            'n_defects': len(self.defects),
            'by_stage': by_stage,
            'failures': [f.to_dict() for f in self.failures],
        }

    def to_frame(self) -> pd.DataFrame:
        rows = [dict(s, status='ok', error_type=None, message=None) for s in self.successes]
        rows += [{'key': f.key, 'stage': f.stage, 'status': 'defect' if f.defect else 'skipped',
                  'error_type': f.error_type, 'message': f.message} for f in self.failures]
        return pd.DataFrame(rows, columns=['key', 'stage', 'status', 'error_type', 'message'])

    def log_summary(self) -> None:
        s = self.summary()
        logger.info("Estimates: %d succeeded, %d skipped", s['n_succeeded'], s['n_failed'])
        for f in self.failures:
            level = logging.ERROR if f.defect else logging.WARNING
            logger.log(level, "  [%s] %s: %s: %s", f.stage, f.key, f.error_type, f.message)


def run_estimate(key: Any, stage: str, func: Callable[..., Any], *args,
                 report: Optional[EstimationReport] = None, **kwargs) -> EffectResult:
    """
    Call ``func(*args, **kwargs)`` and wrap the outcome.

    FloodAttributionError subclasses become a failure result; other
    exceptions are not caught.
    """
    try:
        result = EffectResult(key=key, stage=stage, value=func(*args, **kwargs))
    except FloodAttributionError as e:
        logger.warning("%s failed for %s: %s", stage, key, e)
        result = EffectResult(key=key, stage=stage, failure=EffectFailure.from_exception(key, stage, e))
    if report is not None:
        report.record(result)
    return result


# =============================================================================
# SERIALISATION
# =============================================================================

def convert_to_json_serializable(obj: Any) -> Any:
    """
    Recursively convert numpy / pandas types to JSON-serializable Python types.
    Non-finite floats become None.
    """
    if isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, (float, np.floating)):
        value = float(obj)
        return value if np.isfinite(value) else None
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.ndarray):
        return convert_to_json_serializable(obj.tolist())
    elif isinstance(obj, pd.DataFrame):
        return convert_to_json_serializable(obj.to_dict(orient='records'))
    elif isinstance(obj, pd.Series):
        return convert_to_json_serializable(obj.to_dict())
    elif hasattr(obj, 'to_dict') and not isinstance(obj, type):
        return convert_to_json_serializable(obj.to_dict())
    elif isinstance(obj, dict):
        return {
            (int(k) if isinstance(k, np.integer) else
             float(k) if isinstance(k, np.floating) else k):
            convert_to_json_serializable(v)
            for k, v in obj.items()
        }
    elif isinstance(obj, (list, tuple)):
        return [convert_to_json_serializable(item) for item in obj]
    return obj


def write_json(obj: Any, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(convert_to_json_serializable(obj), f, indent=2)
    logger.info("Saved: %s", path)
    return path


def city_join_table(city_table: pd.DataFrame, key_col: str = 'ADM3') -> pd.DataFrame:
    """
    City results keyed for a join onto ADM3 boundaries.

    The key is a zero-padded six-character UBIGEO string when the city ids are
    numeric, otherwise the id as given.
    """
    out = city_table.copy()
    ids = out[Config.CITY_COL].astype(str)
    numeric = ids.str.fullmatch(r'\d+')
    ids = ids.where(~numeric, ids.str.zfill(6))
    out.insert(0, key_col, ids)
    return out.drop(columns=[Config.CITY_COL])


def read_table(path: Union[str, Path]) -> pd.DataFrame:
    """Read a parquet, CSV or Excel table by file suffix."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == '.parquet':
        return pd.read_parquet(path)
    if suffix == '.csv':
        return pd.read_csv(path)
    if suffix in ('.xlsx', '.xls'):
        return pd.read_excel(path)
    raise ValueError(f"Unsupported table format: {path.name}")
