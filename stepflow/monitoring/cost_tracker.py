"""
CostTracker: Records per-step cost and token usage for pipeline runs.

This module provides functionality to:
1. Record one ledger entry per executed step
2. Summarize costs per step and per pipeline run
3. Save/load the ledger to/from JSON
"""

import json
import logging
import threading
from dataclasses import dataclass, asdict, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from stepflow.pipeline.models import StepResult

logger = logging.getLogger(__name__)

LEDGER_COLUMNS = [
    'pipeline_id', 'pipeline_name', 'step_name', 'status', 'model',
    'input_tokens', 'output_tokens', 'thinking_tokens', 'total_tokens',
    'cost_usd', 'duration_ms', 'recorded_at',
]


@dataclass
class CostEntry:
    """One ledger line."""
    pipeline_id: str
    pipeline_name: str
    step_name: str
    status: str
    model: str = 'unknown'
    input_tokens: int = 0
    output_tokens: int = 0
    thinking_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    recorded_at: str = field(default_factory=lambda: datetime.now().isoformat())


class CostTracker:
    """
    In-memory cost ledger.

    Tracks spend per step so runs can be audited and compared. Thread-safe,
    although the engine only records from its own thread.
    """

    def __init__(self, ledger_path: Optional[str] = None):
        """
        Initialize CostTracker.

        Args:
            ledger_path: Default JSON file for save()/load()
        """
        self.ledger_path = Path(ledger_path) if ledger_path else None
        self.entries: List[CostEntry] = []
        self._lock = threading.Lock()

    def record(self, pipeline_id: str, pipeline_name: str, result: StepResult) -> CostEntry:
        """
        Add a ledger entry for an executed step.

        Args:
            pipeline_id: Run identifier
            pipeline_name: Pipeline name
            result: Settled step result

        Returns:
            The recorded entry
        """
        input_tokens = result.input_tokens or 0
        output_tokens = result.output_tokens or 0
        thinking_tokens = result.thinking_tokens or 0
        entry = CostEntry(
            pipeline_id=pipeline_id,
            pipeline_name=pipeline_name,
            step_name=result.step_name,
            status=result.status.value,
            model=result.model or 'unknown',
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            thinking_tokens=thinking_tokens,
            total_tokens=input_tokens + output_tokens + thinking_tokens,
            cost_usd=float(result.cost_usd),
            duration_ms=float(result.duration_ms),
        )
        with self._lock:
            self.entries.append(entry)
        logger.debug(f"Recorded ${entry.cost_usd:.4f} for {pipeline_name}/{entry.step_name}")
        return entry

    def total_cost(self, pipeline_id: Optional[str] = None) -> float:
        """Total recorded spend, optionally for a single run."""
        with self._lock:
            return sum(e.cost_usd for e in self.entries if pipeline_id is None or e.pipeline_id == pipeline_id)

    def to_dataframe(self) -> pd.DataFrame:
        with self._lock:
            rows = [asdict(e) for e in self.entries]
        return pd.DataFrame(rows, columns=LEDGER_COLUMNS)

    def summary_by_step(self, pipeline_id: Optional[str] = None) -> pd.DataFrame:
        """
        Cost and token totals per step name.

        Args:
            pipeline_id: Restrict to one run (default: whole ledger)

        Returns:
            DataFrame indexed by step_name with executions, cost_usd,
            total_tokens and mean duration_ms
        """
        df = self.to_dataframe()
        if pipeline_id is not None:
            df = df[df['pipeline_id'] == pipeline_id]
        if df.empty:
            return pd.DataFrame(columns=['executions', 'cost_usd', 'total_tokens', 'duration_ms'])

        summary = df.groupby('step_name', sort=False).agg(
            executions=('step_name', 'size'),
            cost_usd=('cost_usd', 'sum'),
            total_tokens=('total_tokens', 'sum'),
            duration_ms=('duration_ms', 'mean'),
        )
        return summary.sort_values('cost_usd', ascending=False, kind='stable')

    def summary_by_pipeline(self) -> pd.DataFrame:
        """Cost totals per run, with the number of steps executed."""
        df = self.to_dataframe()
        if df.empty:
            return pd.DataFrame(columns=['pipeline_name', 'steps', 'cost_usd', 'total_tokens'])

        return df.groupby('pipeline_id', sort=False).agg(
            pipeline_name=('pipeline_name', 'first'),
            steps=('step_name', 'size'),
            cost_usd=('cost_usd', 'sum'),
            total_tokens=('total_tokens', 'sum'),
        )

    def save(self, path: Optional[str] = None) -> Path:
        """
        Save ledger to JSON file.

        Args:
            path: Target file (default: ledger_path)
        """
        target = Path(path) if path else self.ledger_path
        if target is None:
            raise ValueError("No ledger path configured")
        target.parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            payload = {
                'saved_at': datetime.now().isoformat(),
                'entries': [asdict(e) for e in self.entries],
            }
        with open(target, 'w') as f:
            json.dump(payload, f, indent=2)
        logger.info(f"Cost ledger saved to {target} ({len(payload['entries'])} entries)")
        return target

    def load(self, path: Optional[str] = None) -> int:
        """
        Load a previously saved ledger, appending its entries.

        Returns:
            Number of entries loaded (0 if the file doesn't exist)
        """
        source = Path(path) if path else self.ledger_path
        if source is None or not source.exists():
            logger.debug(f"No cost ledger found at {source}")
            return 0

        with open(source, 'r') as f:
            payload = json.load(f)

        loaded = [CostEntry(**entry) for entry in payload.get('entries', [])]
        with self._lock:
            self.entries.extend(loaded)
        logger.info(f"Loaded {len(loaded)} cost entries from {source}")
        return len(loaded)

    def summary_records(self, pipeline_id: Optional[str] = None) -> Dict[str, Dict]:
        """Per-step summary as plain dicts (for JSON reports)."""
        summary = self.summary_by_step(pipeline_id)
        return {
            step: {key: _to_builtin(value) for key, value in row.items()}
            for step, row in summary.iterrows()
        }


def _to_builtin(value):
    """numpy scalars -> Python scalars for json.dump."""
    return value.item() if hasattr(value, 'item') else value
