"""
Structured logging for a replayable pipeline audit trail
"""
import json
import logging
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class StructuredLogger:
    """
    Logs structured data in JSON Lines format for auditing and replay

    Each log entry contains:
    - timestamp
    - log level (INFO, WARNING, ERROR)
    - pipeline id and step name
    - event type (pipeline_start, step_complete, step_error, etc.)
    - contextual data (input, output, cost, duration, etc.)
    """

    def __init__(self, log_file: str = "logs/execution.jsonl"):
        self.log_file = Path(log_file)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

        # Runs append to the same file, separated by a session marker
        self._write_session_start()

    def _write_session_start(self):
        """Mark the start of a new execution session"""
        session_marker = {
            "timestamp": self._get_timestamp(),
            "level": "INFO",
            "event": "session_start",
            "session_id": datetime.now().strftime("%Y%m%d_%H%M%S"),
            "message": "=" * 80
        }
        self._write_log(session_marker)

    def _get_timestamp(self) -> str:
        """Get ISO 8601 timestamp"""
        return datetime.now().isoformat()

    def _write_log(self, log_entry: Dict[str, Any]):
        """Write a single log entry as JSON line"""
        try:
            with open(self.log_file, 'a', encoding='utf-8') as f:
                f.write(json.dumps(log_entry, default=str) + '\n')
        except OSError as e:
            logger.error(f"Failed to write structured log: {e}")

    def log_pipeline_start(self, pipeline_id: str, name: str, total_steps: int, variables: Dict[str, Any] = None):
        """Log when a pipeline run starts"""
        self._write_log({
            "timestamp": self._get_timestamp(),
            "level": "INFO",
            "event": "pipeline_start",
            "pipeline_id": pipeline_id,
            "pipeline": name,
            "total_steps": total_steps,
            "variables": variables,
        })

    def log_step_start(self, pipeline_id: str, step_name: str, input_data: Any = None, **kwargs):
        """
        Log when a step starts processing

        Args:
            pipeline_id: Run the step belongs to
            step_name: Name of the step
            input_data: Unresolved input payload
            **kwargs: Additional context (skill, agent, visit number)
        """
        log_entry = {
            "timestamp": self._get_timestamp(),
            "level": "INFO",
            "event": "step_start",
            "pipeline_id": pipeline_id,
            "step": step_name,
            "input": input_data,
            **kwargs
        }
        self._write_log(log_entry)

    def log_step_complete(
        self,
        pipeline_id: str,
        step_name: str,
        output_data: Any = None,
        cost_usd: float = 0.0,
        duration_ms: float = None,
        **kwargs
    ):
        """
        Log when a step completes successfully

        Args:
            pipeline_id: Run the step belongs to
            step_name: Name of the step
            output_data: Output reported by the capability
            cost_usd: Reported cost
            duration_ms: How long the step took
            **kwargs: Additional context (model, token counts)
        """
        log_entry = {
            "timestamp": self._get_timestamp(),
            "level": "INFO",
            "event": "step_complete",
            "pipeline_id": pipeline_id,
            "step": step_name,
            "output": output_data,
            "cost_usd": cost_usd,
            "duration_ms": round(duration_ms, 3) if duration_ms is not None else None,
            **kwargs
        }
        self._write_log(log_entry)

    def log_step_error(
        self,
        pipeline_id: str,
        step_name: str,
        status: str,
        error: Optional[str],
        duration_ms: float = None
    ):
        """
        Log when a step fails or times out

        Args:
            pipeline_id: Run the step belongs to
            step_name: Name of the step that failed
            status: "failed" or "timeout"
            error: Error message recorded on the step result
            duration_ms: Time until settlement
        """
        log_entry = {
            "timestamp": self._get_timestamp(),
            "level": "ERROR",
            "event": "step_error",
            "pipeline_id": pipeline_id,
            "step": step_name,
            "status": status,
            "error_message": error,
            "duration_ms": round(duration_ms, 3) if duration_ms is not None else None,
        }
        self._write_log(log_entry)

    def log_step_skipped(self, pipeline_id: str, step_name: str, reason: Optional[str]):
        """Log a step that was never started"""
        self._write_log({
            "timestamp": self._get_timestamp(),
            "level": "WARNING",
            "event": "step_skipped",
            "pipeline_id": pipeline_id,
            "step": step_name,
            "reason": reason,
        })

    def log_pipeline_complete(
        self,
        pipeline_id: str,
        name: str,
        status: str,
        total_cost_usd: float,
        total_duration_ms: float,
        error: Optional[str] = None
    ):
        """Log the final outcome of a pipeline run"""
        self._write_log({
            "timestamp": self._get_timestamp(),
            "level": "INFO" if status == "completed" else "ERROR",
            "event": "pipeline_complete",
            "pipeline_id": pipeline_id,
            "pipeline": name,
            "status": status,
            "total_cost_usd": total_cost_usd,
            "total_duration_ms": round(total_duration_ms, 3),
            "error_message": error,
        })

    def log_metric(
        self,
        metric_name: str,
        value: Any,
        context: Dict[str, Any] = None
    ):
        """
        Log metrics (cost totals, step counts, etc.)

        Args:
            metric_name: Name of metric
            value: Metric value
            context: Additional context
        """
        log_entry = {
            "timestamp": self._get_timestamp(),
            "level": "INFO",
            "event": "metric",
            "metric_name": metric_name,
            "value": value,
            "context": context
        }
        self._write_log(log_entry)
