"""
Orchestrator - Wires configuration, engine and collaborators together.

Builds the event bus, cost tracker, audit logger and capability invoker
from config.yaml, runs pipeline definitions through PipelineEngine and
writes result/report files.
"""
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

from stepflow.monitoring.cost_tracker import CostTracker
from stepflow.monitoring.event_bus import EventBus, EventType, PipelineEvent
from stepflow.pipeline import (
    ExecutionOptions,
    PipelineDefinition,
    PipelineEngine,
    PipelineResult,
    load_definition,
)
from stepflow.pipeline.step_runner import CapabilityInvoker
from stepflow.utils.config import get_section
from stepflow.utils.http_invoker import HttpCapabilityInvoker
from stepflow.utils.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """
    Runs pipelines with the collaborators configured in config.yaml.

    Sections used:
    - engine: default timeout, cost ceiling, visit cap, worker cap
    - events: event bus delivery settings
    - capability: HTTP invoker settings (ignored when an invoker is passed)
    - outputs: reports_dir, logs_dir, cost_ledger_file
    """

    def __init__(self, config: Dict[str, Any], invoker: Optional[CapabilityInvoker] = None):
        self.config = config
        outputs_config = get_section(config, "outputs")

        logs_dir = Path(outputs_config.get("logs_dir", "logs"))
        self.logger = StructuredLogger(str(logs_dir / "execution.jsonl"))

        self.event_bus = EventBus(config)
        self.event_bus.subscribe(EventType.PIPELINE_FAILED, self._on_pipeline_failed)

        self.cost_tracker = CostTracker(outputs_config.get("cost_ledger_file"))
        self.cost_tracker.load()

        self.invoker = invoker or HttpCapabilityInvoker(get_section(config, "capability"))

        self.engine = PipelineEngine(
            event_bus=self.event_bus,
            cost_tracker=self.cost_tracker,
            audit_logger=self.logger,
        )

    def run(
        self,
        definition: Union[PipelineDefinition, str, Path],
        variables: Optional[Dict[str, Any]] = None,
        max_total_cost_usd: Optional[float] = None,
    ) -> PipelineResult:
        """
        Execute a pipeline.

        Args:
            definition: PipelineDefinition or path to a YAML definition
            variables: Overrides for the definition's variables
            max_total_cost_usd: Overrides the configured cost ceiling

        Returns:
            PipelineResult of the run
        """
        if not isinstance(definition, PipelineDefinition):
            definition = load_definition(str(definition))

        options = ExecutionOptions.from_config(
            self.config,
            variables=variables or {},
            max_total_cost_usd=max_total_cost_usd,
        )

        logger.info(f"Starting pipeline {definition.name} ({definition.count_steps()} steps)")
        run_start = time.time()

        result = self.engine.execute(definition, self.invoker, options)

        self.logger.log_metric(
            "pipeline_cost_usd",
            result.total_cost_usd,
            context={"pipeline_id": result.pipeline_id, "name": result.name, "status": result.status.value},
        )
        logger.info(f"Pipeline {definition.name} finished in {time.time() - run_start:.2f}s: {result.status.value}")
        return result

    def save_outputs(self, result: PipelineResult) -> Dict[str, Path]:
        """Save result JSON, Markdown report and the cost ledger"""
        outputs_config = get_section(self.config, "outputs")
        reports_dir = Path(outputs_config.get("reports_dir", "reports"))
        reports_dir.mkdir(parents=True, exist_ok=True)

        paths = {}

        result_path = reports_dir / f"{result.name}_{result.pipeline_id[:8]}.json"
        with open(result_path, 'w') as f:
            json.dump(result.to_dict(), f, indent=2, default=str)
        logger.info(f"Saved result to {result_path}")
        paths["result"] = result_path

        report_path = reports_dir / f"{result.name}_{result.pipeline_id[:8]}.md"
        with open(report_path, 'w', encoding='utf-8') as f:
            f.write(self._generate_report(result))
        logger.info(f"Saved report to {report_path}")
        paths["report"] = report_path

        if self.cost_tracker.ledger_path is not None:
            paths["ledger"] = self.cost_tracker.save()

        return paths

    def close(self) -> None:
        self.event_bus.close()

    def _on_pipeline_failed(self, event: PipelineEvent) -> None:
        payload = event.payload
        logger.warning(
            f"Pipeline {payload.get('name')} failed after {payload.get('completed_steps', 0)}"
            f"/{payload.get('total_steps', '?')} steps: {payload.get('error')}"
        )

    def _generate_report(self, result: PipelineResult) -> str:
        """Generate a Markdown audit report for one run"""
        status_icon = "✅" if result.succeeded else "❌"
        report = f"""# Pipeline Report: {result.name}

**Run ID:** {result.pipeline_id}
**Status:** {status_icon} {result.status.value}
**Total cost:** ${result.total_cost_usd:.4f}
**Duration:** {result.total_duration_ms / 1000:.2f}s

"""
        if result.error:
            report += f"**Error:** {result.error}\n\n"

        report += "## Steps\n\n"
        report += "| # | Step | Status | Cost (USD) | Duration (ms) | Model | Note |\n"
        report += "|---|------|--------|-----------:|--------------:|-------|------|\n"
        for i, step in enumerate(result.steps, 1):
            note = step.error or step.skip_reason or ""
            report += (
                f"| {i} | {step.step_name} | {step.status.value} | {step.cost_usd:.4f} "
                f"| {step.duration_ms:.0f} | {step.model or ''} | {note} |\n"
            )

        summary = self.cost_tracker.summary_by_step(result.pipeline_id)
        if not summary.empty:
            report += "\n## Cost by step\n\n"
            for step_name, row in summary.iterrows():
                report += (
                    f"- **{step_name}:** ${row['cost_usd']:.4f} over {int(row['executions'])} "
                    f"execution(s), {int(row['total_tokens'])} tokens\n"
                )

        report += "\n---\n\n"
        report += "*Generated by stepflow.*\n"

        return report
