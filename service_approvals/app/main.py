"""
Plan approvals service wiring.
"""

from typing import Optional, Tuple

from prometheus_client import CollectorRegistry

from shared.config import ServiceConfig, get_config
from shared.errors import InvalidRuleDefinition, ValidationFailed
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector

from .adapters import DraftRepository, GoldenRecordClient, WorkflowEngineClient
from .orchestration import ApprovalOrchestrator
from .rules import DecisionDocument, RuleDescription, compile_rule, ensure_valid, render_dmn_xml


class ApprovalService:
    """Builds the clients and orchestrator from configuration."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 registry: Optional[CollectorRegistry] = None):
        self.config = config or get_config("approvals")
        configure_logging(self.config.service_name, self.config.log_level)
        self.logger = get_logger("approvals.service")

        self.registry = registry or CollectorRegistry()
        self.metrics = get_metrics_collector(self.config.service_name, self.registry)

        self.workflow = WorkflowEngineClient.from_settings(self.config, self.metrics)
        self.drafts = DraftRepository.from_settings(self.config, self.metrics)
        self.golden_records = GoldenRecordClient.from_settings(self.config, self.metrics)
        self.orchestrator = ApprovalOrchestrator(
            self.workflow,
            self.drafts,
            self.golden_records,
            process_key=self.config.process_key,
            metrics=self.metrics
        )

    async def start(self):
        """Open the draft store pool."""
        await self.drafts.start()
        self.logger.info(
            "Approvals service started",
            engine_url=self.config.engine_url,
            golden_record_url=self.config.golden_record_url,
            process_key=self.config.process_key
        )

    async def stop(self):
        await self.drafts.stop()
        self.logger.info("Approvals service stopped")

    def compile_decision(self, description: RuleDescription, name: str) -> Tuple[DecisionDocument, str]:
        """Compile, validate and render a rule as DMN XML ready for deployment."""
        rule_type = getattr(description.rule_type, "value", str(description.rule_type))
        try:
            document = ensure_valid(compile_rule(description, name))
            xml = render_dmn_xml(document)
        except (InvalidRuleDefinition, ValidationFailed) as e:
            self.metrics.increment_counter("rules_compiled_total", rule_type=rule_type, outcome=e.code)
            self.logger.warning("Rule compilation failed", rule_id=description.rule_id, code=e.code,
                                error=e.message)
            raise

        self.metrics.increment_counter("rules_compiled_total", rule_type=rule_type, outcome="ok")
        self.logger.info("Rule compiled", rule_id=description.rule_id, decision_id=document.decision_id)
        return document, xml
