"""Composition root wiring storage, collaborators and engine components."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .config import EnrollflowConfig, load_config
from .enrollment import EnrollmentManager
from .persistence import WorkflowRepository, get_repository
from .runner import ExecutionStepRunner
from .scheduler import Scheduler, TickSummary
from .services import Services, load_services
from .subworkflow import SubWorkflowBridge
from .workflow import Workflow, load_workflow

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Bundle of the engine components sharing one repository."""

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        services: Optional[Services] = None,
        config: Optional[EnrollflowConfig] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.services = services
        self.enrollments = EnrollmentManager(
            self.repository, services.contacts if services else None, self.config
        )
        self.sub_workflows = SubWorkflowBridge(
            self.repository, self.enrollments, self.config.sub_workflows
        )
        self.runner = ExecutionStepRunner(
            self.repository, services, self.config, sub_workflows=self.sub_workflows
        )
        self.scheduler = Scheduler(self.repository, self.runner, self.config.scheduler)

    @classmethod
    def from_config(cls, config: Optional[EnrollflowConfig] = None) -> "WorkflowEngine":
        """Build an engine with collaborators from ``config.services_factory``."""
        config = config or load_config()
        services = load_services(config.services_factory) if config.services_factory else None
        if services is None:
            logger.warning("No services factory configured; nodes cannot be executed")
        return cls(services=services, config=config)

    async def save_workflow(self, data: Dict[str, Any]) -> Workflow:
        """Validate and store a workflow definition."""
        workflow = load_workflow(data)
        await self.repository.save_workflow(workflow)
        logger.info(f"Saved workflow {workflow.id} ({workflow.name})")
        return workflow

    async def tick(self) -> TickSummary:
        return await self.scheduler.run_once()
