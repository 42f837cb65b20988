"""enrollflow: Durable workflow enrollment and execution for contact automations."""

from .config import EnrollflowConfig, load_config
from .contracts import (
    Contact,
    ExecutionData,
    NodeProcessorContext,
    NodeProcessorResult,
    WorkflowEnrollment,
    WorkflowExecution,
    WorkflowExecutionLog,
)
from .engine import WorkflowEngine
from .enrollment import EnrollmentManager
from .persistence import get_repository
from .processors import REGISTRY
from .runner import ExecutionStepRunner
from .scheduler import Scheduler
from .services import Services
from .workflow import Workflow, load_workflow

__version__ = "0.1.0"
__all__ = [
    "Contact",
    "EnrollflowConfig",
    "EnrollmentManager",
    "ExecutionData",
    "ExecutionStepRunner",
    "NodeProcessorContext",
    "NodeProcessorResult",
    "REGISTRY",
    "Scheduler",
    "Services",
    "Workflow",
    "WorkflowEngine",
    "WorkflowEnrollment",
    "WorkflowExecution",
    "WorkflowExecutionLog",
    "get_repository",
    "load_config",
    "load_workflow",
]
