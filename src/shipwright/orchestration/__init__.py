"""Planning, convergence, identity binding, deployment and rollback."""

from shipwright.orchestration.deployment import DeploymentDriver
from shipwright.orchestration.engine import ConvergenceEngine
from shipwright.orchestration.identity import BindingResult, IdentityBinder
from shipwright.orchestration.pipeline import DeploymentPipeline, DeploymentState
from shipwright.orchestration.plan_builder import PlanBuilder, build_plan
from shipwright.orchestration.results import ChangeRecord, ConvergenceResult
from shipwright.orchestration.rollback import RollbackController, RollbackResult

__all__ = [
    "BindingResult",
    "ChangeRecord",
    "ConvergenceEngine",
    "ConvergenceResult",
    "DeploymentDriver",
    "DeploymentPipeline",
    "DeploymentState",
    "IdentityBinder",
    "PlanBuilder",
    "RollbackController",
    "RollbackResult",
    "build_plan",
]
