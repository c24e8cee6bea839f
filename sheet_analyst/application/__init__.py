"""Application services."""

from .analysis import AnalysisService, configure_analysis_service, get_analysis_service, reset_analysis_state
from .answers import assemble_answer
from .executor import QueryExecutor
from .planner import QueryPlanner, decode_plan, plan_fingerprint, validate_plan
from .sessions import SessionCoordinator

__all__ = [
    "AnalysisService",
    "QueryExecutor",
    "QueryPlanner",
    "SessionCoordinator",
    "assemble_answer",
    "configure_analysis_service",
    "decode_plan",
    "get_analysis_service",
    "plan_fingerprint",
    "reset_analysis_state",
    "validate_plan",
]
