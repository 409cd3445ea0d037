"""
Scene analysis: request shaping, service clients, response validation,
consumption accounting and the per-project orchestrator.
"""

from scenebreak.analysis.ledger import ConsumptionLedger, InMemoryLedger, UsageEntry
from scenebreak.analysis.orchestrator import (
    ProjectRunResult,
    SceneAnalysisOrchestrator,
    SceneEvent,
    SceneEventType,
)
from scenebreak.analysis.service import (
    AnalysisService,
    HttpAnalysisService,
    OpenAIAnalysisService,
    build_analysis_service,
)

__all__ = [
    "AnalysisService",
    "ConsumptionLedger",
    "HttpAnalysisService",
    "InMemoryLedger",
    "OpenAIAnalysisService",
    "ProjectRunResult",
    "SceneAnalysisOrchestrator",
    "SceneEvent",
    "SceneEventType",
    "UsageEntry",
    "build_analysis_service",
]
