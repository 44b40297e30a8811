"""Site exploration: learn a page's behaviour before any recipe runs against it."""

from sitewright.explorer.actions import (
    ClickAction,
    DoneAction,
    ExplorerAction,
    ObserveAction,
    ScrollAction,
    TypeTextAction,
    parse_action,
)
from sitewright.explorer.breakers import CircuitBreakers
from sitewright.explorer.change_analyzer import ChangeAnalysis, ChangeAnalyzer, ChangeType
from sitewright.explorer.consolidator import ConsolidationResult, PatternConsolidator, should_consolidate
from sitewright.explorer.decision import DecisionAgent
from sitewright.explorer.memory import (
    BehaviorPattern,
    Classification,
    Edge,
    ExplorationMemory,
    PageNode,
    RawObservation,
    effects_similar,
    normalize_effect,
)
from sitewright.explorer.orchestrator import (
    ExplorationEvent,
    ExplorationOrchestrator,
    ExplorationResult,
    OrchestratorState,
    explore,
)
from sitewright.explorer.summarizer import PageSummarizer
from sitewright.explorer.tool_executor import ToolExecutor, ToolOutcome

__all__ = [
    "BehaviorPattern",
    "ChangeAnalysis",
    "ChangeAnalyzer",
    "ChangeType",
    "CircuitBreakers",
    "Classification",
    "ClickAction",
    "ConsolidationResult",
    "DecisionAgent",
    "DoneAction",
    "Edge",
    "ExplorationEvent",
    "ExplorationMemory",
    "ExplorationOrchestrator",
    "ExplorationResult",
    "ExplorerAction",
    "ObserveAction",
    "OrchestratorState",
    "PageNode",
    "PageSummarizer",
    "PatternConsolidator",
    "RawObservation",
    "ScrollAction",
    "ToolExecutor",
    "ToolOutcome",
    "TypeTextAction",
    "effects_similar",
    "explore",
    "normalize_effect",
    "parse_action",
    "should_consolidate",
]
