"""Graph analysis pipeline and insight synthesis.

Usage::

    from datagraph.analysis import GraphAnalyzer

    analyzer = GraphAnalyzer()
    insights = analyzer.analyze(rows, columns, dataset_id="orders")
    for insight in insights:
        print(insight.confidence, insight.title)
"""

from datagraph.analysis.insights import Insight, InsightType, Severity
from datagraph.analysis.analyzer import AnalysisRun, GraphAnalyzer, Stage, StageResult, StageStatus

__all__ = [
    "Insight",
    "InsightType",
    "Severity",
    "GraphAnalyzer",
    "AnalysisRun",
    "Stage",
    "StageResult",
    "StageStatus",
]
