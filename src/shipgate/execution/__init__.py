"""Run execution: artifact store, executor, aggregation and the service facade."""

from shipgate.execution.aggregator import ResultAggregator, RunMetadata, run_outcome, summary
from shipgate.execution.artifacts import ArtifactStore, ArtifactView
from shipgate.execution.executor import ExecutionReport, ExecutorSettings, PipelineExecutor
from shipgate.execution.service import PipelineRunHandle, PipelineService

__all__ = [
    "ArtifactStore",
    "ArtifactView",
    "ExecutionReport",
    "ExecutorSettings",
    "PipelineExecutor",
    "PipelineRunHandle",
    "PipelineService",
    "ResultAggregator",
    "RunMetadata",
    "run_outcome",
    "summary",
]
