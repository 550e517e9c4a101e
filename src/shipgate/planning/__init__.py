"""Stage definitions, the validated stage DAG and pipeline file loading."""

from shipgate.planning.loader import PipelineFileError, load_pipeline_file, parse_pipeline
from shipgate.planning.stage_graph import (
    Criticality,
    PipelineDefinition,
    StageDefinition,
    StageGraph,
)

__all__ = [
    "Criticality",
    "PipelineDefinition",
    "PipelineFileError",
    "StageDefinition",
    "StageGraph",
    "load_pipeline_file",
    "parse_pipeline",
]
