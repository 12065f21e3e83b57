from .model import Pipeline
from .runner import PipelineRunner, RunOptions
from .schema import dump_pipeline, parse_pipeline_file, parse_pipeline_text, validate_pipeline

__all__ = [
    "Pipeline",
    "PipelineRunner",
    "RunOptions",
    "dump_pipeline",
    "parse_pipeline_file",
    "parse_pipeline_text",
    "validate_pipeline",
]
