from .dsl import job, sh, matrix, wf, pipeline, JobBuilder, build
from .controller import PipelineController, PipelineRun
from .model import Environment, JobTemplate, JobInstance, JobState, Pipeline, PipelineStatus, Step

__all__ = [
    "job", "sh", "matrix", "wf", "pipeline", "JobBuilder", "build",
    "PipelineController", "PipelineRun",
    "Environment", "JobTemplate", "JobInstance", "JobState", "Pipeline", "PipelineStatus", "Step",
]
