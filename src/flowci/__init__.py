from .dsl import job, sh, uses, matrix, wf, workflow
from .controller import RunController
from .loader import load_definition
from .model import PipelineDefinition, Job, StepSpec, Trigger, TriggerEvent, RunStatus, StepStatus

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "workflow",
    "RunController", "load_definition",
    "PipelineDefinition", "Job", "StepSpec", "Trigger", "TriggerEvent", "RunStatus", "StepStatus",
]
