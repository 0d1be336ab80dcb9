"""Errors raised while driving a target job to its terminal outcome."""

import json
from typing import Any, Dict, Optional


class TargetHelperError(Exception):
    """Base class; every error is tagged with the job it belongs to."""

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.job_id = job_id
        self.context = context or {}

    def __str__(self) -> str:
        message = super().__str__()
        if self.job_id:
            return f"[job {self.job_id}] {message}"
        return message


class SubscriptionFailure(TargetHelperError):
    """The watch on the job resource could not be opened or died."""


class MalformedUpdate(TargetHelperError):
    """An update in the job's update log is not well formed."""


class EngineReportedError(TargetHelperError):
    """Target posted an 'error' update."""

    def __init__(self, update: Dict[str, Any], job_id: Optional[str] = None):
        super().__init__(
            f"Target returned error: {json.dumps(update, default=str)}",
            job_id=job_id,
            context={"update": update},
        )
        self.update = update

    @property
    def information(self) -> Any:
        return self.update.get("information")


class JobTimeoutError(EngineReportedError):
    """No terminal update arrived before the job's timeout expired."""


class PipelineStepFailure(TargetHelperError):
    step = "pipeline"

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        step: Optional[str] = None,
    ):
        super().__init__(message, job_id=job_id, context=context)
        if step:
            self.step = step


class DocumentFetchFailure(PipelineStepFailure):
    step = "fetch"


class SignatureApplicationFailure(PipelineStepFailure):
    step = "sign"


class LinkWriteFailure(PipelineStepFailure):
    step = "link"


class UnknownDocumentType(PipelineStepFailure):
    step = "shares"


class MalformedLookupMetadata(PipelineStepFailure):
    step = "shares"


class LookupResolutionFailure(PipelineStepFailure):
    step = "shares"


class SubmissionFailure(TargetHelperError):
    """Creating a job resource or linking it into the queue failed."""
