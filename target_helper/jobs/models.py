"""Job and update models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ConfigDict, Field

from target_helper.shared.models import TargetBaseModel


class UpdateStatus(str, Enum):
    """Statuses target posts into a job's update log."""

    IDENTIFYING = "identifying"
    IDENTIFIED = "identified"
    SUCCESS = "success"
    ERROR = "error"


class JobStatus(str, Enum):
    """Statuses the job runner records on the job itself."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


class Link(TargetBaseModel):
    id: str = Field(alias="_id")


class JobConfig(TargetBaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Optional[str] = None
    pdf: Optional[Link] = None
    asn: Optional[Link] = None
    document: Optional[Link] = None
    doc_key: Optional[str] = Field(default=None, alias="docKey")
    documents_key: Optional[str] = Field(default=None, alias="documentsKey")
    document_type: Optional[str] = Field(default=None, alias="document-type")
    oada_doc_type: Optional[str] = Field(default=None, alias="oada-doc-type")
    sign: bool = False
    use_refs: bool = Field(default=False, alias="useRefs")


class TargetJob(TargetBaseModel):
    """A job resource as stored under the target service's job queue."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = Field(default=None, alias="_id")
    type: str = "transcription"
    service: str = "target"
    config: JobConfig = Field(default_factory=JobConfig)
    status: Optional[str] = None
    trading_partner: Optional[str] = Field(default=None, alias="trading-partner")
    target_result: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, alias="targetResult"
    )
    result: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    updates: Dict[str, Any] = Field(default_factory=dict)

    @property
    def pdf_id(self) -> Optional[str]:
        return self.config.pdf.id if self.config.pdf else None

    @property
    def document_id(self) -> Optional[str]:
        return self.config.document.id if self.config.document else None


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_time(value: Any) -> Any:
    """
    Normalize an update time to ISO-8601.

    Accepts unix epoch seconds (number or numeric string) or an ISO-8601
    string. Anything that cannot be parsed is returned unchanged.
    """
    if isinstance(value, bool) or value is None:
        return value
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        seconds = None
    if seconds is not None:
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
        except (OverflowError, OSError, ValueError):
            return value
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.isoformat()
    return value
