"""Creates target job resources and queues them for the job service."""

from typing import Any, Dict, Optional

from target_helper.documents import DocumentTypeRegistry, get_registry
from target_helper.shared.observability import get_logger
from target_helper.shared.observability.metrics import ingestion_submissions_total
from target_helper.store.base import ResourceStore, StoreError, resource_id
from target_helper.store.tree import JOB_CONTENT_TYPE, PENDING_JOBS, TREE

from .errors import SubmissionFailure

logger = get_logger(__name__)

SERVICE = "target"


class JobSubmission:
    def __init__(
        self,
        store: ResourceStore,
        registry: Optional[DocumentTypeRegistry] = None,
        pending_path: str = PENDING_JOBS,
    ):
        self.store = store
        self.registry = registry or get_registry()
        self.pending_path = pending_path

    async def submit(self, job: Dict[str, Any], source: str = "manual") -> str:
        """
        POST the job as a new resource and link it into the pending queue
        under the same key.

        Returns:
            The job's resource id (``resources/<key>``)

        Raises:
            SubmissionFailure: if either write fails
        """
        try:
            location = await self.store.post(
                "/resources", job, content_type=JOB_CONTENT_TYPE
            )
        except StoreError as e:
            logger.error("job_create_failed", source=source, error=str(e))
            raise SubmissionFailure(f"Failed to create {job.get('type')} job: {e}") from e

        job_id, job_key = resource_id(location)
        try:
            await self.store.put(
                self.pending_path,
                {job_key: {"_id": job_id, "_rev": 0}},
                tree=TREE,
            )
        except StoreError as e:
            logger.error(
                "job_queue_link_failed", job_id=job_key, source=source, error=str(e)
            )
            raise SubmissionFailure(
                f"Failed to PUT link in jobs queue for new job {job_id}: {e}",
                job_id=job_key,
            ) from e

        ingestion_submissions_total.labels(source=source).inc()
        logger.info("job_submitted", job_id=job_key, job_type=job.get("type"), source=source)
        return job_id

    async def submit_document(
        self,
        pdf_id: str,
        document_id: str,
        doc_key: str,
        bucket: str,
        trading_partner: Optional[str] = None,
    ) -> str:
        """Queue a transcription job for one PDF of a document."""
        config: Dict[str, Any] = {
            "type": "pdf",
            "pdf": {"_id": pdf_id},
            "document": {"_id": document_id},
            "docKey": doc_key,
            "document-type": self.registry.content_type_for(bucket) or bucket,
            "oada-doc-type": bucket,
        }
        job: Dict[str, Any] = {
            "type": "transcription",
            "service": SERVICE,
            "config": config,
        }
        if trading_partner:
            job["trading-partner"] = trading_partner
        return await self.submit(job, source="documents")

    async def submit_asn(self, asn_id: str, asn_key: str) -> str:
        """Queue an asn job for target."""
        job = {
            "type": "asn",
            "service": SERVICE,
            "config": {
                "type": "asn",
                "asn": {"_id": asn_id},
                "documentsKey": asn_key,
            },
        }
        return await self.submit(job, source="asns")
