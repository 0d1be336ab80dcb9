"""
Job handlers registered with the JobService, one per job ``type``.

    transcription       PDF jobs: watch target, then run the full pipeline
    asn                 ASN jobs: watch target, nothing to post-process
    transcription-only  watch target, then keep target's output as the result
"""

from typing import Any, Dict, Optional

from target_helper.shared.config import Config
from target_helper.shared.observability import get_logger
from target_helper.sharing import ExpandIndexCache
from target_helper.store.base import ResourceStore, StoreError

from .controller import JobLifecycleController
from .errors import LinkWriteFailure
from .models import TargetJob
from .pipeline import PostProcessingPipeline

logger = get_logger(__name__)


class TargetJobHandlers:
    def __init__(
        self,
        store: ResourceStore,
        config: Config,
        pipeline: PostProcessingPipeline,
        expand_index: Optional[ExpandIndexCache] = None,
    ):
        self.store = store
        self.config = config
        self.pipeline = pipeline
        self.expand_index = expand_index

    def register(self, service) -> None:
        service.register("transcription", self.handle_pdf)
        service.register("asn", self.handle_asn)
        service.register("transcription-only", self.handle_transcription_only)

    async def _link_job(self, job_key: str, source_id: Optional[str]) -> None:
        """Reference the job from its source resource's _meta."""
        if not source_id:
            return
        try:
            await self.store.put(
                f"/{source_id}/_meta/services/target/jobs",
                {job_key: {"_ref": f"resources/{job_key}"}},
            )
        except StoreError as e:
            raise LinkWriteFailure(
                f"Failed to link job under /{source_id}/_meta: {e}",
                job_id=job_key,
                step="link_job",
            ) from e

    async def handle_pdf(self, job_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        job = TargetJob.model_validate(body)
        # pdf only: the document watcher skips documents carrying a target
        # marker, and a relocated document must be submitted again
        await self._link_job(job_key, job.pdf_id)
        if self.expand_index is not None:
            # loaded up front so a broken index fails before target runs
            await self.expand_index.get()

        async def on_success() -> Dict[str, Any]:
            return await self.pipeline.run(job_key)

        controller = JobLifecycleController(
            self.store,
            job_key,
            self.config.timeouts.pdf,
            on_success=on_success,
            job_type=job.type,
        )
        return await controller.run()

    async def handle_asn(self, job_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        job = TargetJob.model_validate(body)
        await self._link_job(job_key, job.config.asn.id if job.config.asn else None)
        controller = JobLifecycleController(
            self.store, job_key, self.config.timeouts.asn, job_type="asn"
        )
        return await controller.run()

    async def handle_transcription_only(
        self, job_key: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        async def on_success() -> Dict[str, Any]:
            return await self.pipeline.run_transcription_only(job_key)

        controller = JobLifecycleController(
            self.store,
            job_key,
            self.config.timeouts.pdf,
            on_success=on_success,
            job_type="transcription-only",
        )
        return await controller.run()
