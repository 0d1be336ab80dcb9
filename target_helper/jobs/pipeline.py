"""
Post-processing pipeline run once target reports success for a PDF job.

Steps run in order and the first failure aborts the rest:

1. reconcile   - fold target's output into the source document, or relocate a
                 mis-bucketed "unidentified" document and stop
2. persist     - write the reconciled result onto the job
3. sign        - append a signature to every result document
4. cross_link  - record the result as refs under the PDF's _meta/vdoc
5. publish     - versioned links under the trellis (or partner) bookmarks
6. shares      - one share job per (trading partner, document)
"""

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from target_helper.documents import DocumentTypeRegistry, get_registry
from target_helper.shared.observability import LoggerAdapter, get_logger
from target_helper.shared.observability.metrics import pipeline_step_failures_total
from target_helper.sharing import ShareFanoutPlanner
from target_helper.signing import SigningService
from target_helper.store.base import NotFoundError, ResourceStore, StoreError
from target_helper.store.links import iter_links, link_ids, links_to_refs, links_to_versioned
from target_helper.store.tree import (
    TREE,
    partner_tree,
    tree_for_document_type,
    trellis_root,
)

from .errors import (
    DocumentFetchFailure,
    LinkWriteFailure,
    PipelineStepFailure,
    UnknownDocumentType,
)
from .models import TargetJob

logger = get_logger(__name__)

UNIDENTIFIED = "unidentified"

# keys owned by the store; never copied between resources
RESERVED_KEYS = ("_id", "_rev", "_type", "_meta")


@dataclass
class PipelineContext:
    job_key: str
    job: TargetJob
    result: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    finished: bool = False

    @property
    def job_id(self) -> str:
        return f"resources/{self.job_key}"


Step = Callable[[PipelineContext], Awaitable[None]]


class PostProcessingPipeline:
    def __init__(
        self,
        store: ResourceStore,
        signer: SigningService,
        planner: ShareFanoutPlanner,
        registry: Optional[DocumentTypeRegistry] = None,
    ):
        self.store = store
        self.signer = signer
        self.planner = planner
        self.registry = registry or get_registry()

    @property
    def steps(self) -> List[tuple]:
        return [
            ("reconcile", self._reconcile),
            ("persist", self._persist),
            ("sign", self._sign),
            ("cross_link", self._cross_link),
            ("publish", self._publish),
            ("shares", self._shares),
        ]

    async def run(self, job_id: str) -> Dict[str, Dict[str, Any]]:
        """Run every step for the job; returns the job's result."""
        ctx = await self._load(job_id)
        log = LoggerAdapter(logger, job_id=ctx.job_key)
        start = time.time()
        await self._run_steps(ctx, self.steps, log)
        log.info(
            "pipeline_complete",
            duration_ms=round((time.time() - start) * 1000, 2),
            documents=sum(len(docs) for docs in ctx.result.values()),
            relocated=ctx.finished,
        )
        return ctx.result

    async def run_transcription_only(self, job_id: str) -> Dict[str, Dict[str, Any]]:
        """
        Short pipeline for transcription-only jobs: target's output is the
        result as is. Signing and PDF refs are opt-in via the job config.
        """
        ctx = await self._load(job_id)
        ctx.result = dict(ctx.job.target_result)
        steps = [("persist", self._persist)]
        if ctx.job.config.sign:
            steps.append(("sign", self._sign))
        if ctx.job.config.use_refs:
            steps.append(("cross_link", self._cross_link))
        await self._run_steps(ctx, steps, LoggerAdapter(logger, job_id=ctx.job_key))
        return ctx.result

    async def _run_steps(
        self, ctx: PipelineContext, steps: List[tuple], log: LoggerAdapter
    ) -> None:
        for name, step in steps:
            log.debug("pipeline_step", step=name)
            try:
                await step(ctx)
            except PipelineStepFailure as e:
                e.job_id = e.job_id or ctx.job_key
                pipeline_step_failures_total.labels(step=e.step).inc()
                log.error("pipeline_step_failed", step=name, error=str(e))
                raise
            except StoreError as e:
                pipeline_step_failures_total.labels(step=name).inc()
                log.error("pipeline_step_failed", step=name, error=str(e))
                raise PipelineStepFailure(
                    f"Step {name} failed: {e}", job_id=ctx.job_key, step=name
                ) from e
            if ctx.finished:
                log.info("pipeline_stopped_early", step=name)
                return

    async def _load(self, job_id: str) -> PipelineContext:
        job_key = job_id.strip("/").replace("resources/", "", 1)
        try:
            body = await self.store.get(f"/resources/{job_key}")
        except StoreError as e:
            raise DocumentFetchFailure(
                f"Could not fetch job resources/{job_key}: {e}", job_id=job_key
            ) from e
        try:
            job = TargetJob.model_validate(body)
        except ValidationError as e:
            raise PipelineStepFailure(
                f"Job resources/{job_key} is not a valid target job: {e}",
                job_id=job_key,
                step="load",
            ) from e
        return PipelineContext(job_key=job_key, job=job)

    # ---- reconcile ----

    def _needs_relocation(self, job: TargetJob, doctype: str) -> bool:
        hint = job.config.oada_doc_type
        if hint != UNIDENTIFIED or doctype == hint:
            return False
        if self.registry.is_alias(doctype, hint):
            return False
        return bool(job.document_id and job.config.doc_key)

    async def _reconcile(self, ctx: PipelineContext) -> None:
        job = ctx.job
        for doctype, items in job.target_result.items():
            if not isinstance(items, dict):
                raise PipelineStepFailure(
                    f"targetResult.{doctype} is not a map of links",
                    job_id=ctx.job_key,
                    step="reconcile",
                )

            if self._needs_relocation(job, doctype):
                await self._relocate(ctx, doctype)
                ctx.result = {}
                ctx.finished = True
                return

            for item_key, link in items.items():
                if item_key.startswith("_"):
                    continue
                if not isinstance(link, dict) or not link.get("_id"):
                    raise PipelineStepFailure(
                        f"targetResult.{doctype}.{item_key} is not a link",
                        job_id=ctx.job_key,
                        step="reconcile",
                    )
                bucket = ctx.result.setdefault(doctype, {})
                if job.document_id:
                    await self._merge_into_document(ctx, link["_id"])
                    bucket[job.config.doc_key or item_key] = {"_id": job.document_id}
                else:
                    bucket[item_key] = {"_id": link["_id"]}

        for _, leaf in iter_links(ctx.result):
            await self._ensure_pdf_backlink(ctx, leaf.id)

    async def _relocate(self, ctx: PipelineContext, doctype: str) -> None:
        """Move the document out of the unidentified bucket into doctype."""
        job = ctx.job
        doc_id, doc_key = job.document_id, job.config.doc_key
        root = trellis_root(job.trading_partner)
        content_type = self.registry.content_type_for(doctype)
        if not content_type:
            # nothing is moved for a bucket we cannot type
            raise UnknownDocumentType(
                f"Cannot relocate {doc_id} to unknown document type {doctype}",
                job_id=ctx.job_key,
                step="reconcile",
            )
        logger.info(
            "document_relocating",
            job_id=ctx.job_key,
            document=doc_id,
            to_bucket=doctype,
        )
        try:
            await self.store.delete(f"{root}/documents/{UNIDENTIFIED}/{doc_key}")
            await self.store.put(f"/{doc_id}", {"_type": content_type})
            await self.store.put(f"/{doc_id}/_meta", {"_type": content_type})
            await self.store.put(
                f"{root}/documents/{doctype}",
                {doc_key: {"_id": doc_id, "_rev": 0}},
                tree=TREE,
            )
        except StoreError as e:
            raise LinkWriteFailure(
                f"Failed to move {doc_id} from {UNIDENTIFIED} to {doctype}: {e}",
                job_id=ctx.job_key,
                step="reconcile",
            ) from e

    async def _merge_into_document(self, ctx: PipelineContext, source_id: str) -> None:
        document_id = ctx.job.document_id
        if source_id == document_id:
            return
        try:
            source = await self.store.get(f"/{source_id}")
        except StoreError as e:
            raise DocumentFetchFailure(
                f"Could not fetch target output /{source_id}: {e}",
                job_id=ctx.job_key,
            ) from e
        content = {k: v for k, v in source.items() if k not in RESERVED_KEYS}
        try:
            await self.store.put(f"/{document_id}", content)
        except StoreError as e:
            raise LinkWriteFailure(
                f"Failed to merge /{source_id} into /{document_id}: {e}",
                job_id=ctx.job_key,
                step="reconcile",
            ) from e

    async def _ensure_pdf_backlink(self, ctx: PipelineContext, doc_id: str) -> None:
        pdf_id = ctx.job.pdf_id
        if not pdf_id:
            return
        try:
            meta = await self.store.get(f"/{doc_id}/_meta")
        except NotFoundError:
            meta = {}
        vdoc = meta.get("vdoc") if isinstance(meta, dict) else None
        existing = vdoc.get("pdf") if isinstance(vdoc, dict) else None
        if pdf_id in link_ids(existing):
            return
        try:
            await self.store.put(f"/{doc_id}/_meta", {"vdoc": {"pdf": {"_id": pdf_id}}})
        except StoreError as e:
            raise LinkWriteFailure(
                f"Failed to link /{doc_id}/_meta/vdoc/pdf to {pdf_id}: {e}",
                job_id=ctx.job_key,
                step="reconcile",
            ) from e

    # ---- persist / sign / link ----

    async def _persist(self, ctx: PipelineContext) -> None:
        try:
            await self.store.put(f"/{ctx.job_id}", {"result": ctx.result})
        except StoreError as e:
            raise LinkWriteFailure(
                f"Failed to write result to /{ctx.job_id}: {e}",
                job_id=ctx.job_key,
                step="persist",
            ) from e

    async def _sign(self, ctx: PipelineContext) -> None:
        for _, leaf in iter_links(ctx.result):
            await self.signer.sign_resource(self.store, leaf.id)

    async def _cross_link(self, ctx: PipelineContext) -> None:
        pdf_id = ctx.job.pdf_id
        if not pdf_id:
            logger.warning("cross_link_skipped_no_pdf", job_id=ctx.job_key)
            return
        try:
            await self.store.put(
                f"/{pdf_id}/_meta", {"vdoc": links_to_refs(ctx.result)}
            )
        except StoreError as e:
            raise LinkWriteFailure(
                f"Failed to link result under /{pdf_id}/_meta/vdoc: {e}",
                job_id=ctx.job_key,
                step="cross_link",
            ) from e

    async def _publish(self, ctx: PipelineContext) -> None:
        partner = ctx.job.trading_partner
        root = trellis_root(partner)
        for doctype, documents in ctx.result.items():
            try:
                tree = partner_tree(doctype) if partner else tree_for_document_type(doctype)
            except ValueError as e:
                logger.warning("publish_without_tree", doctype=doctype, reason=str(e))
                tree = None
            try:
                await self.store.put(
                    f"{root}/{doctype}", links_to_versioned(documents), tree=tree
                )
            except StoreError as e:
                raise LinkWriteFailure(
                    f"Failed to publish {doctype} under {root}: {e}",
                    job_id=ctx.job_key,
                    step="publish",
                ) from e

    async def _shares(self, ctx: PipelineContext) -> None:
        if ctx.job.trading_partner:
            logger.info(
                "shares_skipped_partner_job",
                job_id=ctx.job_key,
                trading_partner=ctx.job.trading_partner,
            )
            return
        await self.planner.fan_out(ctx.result, job_id=ctx.job_key)
