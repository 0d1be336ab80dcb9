"""
Ingestion watchers: turn new documents and ASNs into target jobs.

    DocumentWatcher         <root>/documents/<bucket>/<key>, one job per PDF
    AsnWatcher              /bookmarks/trellisfw/asns/day-index/<day>/<key>
    PartnerWatchRegistry    one DocumentWatcher per trading partner's shared space
"""

from typing import Any, Callable, Dict, List, Optional

from target_helper.jobs.submission import JobSubmission
from target_helper.shared.observability import get_logger
from target_helper.shared.observability.metrics import ingestion_skips_total
from target_helper.store.base import NotFoundError, ResourceStore
from target_helper.store.links import iter_links
from target_helper.store.tree import ASNS, TRADING_PARTNERS, TREE, trellis_root

from .listwatch import ListItem, ListWatcher

logger = get_logger(__name__)


async def _get_meta(store: ResourceStore, resource_id: str) -> Dict[str, Any]:
    try:
        meta = await store.get(f"/{resource_id}/_meta")
    except NotFoundError:
        return {}
    return meta if isinstance(meta, dict) else {}


def pdf_links(meta: Dict[str, Any]) -> List[str]:
    """
    PDF resource ids under _meta/vdoc/pdf, which holds either a single link
    or a map of links.
    """
    vdoc = meta.get("vdoc")
    if not isinstance(vdoc, dict):
        return []
    return [leaf.id for _, leaf in iter_links(vdoc.get("pdf"))]


class DocumentWatcher:
    """Submits a transcription job for each new document with a PDF."""

    source = "documents"

    def __init__(
        self,
        store: ResourceStore,
        submission: JobSubmission,
        trading_partner: Optional[str] = None,
    ):
        self.store = store
        self.submission = submission
        self.trading_partner = trading_partner
        self.path = f"{trellis_root(trading_partner)}/documents"
        self.list_watch = ListWatcher(
            store,
            self.path,
            self.document_added,
            items=("*", "*"),
            assume_handled=True,
            name=f"documents:{trading_partner}" if trading_partner else "documents",
        )

    async def start(self) -> None:
        await self.store.ensure(self.path, {}, tree=TREE)
        await self.list_watch.start()

    async def stop(self) -> None:
        await self.list_watch.stop()

    def _skip(self, reason: str, item: ListItem) -> None:
        ingestion_skips_total.labels(source=self.source, reason=reason).inc()
        logger.info(
            "document_skipped",
            reason=reason,
            document=item.id,
            bucket=item.path[0],
            key=item.key,
            trading_partner=self.trading_partner,
        )

    async def document_added(self, item: ListItem) -> None:
        bucket = item.path[0]
        logger.info("document_added", bucket=bucket, key=item.key, document=item.id)
        meta = await _get_meta(self.store, item.id)

        services = meta.get("services")
        if isinstance(services, dict) and services.get("target"):
            self._skip("already_processed", item)
            return

        pdfs = pdf_links(meta)
        if not pdfs:
            self._skip("no_pdf", item)
            return

        for pdf_id in pdfs:
            await self.submission.submit_document(
                pdf_id,
                item.id,
                item.key,
                bucket,
                trading_partner=self.trading_partner,
            )


class AsnWatcher:
    """
    Submits an asn job for each new ASN, unless the ASN's last target job
    already succeeded. ``_meta/services/target/force`` overrides that check.
    """

    source = "asns"

    def __init__(self, store: ResourceStore, submission: JobSubmission):
        self.store = store
        self.submission = submission
        self.list_watch = ListWatcher(
            store,
            ASNS,
            self.asn_added,
            items=("day-index", "*", "*"),
            assume_handled=True,
            name="asns",
        )

    async def start(self) -> None:
        await self.store.ensure(ASNS, {}, tree=TREE)
        await self.list_watch.start()

    async def stop(self) -> None:
        await self.list_watch.stop()

    async def last_job_succeeded(self, target_meta: Dict[str, Any]) -> bool:
        jobs = target_meta.get("jobs")
        if not isinstance(jobs, dict):
            return False
        keys = sorted(k for k in jobs if not k.startswith("_"))
        if not keys:
            return False
        ref = jobs[keys[-1]]
        last_id = (ref.get("_ref") or ref.get("_id")) if isinstance(ref, dict) else None
        if not last_id:
            return False
        last_job = await self.store.get(f"/{last_id}")
        status = last_job.get("status") if isinstance(last_job, dict) else None
        return isinstance(status, str) and status.lower() == "success"

    async def asn_added(self, item: ListItem) -> None:
        logger.info("asn_added", key=item.key, asn=item.id)
        meta = await _get_meta(self.store, item.id)
        services = meta.get("services")
        target_meta = services.get("target") if isinstance(services, dict) else None
        target_meta = target_meta if isinstance(target_meta, dict) else {}

        if target_meta.get("force"):
            logger.info("asn_forced", key=item.key, asn=item.id)
        elif await self.last_job_succeeded(target_meta):
            ingestion_skips_total.labels(source=self.source, reason="already_succeeded").inc()
            logger.info("asn_skipped_last_job_succeeded", key=item.key, asn=item.id)
            return

        await self.submission.submit_asn(item.id, item.key)


class PartnerWatchRegistry:
    """Keeps one DocumentWatcher per trading partner."""

    def __init__(
        self,
        store: ResourceStore,
        factory: Callable[[str], DocumentWatcher],
    ):
        self.store = store
        self.factory = factory
        self.watchers: Dict[str, DocumentWatcher] = {}
        self.list_watch = ListWatcher(
            store,
            TRADING_PARTNERS,
            self.partner_added,
            items=("*",),
            assume_handled=False,
            name="trading-partners",
        )

    async def start(self) -> None:
        await self.store.ensure(TRADING_PARTNERS, {}, tree=TREE)
        await self.list_watch.start()

    async def partner_added(self, item: ListItem) -> None:
        # the expand and masterid indexes live next to the partners
        if item.key.endswith("-index"):
            return
        await self.start_partner(item.key)

    async def start_partner(self, key: str) -> Optional[DocumentWatcher]:
        key = key.lstrip("/")
        if key in self.watchers:
            return None
        logger.info("trading_partner_detected", trading_partner=key)
        watcher = self.factory(key)
        await watcher.start()
        self.watchers[key] = watcher
        return watcher

    async def stop_partner(self, key: str) -> None:
        watcher = self.watchers.pop(key, None)
        if watcher is not None:
            await watcher.stop()

    async def stop_all(self) -> None:
        await self.list_watch.stop()
        for key in list(self.watchers):
            await self.stop_partner(key)
        logger.info("partner_watchers_stopped")
