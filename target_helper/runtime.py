"""
Process wiring: one TargetHelperApp per OADA token.

Each app owns its store connection, the job service with its handlers, the
ingestion watchers and the pending job reaper.
"""

import asyncio
from typing import List, Optional

from target_helper.documents import get_registry
from target_helper.ingestion import (
    AsnWatcher,
    DocumentWatcher,
    PartnerWatchRegistry,
    PendingJobReaper,
)
from target_helper.jobs.handlers import TargetJobHandlers
from target_helper.jobs.pipeline import PostProcessingPipeline
from target_helper.jobs.service import JobService
from target_helper.jobs.submission import JobSubmission
from target_helper.shared.config import Config, Settings
from target_helper.shared.observability import get_logger
from target_helper.shared.tasks import create_monitored_task
from target_helper.sharing import ExpandIndexCache, ShareFanoutPlanner
from target_helper.signing import SigningService
from target_helper.store.base import ResourceStore
from target_helper.store.http import HttpResourceStore

log = get_logger(__name__)


class TargetHelperApp:
    def __init__(
        self,
        store: ResourceStore,
        config: Config,
        signer: SigningService,
        watch_documents: bool = True,
        watch_asns: bool = True,
    ):
        self.store = store
        self.config = config
        registry = get_registry()

        self.expand_index = ExpandIndexCache(store)
        self.planner = ShareFanoutPlanner(
            store, self.expand_index, config.sharing.mask_rules
        )
        self.pipeline = PostProcessingPipeline(store, signer, self.planner, registry)
        self.submission = JobSubmission(store, registry)

        self.service = JobService(store, concurrency=config.oada.concurrency)
        TargetJobHandlers(store, config, self.pipeline, self.expand_index).register(
            self.service
        )

        self.document_watcher: Optional[DocumentWatcher] = (
            DocumentWatcher(store, self.submission) if watch_documents else None
        )
        self.asn_watcher: Optional[AsnWatcher] = (
            AsnWatcher(store, self.submission) if watch_asns else None
        )
        self.partners: Optional[PartnerWatchRegistry] = None
        if config.trading_partners_enabled and watch_documents:
            self.partners = PartnerWatchRegistry(
                store,
                lambda key: DocumentWatcher(store, self.submission, trading_partner=key),
            )
        self.reaper = PendingJobReaper(
            store,
            interval_seconds=config.reaper.interval_seconds,
            enabled=config.reaper.enabled,
        )
        self._reaper_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        await self.reaper.reap_once()
        self._reaper_task = create_monitored_task(
            self.reaper.reap_loop(), name="pending_job_reaper"
        )
        await self.service.start()
        if self.partners is not None:
            await self.partners.start()
        if self.document_watcher is not None:
            await self.document_watcher.start()
        if self.asn_watcher is not None:
            await self.asn_watcher.start()
        log.info(
            "target_helper_ready",
            trading_partners=self.partners is not None,
            documents=self.document_watcher is not None,
            asns=self.asn_watcher is not None,
        )

    async def stop(self) -> None:
        if self.asn_watcher is not None:
            await self.asn_watcher.stop()
        if self.document_watcher is not None:
            await self.document_watcher.stop()
        if self.partners is not None:
            await self.partners.stop_all()
        await self.service.stop()
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            await asyncio.gather(self._reaper_task, return_exceptions=True)
        await self.store.close()


def build_apps(config: Config, settings: Settings) -> List[TargetHelperApp]:
    signer = SigningService.from_config(config.signing)
    apps = []
    for token in settings.tokens:
        store = HttpResourceStore(
            settings.oada_domain,
            token,
            scheme=config.oada.scheme,
            timeout_seconds=config.oada.request_timeout_seconds,
            poll_interval=config.oada.watch_poll_interval_seconds,
            watch_max_failures=config.oada.watch_max_poll_failures,
            concurrency=config.oada.concurrency,
            verify_tls=config.oada.verify_tls,
        )
        apps.append(TargetHelperApp(store, config, signer))
    log.info("target_helper_apps_built", domain=settings.oada_domain, count=len(apps))
    return apps
