"""PostProcessingPipeline against an in-memory trellis"""

import pytest

from target_helper.jobs.errors import PipelineStepFailure, UnknownDocumentType
from target_helper.jobs.pipeline import PostProcessingPipeline
from target_helper.sharing import ExpandIndexCache, ShareFanoutPlanner
from target_helper.store import NotFoundError
from target_helper.store.tree import DOCUMENTS, SHARES_PENDING_JOBS, TREE, trellis_root

COI_TYPE = "application/vnd.trellisfw.coi.accord.1+json"
UNIDENTIFIED_TYPE = "application/vnd.trellisfw.unidentified"


@pytest.fixture
def pipeline(store, signer):
    planner = ShareFanoutPlanner(store, ExpandIndexCache(store))
    return PostProcessingPipeline(store, signer, planner)


class World:
    """A PDF, its document in a bucket, and a COI holder with one partner"""

    def __init__(self, store):
        self.store = store
        self.pdf = store.create_resource({"_type": "application/pdf"})
        self.partner = store.create_resource(
            {"name": "Partner", "user": {"id": "users/p", "bookmarks": {"_id": "resources/bk"}}}
        )
        self.holder = store.create_resource(
            {"name": "Holder", "trading-partners": {"p": {"_id": self.partner}}}
        )

    async def document(self, bucket: str, key: str = "doc1", trading_partner=None) -> str:
        doc = self.store.create_resource(
            {
                "_type": COI_TYPE if bucket == "cois" else UNIDENTIFIED_TYPE,
                "_meta": {
                    "vdoc": {"pdf": {"p1": {"_id": self.pdf}}},
                    "lookups": {"coi": {"holder": {"_ref": self.holder}}},
                },
            }
        )
        await self.store.put(
            f"{trellis_root(trading_partner)}/documents/{bucket}",
            {key: {"_id": doc, "_rev": 0}},
            tree=TREE,
        )
        return doc

    def output(self) -> str:
        return self.store.create_resource(
            {"_type": COI_TYPE, "holder": {"name": "Holder"}, "policies": {"cgl": {"limit": 1}}}
        )

    def job(self, document, bucket, target_result, trading_partner=None) -> str:
        body = {
            "type": "transcription",
            "service": "target",
            "config": {
                "type": "pdf",
                "pdf": {"_id": self.pdf},
                "document": {"_id": document},
                "docKey": "doc1",
                "document-type": COI_TYPE,
                "oada-doc-type": bucket,
            },
            "targetResult": target_result,
        }
        if trading_partner:
            body["trading-partner"] = trading_partner
        return self.store.create_resource(body)


def _keys(body):
    return [k for k in body if not k.startswith("_")]


class TestMatchedDocument:
    @pytest.mark.asyncio
    async def test_full_pipeline(self, store, pipeline):
        world = World(store)
        doc = await world.document("cois")
        out = world.output()
        job = world.job(doc, "cois", {"cois": {"out1": {"_id": out}}})

        result = await pipeline.run(job)

        assert result == {"cois": {"doc1": {"_id": doc}}}
        document = await store.get(f"/{doc}")
        # target's content merged into the source document, signed once
        assert document["policies"] == {"cgl": {"limit": 1}}
        assert document["_type"] == COI_TYPE
        assert len(document["signatures"]) == 1
        # result persisted on the job
        assert (await store.get(f"/{job}"))["result"] == result
        # pdf knows its vdoc by reference
        pdf_meta = await store.get(f"/{world.pdf}/_meta")
        assert pdf_meta["vdoc"] == {"cois": {"doc1": {"_ref": doc}}}
        # published as a versioned link
        published = await store.get("/bookmarks/trellisfw/cois")
        assert published["doc1"] == {"_id": doc, "_rev": 0}
        # one share job for the holder's one partner
        assert len(_keys(await store.get(SHARES_PENDING_JOBS))) == 1

    @pytest.mark.asyncio
    async def test_back_link_added_when_missing(self, store, pipeline):
        world = World(store)
        doc = await world.document("cois")
        await store.delete(f"/{doc}/_meta/vdoc")
        job = world.job(doc, "cois", {"cois": {"out1": {"_id": world.output()}}})

        await pipeline.run(job)

        meta = await store.get(f"/{doc}/_meta")
        assert meta["vdoc"]["pdf"] == {"_id": world.pdf}

    @pytest.mark.asyncio
    async def test_signing_is_idempotent_across_runs(self, store, pipeline):
        world = World(store)
        doc = await world.document("cois")
        job = world.job(doc, "cois", {"cois": {"out1": {"_id": world.output()}}})

        await pipeline.run(job)
        await pipeline.run(job)

        assert len((await store.get(f"/{doc}"))["signatures"]) == 1

    @pytest.mark.asyncio
    async def test_without_document_keeps_target_links(self, store, pipeline):
        world = World(store)
        out = world.output()
        await store.put(f"/{out}/_meta", {"lookups": {"coi": {"holder": {"_ref": world.holder}}}})
        job = store.create_resource(
            {
                "type": "transcription",
                "config": {"type": "pdf", "pdf": {"_id": world.pdf}},
                "targetResult": {"cois": {"out1": {"_id": out}}},
            }
        )

        result = await pipeline.run(job)

        assert result == {"cois": {"out1": {"_id": out}}}
        assert (await store.get(f"/{out}/_meta"))["vdoc"]["pdf"] == {"_id": world.pdf}


class TestRelocation:
    @pytest.mark.asyncio
    async def test_unidentified_document_moves_bucket(self, store, pipeline):
        world = World(store)
        doc = await world.document("unidentified")
        job = world.job(doc, "unidentified", {"cois": {"out1": {"_id": world.output()}}})

        result = await pipeline.run(job)

        assert result == {}
        with pytest.raises(NotFoundError):
            await store.get(f"{DOCUMENTS}/unidentified/doc1")
        moved = await store.get(f"{DOCUMENTS}/cois")
        assert moved["doc1"]["_id"] == doc
        assert (await store.get(f"/{doc}"))["_type"] == COI_TYPE
        assert (await store.get(f"/{doc}/_meta"))["_type"] == COI_TYPE
        # nothing past the relocation ran
        assert "signatures" not in await store.get(f"/{doc}")
        assert not await store.exists(SHARES_PENDING_JOBS)

    @pytest.mark.asyncio
    async def test_unknown_target_type_is_not_moved(self, store, pipeline):
        world = World(store)
        doc = await world.document("unidentified")
        job = world.job(doc, "unidentified", {"mystery-docs": {"out1": {"_id": world.output()}}})

        with pytest.raises(UnknownDocumentType) as exc:
            await pipeline.run(job)

        assert exc.value.step == "reconcile"
        assert (await store.get(f"{DOCUMENTS}/unidentified"))["doc1"]["_id"] == doc
        assert not await store.exists(f"{DOCUMENTS}/mystery-docs")
        assert (await store.get(f"/{doc}"))["_type"] == UNIDENTIFIED_TYPE

    @pytest.mark.asyncio
    async def test_unidentified_result_is_not_relocated(self, store, pipeline):
        world = World(store)
        doc = await world.document("unidentified")
        job = world.job(doc, "unidentified", {"unidentified": {"out1": {"_id": world.output()}}})

        # unidentified has no share lookup rule
        with pytest.raises(UnknownDocumentType):
            await pipeline.run(job)
        assert (await store.get(f"{DOCUMENTS}/unidentified"))["doc1"]["_id"] == doc


class TestTradingPartnerJobs:
    @pytest.mark.asyncio
    async def test_publishes_under_partner_and_skips_shares(self, store, pipeline):
        world = World(store)
        doc = await world.document("cois", trading_partner="tp1")
        job = world.job(
            doc, "cois", {"cois": {"out1": {"_id": world.output()}}}, trading_partner="tp1"
        )

        await pipeline.run(job)

        published = await store.get(f"{trellis_root('tp1')}/cois")
        assert published["doc1"]["_id"] == doc
        assert not await store.exists(SHARES_PENDING_JOBS)


class TestFailures:
    @pytest.mark.asyncio
    async def test_result_entry_not_a_link(self, store, pipeline):
        world = World(store)
        doc = await world.document("cois")
        job = world.job(doc, "cois", {"cois": {"out1": "resources/abc"}})

        with pytest.raises(PipelineStepFailure) as exc_info:
            await pipeline.run(job)
        assert exc_info.value.step == "reconcile"
        assert exc_info.value.job_id == job.split("/")[-1]

    @pytest.mark.asyncio
    async def test_missing_target_output(self, store, pipeline):
        world = World(store)
        doc = await world.document("cois")
        job = world.job(doc, "cois", {"cois": {"out1": {"_id": "resources/gone"}}})

        with pytest.raises(PipelineStepFailure) as exc_info:
            await pipeline.run(job)
        assert exc_info.value.step == "fetch"


class TestTranscriptionOnly:
    @pytest.mark.asyncio
    async def test_result_is_target_output(self, store, pipeline):
        world = World(store)
        out = world.output()
        job = store.create_resource(
            {
                "type": "transcription-only",
                "config": {"pdf": {"_id": world.pdf}, "sign": True, "useRefs": True},
                "targetResult": {"cois": {"out1": {"_id": out}}},
            }
        )

        result = await pipeline.run_transcription_only(job)

        assert result == {"cois": {"out1": {"_id": out}}}
        assert (await store.get(f"/{job}"))["result"] == result
        assert len((await store.get(f"/{out}"))["signatures"]) == 1
        assert (await store.get(f"/{world.pdf}/_meta"))["vdoc"]["cois"]["out1"] == {"_ref": out}

    @pytest.mark.asyncio
    async def test_defaults_skip_sign_and_refs(self, store, pipeline):
        world = World(store)
        out = world.output()
        job = store.create_resource(
            {"type": "transcription-only", "targetResult": {"cois": {"out1": {"_id": out}}}}
        )

        await pipeline.run_transcription_only(job)

        assert "signatures" not in await store.get(f"/{out}")
