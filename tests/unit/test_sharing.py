"""Expand-index cache and share fan-out planning"""

import pytest

from target_helper.jobs.errors import (
    MalformedLookupMetadata,
    UnknownDocumentType,
)
from target_helper.shared.config import MaskRule
from target_helper.sharing import ExpandIndexCache, ShareFanoutPlanner
from target_helper.store.tree import (
    SHARES_PENDING_JOBS,
    TRADING_PARTNERS_EXPAND_INDEX,
    TREE,
)


def _partner(store, name: str) -> str:
    return store.create_resource(
        {"name": name, "user": {"id": f"users/{name}", "bookmarks": {"_id": "resources/bk"}}}
    )


async def _seed_expand_index(store, entries):
    await store.put(TRADING_PARTNERS_EXPAND_INDEX, entries, tree=TREE)


class TestExpandIndexCache:
    @pytest.mark.asyncio
    async def test_loads_once(self, store):
        await _seed_expand_index(store, {"tp1": {"id": "resources/tp1", "name": "One"}})
        cache = ExpandIndexCache(store)

        first = await cache.get()
        second = await cache.get()

        assert first is second
        assert cache.loads == 1
        assert "tp1" in first["trading-partners"]
        assert "_id" not in first["trading-partners"]
        assert dict(first["coi-holders"]) == {}

    @pytest.mark.asyncio
    async def test_read_only(self, store):
        cache = ExpandIndexCache(store)
        index = await cache.get()
        with pytest.raises(TypeError):
            index["trading-partners"]["x"] = {}

    @pytest.mark.asyncio
    async def test_invalidate_reloads(self, store):
        cache = ExpandIndexCache(store)
        await cache.get()
        await _seed_expand_index(store, {"tp2": {"id": "resources/tp2"}})
        cache.invalidate()
        assert not cache.loaded
        assert "tp2" in (await cache.get())["trading-partners"]
        assert cache.loads == 2


class TestShareFanoutPlanner:
    def _planner(self, store, rules=None):
        return ShareFanoutPlanner(store, ExpandIndexCache(store), rules)

    @pytest.mark.asyncio
    async def test_coi_partners_from_holder(self, store):
        tp1, tp2 = _partner(store, "one"), _partner(store, "two")
        holder = store.create_resource(
            {"name": "Holder", "trading-partners": {"a": {"_id": tp1}, "b": {"_id": tp2}}}
        )
        doc = store.create_resource(
            {"_meta": {"lookups": {"coi": {"holder": {"_ref": holder}}}}}
        )

        partners = await self._planner(store).partners_for("cois", doc)
        assert partners == [tp1, tp2]

    @pytest.mark.asyncio
    async def test_audit_partners_from_expand_index(self, store):
        facility = store.create_resource({"name": "Plant"})
        await _seed_expand_index(
            store,
            {
                "no-facilities": {"id": "resources/nf"},
                "other": {"id": "resources/other", "facilities": {"x": {"_id": "resources/elsewhere"}}},
                "match": {"id": "resources/match", "facilities": {"y": {"_id": facility}}},
            },
        )
        doc = store.create_resource(
            {"_meta": {"lookups": {"fsqa-audit": {"organization": {"_ref": facility}}}}}
        )

        partners = await self._planner(store).partners_for("fsqa-audits", doc)
        # partners without facilities are skipped, not the end of the scan
        assert partners == ["resources/match"]

    @pytest.mark.asyncio
    async def test_unknown_document_type(self, store):
        doc = store.create_resource({})
        with pytest.raises(UnknownDocumentType):
            await self._planner(store).partners_for("ach-forms", doc)

    @pytest.mark.asyncio
    async def test_malformed_lookups(self, store):
        doc = store.create_resource({"_meta": {"lookups": {"coi": {}}}})
        with pytest.raises(MalformedLookupMetadata):
            await self._planner(store).partners_for("cois", doc)

    @pytest.mark.asyncio
    async def test_plan_deduplicates_pairs(self, store):
        tp1 = _partner(store, "one")
        holder = store.create_resource(
            {"trading-partners": {"a": {"_id": tp1}, "again": {"_id": tp1}}}
        )
        doc = store.create_resource(
            {"_meta": {"lookups": {"coi": {"holder": {"_ref": holder}}}}}
        )

        shares = await self._planner(store).plan({"cois": {"k": {"_id": doc}}})
        assert len(shares) == 1
        assert shares[0].partner_id == tp1
        assert shares[0].doc_key == "k"

    @pytest.mark.asyncio
    async def test_fan_out_posts_share_jobs(self, store):
        tp1 = _partner(store, "one")
        holder = store.create_resource({"trading-partners": {"a": {"_id": tp1}}})
        doc = store.create_resource(
            {"_meta": {"lookups": {"coi": {"holder": {"_ref": holder}}}}}
        )

        await self._planner(store).fan_out({"cois": {"k": {"_id": doc}}}, job_id="job1")

        pending = await store.get(SHARES_PENDING_JOBS)
        keys = [k for k in pending if not k.startswith("_")]
        assert len(keys) == 1
        share_job = await store.get(f"/{pending[keys[0]]['_id']}")
        assert share_job["type"] == "share-user-link"
        assert share_job["service"] == "trellis-shares"
        config = share_job["config"]
        assert config["src"] == f"/{doc}"
        assert config["dest"] == "/bookmarks/trellisfw/cois/k"
        assert config["user"]["id"] == "users/one"
        assert config["chroot"].endswith(f"{tp1.split('/')[-1]}/user/bookmarks")
        assert config["copy"]["mask"] is False

    def test_mask_rules(self, store):
        planner = self._planner(
            store,
            [MaskRule(partner_pattern="REDDYRAW", generate_pdf_for=["cois"])],
        )
        assert planner.mask_for("acme", "cois") is False
        mask = planner.mask_for("REDDYRAW-123", "cois")
        assert mask == {"keys_to_mask": ["location"], "generate_pdf": True}
        assert planner.mask_for("REDDYRAW-123", "fsqa-audits")["generate_pdf"] is False
