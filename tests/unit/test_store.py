"""In-memory resource store, tree PUTs and link helpers"""

import asyncio

import httpx
import pytest

from target_helper.ingestion import ListWatcher
from target_helper.store import HttpResourceStore, NotFoundError, StoreError
from target_helper.store.links import (
    iter_links,
    link_ids,
    links_to_refs,
    links_to_versioned,
)
from target_helper.store.tree import (
    DOCUMENTS,
    PENDING_JOBS,
    TREE,
    partner_tree,
    singular_document_type,
    tree_for_document_type,
    trellis_root,
)


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_tree_put_creates_linked_resources(self, store):
        doc = store.create_resource({"name": "a coi"})
        await store.put(f"{DOCUMENTS}/cois", {"abc": {"_id": doc, "_rev": 0}}, tree=TREE)

        bucket = await store.get(f"{DOCUMENTS}/cois")
        assert bucket["abc"]["_id"] == doc
        assert bucket["_id"].startswith("resources/")
        # traversal follows the link into the document
        assert (await store.get(f"{DOCUMENTS}/cois/abc"))["name"] == "a coi"

    @pytest.mark.asyncio
    async def test_put_deep_merges(self, store):
        rid = store.create_resource({"a": {"b": 1}})
        await store.put(f"/{rid}", {"a": {"c": 2}})
        body = await store.get(f"/{rid}")
        assert body["a"] == {"b": 1, "c": 2}
        assert body["_rev"] == 2

    @pytest.mark.asyncio
    async def test_missing_path(self, store):
        with pytest.raises(NotFoundError):
            await store.get("/resources/missing")
        assert await store.exists("/bookmarks/nothing") is False

    @pytest.mark.asyncio
    async def test_post_resources_returns_location(self, store):
        location = await store.post("/resources", {"x": 1}, content_type="application/json")
        body = await store.get(location)
        assert body["_id"] == location.strip("/")
        assert body["_type"] == "application/json"

    @pytest.mark.asyncio
    async def test_delete_removes_link_not_resource(self, store):
        job = store.create_resource({"type": "transcription"})
        key = job.split("/")[-1]
        await store.put(PENDING_JOBS, {key: {"_id": job, "_rev": 0}}, tree=TREE)

        await store.delete(f"{PENDING_JOBS}/{key}")

        assert key not in await store.get(PENDING_JOBS)
        assert (await store.get(f"/{job}"))["type"] == "transcription"

    @pytest.mark.asyncio
    async def test_versioned_link_propagates_changes(self, store):
        job = store.create_resource({"type": "transcription"})
        key = job.split("/")[-1]
        await store.put(PENDING_JOBS, {key: {"_id": job, "_rev": 0}}, tree=TREE)
        watch = await store.watch(PENDING_JOBS)

        await store.put(f"/{job}", {"status": "running"})

        change = await watch.__anext__()
        assert change.type == "merge"
        assert change.body == {key: {"status": "running"}}
        await watch.close()

    @pytest.mark.asyncio
    async def test_watch_close_is_idempotent(self, store):
        job = store.create_resource({})
        watch = await store.watch(f"/{job}")
        assert store.watch_count(job) == 1
        await watch.close()
        await watch.close()
        assert store.watch_count(job) == 0
        assert watch.closed

    @pytest.mark.asyncio
    async def test_watch_requires_resource(self, store):
        with pytest.raises(NotFoundError):
            await store.watch("/resources/nope")

    @pytest.mark.asyncio
    async def test_ensure_only_creates_once(self, store):
        await store.ensure(PENDING_JOBS, {}, tree=TREE)
        first = (await store.get(PENDING_JOBS))["_id"]
        await store.ensure(PENDING_JOBS, {}, tree=TREE)
        assert (await store.get(PENDING_JOBS))["_id"] == first


class TestLinks:
    RESULT = {
        "cois": {"a": {"_id": "resources/1"}, "b": {"_id": "resources/2", "_rev": 3}},
        "fsqa-audits": {"c": {"_id": "resources/3"}},
    }

    def test_refs(self):
        refs = links_to_refs(self.RESULT)
        assert refs["cois"]["a"] == {"_ref": "resources/1"}
        assert refs["fsqa-audits"]["c"] == {"_ref": "resources/3"}

    def test_versioned(self):
        versioned = links_to_versioned(self.RESULT)
        assert versioned["cois"]["b"] == {"_id": "resources/2", "_rev": 0}

    def test_iter_links_paths(self):
        found = {path: leaf.id for path, leaf in iter_links(self.RESULT)}
        assert found[("cois", "b")] == "resources/2"
        assert len(found) == 3

    def test_single_link_and_scalars(self):
        assert link_ids({"_id": "resources/9"}) == {"resources/9"}
        assert link_ids("resources/9") == set()
        assert links_to_refs({"n": 1}) == {"n": 1}


class TestTree:
    def test_singular(self):
        assert singular_document_type("cois") == "coi"
        assert singular_document_type("letters-of-guarantee") == "letter-of-guarantee"
        with pytest.raises(ValueError):
            singular_document_type("100g-nutritional-information")

    def test_document_type_tree(self):
        tree = tree_for_document_type("fsqa-audits")
        node = tree["bookmarks"]["trellisfw"]["fsqa-audits"]
        assert node["*"]["_type"] == "application/vnd.trellis.fsqa-audit.1+json"

    def test_partner_tree_grafts_bucket(self):
        tree = partner_tree("cois")
        shared = tree["bookmarks"]["trellisfw"]["trading-partners"]["*"]["shared"]
        assert "cois" in shared["trellisfw"]
        # the module level tree is untouched
        assert "letters-of-guarantee" not in TREE["bookmarks"]["trellisfw"]["trading-partners"]["*"]["shared"]["trellisfw"]

    def test_trellis_root(self):
        assert trellis_root() == "/bookmarks/trellisfw"
        assert trellis_root("tp1") == "/bookmarks/trellisfw/trading-partners/tp1/shared/trellisfw"


def _http_store(handler, **kwargs) -> HttpResourceStore:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://oada.test"
    )
    return HttpResourceStore("oada.test", "token", poll_interval=0.01, client=client, **kwargs)


class TestHttpResourceStore:
    """Polling watches over a mocked OADA server"""

    @pytest.mark.asyncio
    async def test_watch_survives_transient_failure(self, wait_for):
        calls = [0]

        def handler(request):
            calls[0] += 1
            if calls[0] == 3:
                return httpx.Response(503, text="unavailable")
            if calls[0] < 3:
                return httpx.Response(200, json={"_id": "resources/list", "_rev": 1})
            return httpx.Response(
                200,
                json={"_id": "resources/list", "_rev": 2, "a": {"_id": "resources/a"}},
            )

        store = _http_store(handler)
        seen = []

        async def on_item(item):
            seen.append(item.key)

        watcher = ListWatcher(store, "/bookmarks/list", on_item)
        await watcher.start()
        await wait_for(lambda: seen == ["a"])
        assert watcher.running
        await watcher.stop()
        await store.close()

    @pytest.mark.asyncio
    async def test_watch_gives_up_after_repeated_failures(self):
        calls = [0]

        def handler(request):
            calls[0] += 1
            if calls[0] == 1:
                return httpx.Response(200, json={"_id": "resources/list", "_rev": 1})
            return httpx.Response(503, text="unavailable")

        store = _http_store(handler, watch_max_failures=2)
        watch = await store.watch("/bookmarks/list")
        with pytest.raises(StoreError):
            await asyncio.wait_for(watch.__anext__(), timeout=2)
        assert calls[0] == 3
        await watch.close()
        await store.close()

    @pytest.mark.asyncio
    async def test_watch_surfaces_deleted_resource(self):
        calls = [0]

        def handler(request):
            calls[0] += 1
            if calls[0] == 1:
                return httpx.Response(200, json={"_id": "resources/list", "_rev": 1})
            return httpx.Response(404)

        store = _http_store(handler)
        watch = await store.watch("/bookmarks/list")
        with pytest.raises(NotFoundError):
            await asyncio.wait_for(watch.__anext__(), timeout=2)
        assert calls[0] == 2
        await watch.close()
        await store.close()
