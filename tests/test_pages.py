import asyncio

import pytest

from plebproto import pages
from plebproto.storage import MemoryStore


def entry(cid, timestamp=1700000000, up=0, down=0, pinned=None):
    update = {"cid": cid, "upvoteCount": up, "downvoteCount": down}
    if pinned is not None:
        update["pinned"] = pinned
    return {"comment": {"timestamp": timestamp, "content": cid}, "commentUpdate": update}


def cids(entries):
    return [e["commentUpdate"]["cid"] for e in entries]


class TestScores:
    def test_hot_prefers_votes_then_recency(self):
        assert pages.hot_score(10, 0, 1700000000) > pages.hot_score(1, 0, 1700000000)
        assert pages.hot_score(1, 0, 1700045000) > pages.hot_score(1, 0, 1700000000)
        assert pages.hot_score(0, 5, 1700000000) < pages.hot_score(0, 0, 1700000000)

    def test_controversial(self):
        assert pages.controversial_score(5, 0) == 0.0
        assert pages.controversial_score(5, 5) == 10
        assert pages.controversial_score(5, 5) > pages.controversial_score(9, 1)


class TestSorting:
    def test_hot(self):
        ordered = pages.sort_entries([entry("QmA", up=1), entry("QmB", up=20), entry("QmC")], "hot")
        assert cids(ordered) == ["QmB", "QmA", "QmC"]

    def test_new_and_old(self):
        items = [entry("QmA", 1), entry("QmB", 3), entry("QmC", 2)]
        assert cids(pages.sort_entries(items, "new")) == ["QmB", "QmC", "QmA"]
        assert cids(pages.sort_entries(items, "old")) == ["QmA", "QmC", "QmB"]

    def test_top(self):
        items = [entry("QmA", up=2), entry("QmB", up=5, down=1), entry("QmC", down=3)]
        assert cids(pages.sort_entries(items, "topAll")) == ["QmB", "QmA", "QmC"]

    def test_ties_break_on_cid(self):
        items = [entry("QmZ"), entry("QmA"), entry("QmM")]
        for sort in pages.SORT_KEYS:
            assert cids(pages.sort_entries(items, sort)) == ["QmA", "QmM", "QmZ"]

    def test_pinned_first(self):
        items = [entry("QmA", up=50), entry("QmB", pinned=True), entry("QmC", up=10)]
        assert cids(pages.sort_entries(items, "hot", pinned_first=True)) == ["QmB", "QmA", "QmC"]
        assert cids(pages.sort_entries(items, "hot")) == ["QmA", "QmC", "QmB"]


class TestPageChain:
    def test_seven_entries_three_per_page(self):
        store = MemoryStore()
        items = [entry(f"Qm{i}", timestamp=1700000000 + i) for i in range(7)]

        async def scenario():
            first, first_cid = await pages.publish_page_chain(store, items, 3)
            walked = [e async for e in pages.iter_page_entries(store, first_cid)]
            return first, first_cid, walked

        first, first_cid, walked = asyncio.run(scenario())
        assert len(first["comments"]) == 3
        assert "nextCid" in first
        assert walked == items
        second = asyncio.run(store.get_json(first["nextCid"]))
        third = asyncio.run(store.get_json(second["nextCid"]))
        assert len(third["comments"]) == 1
        assert "nextCid" not in third

    def test_bad_page_size(self):
        with pytest.raises(ValueError):
            asyncio.run(pages.publish_page_chain(MemoryStore(), [entry("QmA")], 0))

    def test_cycle_is_detected(self):
        store = MemoryStore()

        async def scenario():
            # a page pointing at itself can't be built through put_json, so plant it
            cid = "QmLoop"
            store.blocks[cid] = b'{"comments":[],"nextCid":"QmLoop"}'
            return [e async for e in pages.iter_page_entries(store, cid)]

        with pytest.raises(ValueError, match="cycle"):
            asyncio.run(scenario())


class TestListing:
    def test_empty_listing_is_none(self):
        assert asyncio.run(pages.publish_listing(MemoryStore(), [], pages.POST_SORTS, "hot", 50)) is None

    def test_every_sort_gets_a_chain(self):
        store = MemoryStore()
        items = [entry("QmA", 1, up=3), entry("QmB", 2)]
        listing = asyncio.run(pages.publish_listing(store, items, pages.POST_SORTS, "hot", 50))
        assert set(listing["pageCids"]) == set(pages.POST_SORTS)
        assert list(listing["pages"]) == ["hot"]
        assert cids(listing["pages"]["hot"]["comments"]) == ["QmA", "QmB"]
        new_page = asyncio.run(store.get_json(listing["pageCids"]["new"]))
        assert cids(new_page["comments"]) == ["QmB", "QmA"]

    def test_deterministic(self):
        items = [entry("QmA"), entry("QmB")]
        a = asyncio.run(pages.publish_listing(MemoryStore(), items, pages.REPLY_SORTS, "topAll", 1))
        b = asyncio.run(pages.publish_listing(MemoryStore(), list(reversed(items)), pages.REPLY_SORTS, "topAll", 1))
        assert a == b
