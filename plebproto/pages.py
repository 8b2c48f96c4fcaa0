"""
pages.py — sort orders and the linked page graph for posts and replies.

A page entry is {"comment": <stored comment record>, "commentUpdate": <signed update>}.
A listing is what gets embedded in the index (posts) or a comment update (replies):

    {"pages": {<default sort>: <first page>}, "pageCids": {<sort>: <first page cid>, ...}}

Each page is {"comments": [...], "nextCid": <cid of the next page>} with the
last page having no nextCid. Pages are written back to front so every page
already knows its successor's cid when it is stored.

All sort keys end in the comment cid, so two rebuilds over the same entries
always give the same order and the same page cids.
"""

import math
from typing import Any, Callable, Dict, List, Optional, Tuple

HOT_EPOCH = 1134028003
HOT_DIVISOR = 45000

POST_SORTS = ("hot", "new", "topAll", "controversialAll")
REPLY_SORTS = ("topAll", "new", "old", "controversialAll")
DEFAULT_POST_SORT = "hot"
DEFAULT_REPLY_SORT = "topAll"


def _counts(entry: Dict[str, Any]) -> Tuple[int, int]:
    update = entry.get("commentUpdate") or {}
    return update.get("upvoteCount", 0), update.get("downvoteCount", 0)


def _cid(entry: Dict[str, Any]) -> str:
    return (entry.get("commentUpdate") or {}).get("cid", "")


def _timestamp(entry: Dict[str, Any]) -> int:
    return (entry.get("comment") or {}).get("timestamp", 0)


def hot_score(upvotes: int, downvotes: int, timestamp: int) -> float:
    """The classic log10(score) + age/45000 ranking."""
    score = upvotes - downvotes
    order = math.log10(max(abs(score), 1))
    sign = 1 if score > 0 else -1 if score < 0 else 0
    return round(sign * order + (timestamp - HOT_EPOCH) / HOT_DIVISOR, 7)


def controversial_score(upvotes: int, downvotes: int) -> float:
    if upvotes <= 0 or downvotes <= 0:
        return 0.0
    magnitude = upvotes + downvotes
    balance = downvotes / upvotes if upvotes > downvotes else upvotes / downvotes
    return magnitude ** balance


def _hot_key(entry):
    up, down = _counts(entry)
    return (-hot_score(up, down, _timestamp(entry)), _cid(entry))


def _new_key(entry):
    return (-_timestamp(entry), _cid(entry))


def _old_key(entry):
    return (_timestamp(entry), _cid(entry))


def _top_key(entry):
    up, down = _counts(entry)
    return (-(up - down), -_timestamp(entry), _cid(entry))


def _controversial_key(entry):
    up, down = _counts(entry)
    return (-controversial_score(up, down), -_timestamp(entry), _cid(entry))


SORT_KEYS: Dict[str, Callable[[Dict[str, Any]], tuple]] = {
    "hot": _hot_key,
    "new": _new_key,
    "old": _old_key,
    "topAll": _top_key,
    "controversialAll": _controversial_key,
}


def sort_entries(entries: List[Dict[str, Any]], sort: str, pinned_first: bool = False) -> List[Dict[str, Any]]:
    key = SORT_KEYS[sort]
    if pinned_first:
        return sorted(entries, key=lambda e: (not (e.get("commentUpdate") or {}).get("pinned", False), key(e)))
    return sorted(entries, key=key)


async def publish_page_chain(store, entries: List[Dict[str, Any]], page_size: int) -> Tuple[Dict[str, Any], str]:
    """Store `entries` (already sorted) as linked pages; return (first page, its cid)."""
    if page_size < 1:
        raise ValueError("page_size must be at least 1")
    chunks = [entries[i:i + page_size] for i in range(0, len(entries), page_size)]
    next_cid: Optional[str] = None
    page: Dict[str, Any] = {}
    for chunk in reversed(chunks):
        page = {"comments": chunk}
        if next_cid is not None:
            page["nextCid"] = next_cid
        next_cid = await store.put_json(page)
    return page, next_cid


async def publish_listing(store, entries: List[Dict[str, Any]], sorts, default_sort: str,
                          page_size: int) -> Optional[Dict[str, Any]]:
    """
    Build every sort's page chain. None when there's nothing to list, so the
    caller can leave the field out of the record entirely.
    """
    if not entries:
        return None
    listing: Dict[str, Any] = {"pages": {}, "pageCids": {}}
    for sort in sorts:
        ordered = sort_entries(entries, sort, pinned_first=(sort == default_sort))
        first_page, first_cid = await publish_page_chain(store, ordered, page_size)
        listing["pageCids"][sort] = first_cid
        if sort == default_sort:
            listing["pages"][sort] = first_page
    return listing


async def iter_page_entries(store, page_cid: str):
    """Async generator over every entry reachable from page_cid via nextCid."""
    seen = set()
    cid: Optional[str] = page_cid
    while cid is not None:
        if cid in seen:
            # only a corrupt store links back to an earlier page
            raise ValueError(f"page cycle at {cid}")
        seen.add(cid)
        page = await store.get_json(cid)
        for entry in page.get("comments", []):
            yield entry
        cid = page.get("nextCid")
