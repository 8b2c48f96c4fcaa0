"""
content.py — turn an accepted Comment into a stored, addressable record.

Steps for one comment:
1. depth = 0 for posts, parent's depth + 1 for replies (read from the stored
   parent record, walking further up only if a record lacks `depth`).
2. Store the signed comment plus `depth` once; the returned cid is its id.
3. Let the UpdateAggregator write the zero-counter update and republish the
   parent chain and index.
4. Hand back {"comment": record, "commentUpdate": signed stub} for the
   CHALLENGEVERIFICATION payload.

Any store failure surfaces as StorageError; the responder turns that into a
failed verification.
"""

import logging
from typing import Any, Dict

from .errors import ProtocolError, StorageError
from .publications import Comment
from .updates import UpdateAggregator

logger = logging.getLogger(__name__)


class ContentPublisher:
    def __init__(self, store, aggregator: UpdateAggregator) -> None:
        self.store = store
        self.aggregator = aggregator

    async def depth_of(self, cid: str) -> int:
        """Depth of an already stored comment."""
        record = await self.store.get_json(cid)
        if not isinstance(record, dict):
            raise StorageError(f"{cid} is not a comment record")
        if isinstance(record.get("depth"), int):
            return record["depth"]
        parent_cid = record.get("parentCid")
        if parent_cid is None:
            return 0
        return await self.depth_of(parent_cid) + 1

    async def post_cid_of(self, cid: str) -> str:
        record = await self.store.get_json(cid)
        return record.get("postCid") or cid

    async def publish(self, comment: Comment) -> Dict[str, Any]:
        record = comment.to_dict()
        if comment.is_reply:
            if await self.post_cid_of(comment.parent_cid) != comment.post_cid:
                raise ProtocolError("postCid does not match the parent's post")
            record["depth"] = await self.depth_of(comment.parent_cid) + 1
        else:
            record["depth"] = 0

        cid = await self.store.put_json(record)
        await self.aggregator.on_new_comment(cid, record)
        logger.info(f"stored comment {cid} (depth {record['depth']})")
        return {"comment": record, "commentUpdate": self.aggregator.verification_stub(cid)}
