"""
poller.py — follow one comment's update record as it changes.

    poller = client.watch(cid)
    async for update in poller:
        ...            # every new, verified CommentUpdateRecord
        poller.stop()  # ends the loop; a later `async for` picks up where it left off

Each round re-resolves the subplebbit index, so a resumed poller always
starts from the latest published state. Records that fail verification are
logged and skipped, never yielded.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .errors import SignatureError, StorageError

logger = logging.getLogger(__name__)


class CommentPoller:
    def __init__(self, client, cid: str, interval: float = 1.0) -> None:
        self.client = client
        self.cid = cid
        self.interval = interval
        self.last_update: Optional[Dict[str, Any]] = None
        self._comment: Optional[Dict[str, Any]] = None
        self._stopped = False
        self._wake = asyncio.Event()

    def __aiter__(self) -> "CommentPoller":
        self._stopped = False
        self._wake.clear()
        return self

    async def __anext__(self) -> Dict[str, Any]:
        while not self._stopped:
            update = await self.poll()
            if update is not None:
                return update
            await self._sleep()
        raise StopAsyncIteration

    def stop(self) -> None:
        self._stopped = True
        self._wake.set()

    def _is_new(self, update: Dict[str, Any]) -> bool:
        last = self.last_update
        if last is None:
            return True
        if update.get("updatedAt", 0) < last.get("updatedAt", 0):
            return False
        return update["signature"]["signature"] != last["signature"]["signature"]

    async def poll(self) -> Optional[Dict[str, Any]]:
        """One round: the current update if it's new and valid, else None."""
        try:
            if self._comment is None:
                self._comment = await self.client.get_comment(self.cid)
            update = await self.client.get_comment_update(self.cid, comment=self._comment)
        except SignatureError as exc:
            logger.warning(f"dropping update for {self.cid}: {exc}")
            return None
        except StorageError as exc:
            logger.debug(f"no update for {self.cid} yet: {exc}")
            return None
        if not self._is_new(update):
            return None
        self.last_update = update
        return update

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), self.interval)
        except asyncio.TimeoutError:
            pass
