"""
updates.py — the subplebbit's mutable side: comment updates and the index.

Immutable comment records never change once stored. Everything that does
change (votes, reply counts, edits, moderation, reply pages) lives in a
CommentUpdateRecord, re-signed and rewritten at

    /<address>/postUpdates/<bucket>/<postCid>/update                 (posts)
    /<address>/postUpdates/<bucket>/<postCid>/<replyCid>/update      (replies)

where <bucket> is the smallest UPDATE_BUCKETS interval covering the post's
age. After every change the signed subplebbit index is rebuilt, stored and
re-published under the subplebbit address.

Ordering:
- Every on_* call holds the address lock for its whole recompute-then-publish
  step, so two accepted publications can't republish from stale state.
- A change walks from the touched comment up to its post, re-signing each
  ancestor (their replyCount and reply pages depend on it), then the index.
- If the store fails anywhere in that walk, the post's whole tree (and the
  per-author moderation) goes back to its snapshot and its update files are
  rewritten, so a rejected publication leaves no trace. A post whose files
  couldn't be rewritten is marked stale and fully rewritten on its next change.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from . import crypto
from . import messages as m
from . import pages
from .errors import ProtocolError, StorageError
from .publications import Comment, CommentEdit, Publication, Vote
from .storage import dump_json

logger = logging.getLogger(__name__)

UPDATE_BUCKETS = (86400, 604800, 2592000, 3153600000)  # 1 day, 1 week, 1 month, 100 years
MODERATOR_ROLES = ("owner", "admin", "moderator")

# edit fields only the comment's author / only a moderator may set
AUTHOR_ONLY_FIELDS = ("content", "deleted")
MODERATOR_ONLY_FIELDS = ("pinned", "locked", "removed", "commentAuthor")
MODERATION_FIELDS = ("pinned", "locked", "removed", "flair", "spoiler", "reason")


def bucket_for(age_seconds: int) -> int:
    for bucket in UPDATE_BUCKETS:
        if age_seconds <= bucket:
            return bucket
    return UPDATE_BUCKETS[-1]


def update_path(address: str, bucket: int, post_cid: str, cid: str) -> str:
    if cid == post_cid:
        return f"/{address}/postUpdates/{bucket}/{post_cid}/update"
    return f"/{address}/postUpdates/{bucket}/{post_cid}/{cid}/update"


def verify_comment_update(update: Dict[str, Any], public_key: str) -> bool:
    """Valid subplebbit signature that covers every field except the signature itself."""
    if not m.verify_object(update, public_key):
        return False
    names = update["signature"]["signedPropertyNames"]
    return set(names) == set(update) - {"signature"}


@dataclass
class CommentState:
    cid: str
    record: Dict[str, Any]
    post_cid: str
    votes: Dict[str, int] = field(default_factory=dict)  # voter address -> +1/-1
    children: List[str] = field(default_factory=list)
    edit: Optional[Dict[str, Any]] = None                # latest signed author edit
    moderation: Dict[str, Any] = field(default_factory=dict)
    update: Optional[Dict[str, Any]] = None              # full signed update (with replies)
    page_update: Optional[Dict[str, Any]] = None         # signed update as embedded in pages
    bucket: Optional[int] = None

    @property
    def parent_cid(self) -> Optional[str]:
        return self.record.get("parentCid")

    @property
    def author_address(self) -> str:
        return (self.record.get("author") or {}).get("address", "")

    @property
    def timestamp(self) -> int:
        return self.record.get("timestamp", 0)

    @property
    def upvote_count(self) -> int:
        return sum(1 for v in self.votes.values() if v > 0)

    @property
    def downvote_count(self) -> int:
        return sum(1 for v in self.votes.values() if v < 0)

    @property
    def score(self) -> int:
        return self.upvote_count - self.downvote_count


class UpdateAggregator:
    def __init__(
        self,
        signer: crypto.Signer,
        store,
        page_size: int = 50,
        title: Optional[str] = None,
        description: Optional[str] = None,
        challenges: Optional[List[Dict[str, Any]]] = None,
        roles: Optional[Dict[str, Dict[str, str]]] = None,
        created_at: Optional[int] = None,
        clock: Callable[[], int] = m.now_s,
    ) -> None:
        self.signer = signer
        self.address = signer.address
        self.store = store
        self.page_size = page_size
        self.title = title
        self.description = description
        self.challenges = list(challenges or [])
        # {author address: {"role": "owner" | "admin" | "moderator"}}
        self.roles = dict(roles or {})
        self.clock = clock
        self.created_at = created_at if created_at is not None else clock()
        self.comments: Dict[str, CommentState] = {}
        self.posts: List[str] = []
        self.author_extras: Dict[str, Dict[str, Any]] = {}  # commentAuthor moderation per author
        self.index: Optional[Dict[str, Any]] = None
        self.index_cid: Optional[str] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self._stale: Set[str] = set()  # post cids whose update files may be out of date

    def lock(self, address: Optional[str] = None) -> asyncio.Lock:
        address = address or self.address
        if address not in self._locks:
            self._locks[address] = asyncio.Lock()
        return self._locks[address]

    # -------------------------------------------------
    # Queries
    # -------------------------------------------------

    def get(self, cid: str) -> Optional[CommentState]:
        return self.comments.get(cid)

    def role_of(self, address: str) -> Optional[str]:
        return (self.roles.get(address) or {}).get("role")

    def is_moderator(self, address: str) -> bool:
        return self.role_of(address) in MODERATOR_ROLES

    def is_banned(self, address: str) -> bool:
        ban = self.author_extras.get(address, {}).get("banExpiresAt")
        return isinstance(ban, int) and ban > self.clock()

    def descendant_count(self, cid: str) -> int:
        state = self.comments[cid]
        return sum(1 + self.descendant_count(child) for child in state.children)

    def author_stats(self, address: str) -> Dict[str, Any]:
        """The author.subplebbit block embedded in every update for this author's comments."""
        own = [s for s in self.comments.values() if s.author_address == address]
        stats: Dict[str, Any] = {
            "postScore": sum(s.score for s in own if s.parent_cid is None),
            "replyScore": sum(s.score for s in own if s.parent_cid is not None),
        }
        if own:
            first = min(own, key=lambda s: (s.timestamp, s.cid))
            last = max(own, key=lambda s: (s.timestamp, s.cid))
            stats["firstCommentTimestamp"] = first.timestamp
            stats["lastCommentCid"] = last.cid
        stats.update(self.author_extras.get(address, {}))
        return stats

    def check(self, publication: Publication) -> None:
        """
        Cheap acceptance checks run before any challenge is sent.
        Raises ProtocolError with the reason the publisher will see.
        """
        if publication.subplebbit_address != self.address:
            raise ProtocolError("publication is for a different subplebbit")
        if self.is_banned(publication.author_address):
            raise ProtocolError("author is banned")
        if isinstance(publication, Comment) and publication.is_reply:
            parent = self.comments.get(publication.parent_cid)
            if parent is None:
                raise ProtocolError("parent comment does not exist")
            if parent.post_cid != publication.post_cid:
                raise ProtocolError("postCid does not match the parent's post")
            if self.comments[parent.post_cid].moderation.get("locked"):
                raise ProtocolError("post is locked")
        elif isinstance(publication, Vote):
            target = self.comments.get(publication.comment_cid)
            if target is None:
                raise ProtocolError("comment to vote on does not exist")
            if self.comments[target.post_cid].moderation.get("locked"):
                raise ProtocolError("post is locked")
        elif isinstance(publication, CommentEdit):
            self.authorize_edit(publication)

    def authorize_edit(self, edit: CommentEdit) -> Tuple[bool, bool]:
        """Return (as_author, as_moderator) or raise ProtocolError."""
        target = self.comments.get(edit.comment_cid)
        if target is None:
            raise ProtocolError("comment to edit does not exist")
        edited = edit.edited_fields()
        is_author = edit.author_address == target.author_address
        is_mod = self.is_moderator(edit.author_address)
        if not is_author and not is_mod:
            raise ProtocolError("only the author or a moderator can edit this comment")
        mod_only = sorted(edited.intersection(MODERATOR_ONLY_FIELDS))
        if mod_only and not is_mod:
            raise ProtocolError(f"only moderators can set {mod_only}")
        author_only = sorted(edited.intersection(AUTHOR_ONLY_FIELDS))
        if author_only and not is_author:
            raise ProtocolError(f"only the author can set {author_only}")
        return is_author, is_mod

    # -------------------------------------------------
    # Events
    # -------------------------------------------------

    async def on_new_comment(self, cid: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Fold a freshly stored comment in: write its zero-counter update, then
        re-sign its ancestors and the index. Returns the comment's update.
        """
        async with self.lock():
            existing = self.comments.get(cid)
            if existing is not None:
                logger.debug(f"comment {cid} already known")
                return existing.update

            parent_cid = record.get("parentCid")
            post_cid = record.get("postCid") if parent_cid else cid
            snapshot = self._snapshot(post_cid)
            state = CommentState(cid=cid, record=record, post_cid=post_cid)
            self.comments[cid] = state
            if parent_cid:
                self.comments[parent_cid].children.append(cid)
            else:
                self.posts.append(cid)
            await self._commit(state, snapshot)
            logger.info(f"{self.address}: new {'reply' if parent_cid else 'post'} {cid}")
            return state.update

    async def on_vote(self, vote: Vote) -> Dict[str, Any]:
        async with self.lock():
            target = self.comments.get(vote.comment_cid)
            if target is None:
                raise ProtocolError("comment to vote on does not exist")
            snapshot = self._snapshot(target.post_cid)
            if vote.vote == 0:
                target.votes.pop(vote.author_address, None)
            else:
                target.votes[vote.author_address] = vote.vote
            await self._commit(target, snapshot)
            return target.update

    async def on_edit(self, edit: CommentEdit) -> Dict[str, Any]:
        async with self.lock():
            is_author, is_mod = self.authorize_edit(edit)
            target = self.comments[edit.comment_cid]
            snapshot = self._snapshot(target.post_cid)
            data = edit.to_dict()
            edited = edit.edited_fields()

            if is_author and edited.intersection(CommentEdit.AUTHOR_FIELDS):
                previous = target.edit
                if previous is None or previous.get("timestamp", 0) < edit.timestamp:
                    target.edit = data
                else:
                    logger.debug(f"ignoring stale edit for {target.cid}")

            if is_mod:
                moderated = MODERATION_FIELDS if not is_author else MODERATOR_ONLY_FIELDS
                for name in moderated:
                    if name in data and name != "commentAuthor":
                        target.moderation[name] = data[name]
                if edit.comment_author:
                    extras = self.author_extras.setdefault(target.author_address, {})
                    for key in ("banExpiresAt", "flair"):
                        if key in edit.comment_author:
                            extras[key] = edit.comment_author[key]

            await self._commit(target, snapshot)
            return target.update

    # -------------------------------------------------
    # Rollback
    # -------------------------------------------------

    def _snapshot(self, post_cid: str) -> Dict[str, Any]:
        """Everything a failed change to post_cid's tree might have touched."""
        tree = self._tree(post_cid) if post_cid in self.comments else []
        return {
            "post_cid": post_cid,
            "posts": list(self.posts),
            "author_extras": copy.deepcopy(self.author_extras),
            "states": {
                s.cid: (dict(s.votes), list(s.children), s.edit, dict(s.moderation),
                        s.update, s.page_update, s.bucket)
                for s in tree
            },
        }

    async def _commit(self, state: CommentState, snapshot: Dict[str, Any]) -> None:
        try:
            await self._refresh(state)
        except StorageError:
            await self._restore(snapshot)
            raise

    async def _restore(self, snapshot: Dict[str, Any]) -> None:
        post_cid = snapshot["post_cid"]
        saved = snapshot["states"]
        self.posts = snapshot["posts"]
        self.author_extras = snapshot["author_extras"]
        for cid in [c for c, s in self.comments.items() if s.post_cid == post_cid and c not in saved]:
            del self.comments[cid]
        for cid, (votes, children, edit, moderation, update, page_update, bucket) in saved.items():
            state = self.comments[cid]
            state.votes, state.children, state.edit, state.moderation = votes, children, edit, moderation
            state.update, state.page_update, state.bucket = update, page_update, bucket

        try:
            if post_cid in self.comments:
                await self._rewrite_post(post_cid)
            else:
                await self._clear_post(post_cid)
        except StorageError as exc:
            logger.error(f"could not restore update files of {post_cid}: {exc}")
            self._stale.add(post_cid)
        else:
            self._stale.discard(post_cid)
        logger.warning(f"{self.address}: rolled back a change to {post_cid}")

    async def _clear_post(self, post_cid: str) -> None:
        for bucket in UPDATE_BUCKETS:
            await self.store.files_rm(f"/{self.address}/postUpdates/{bucket}/{post_cid}")

    async def _rewrite_post(self, post_cid: str, bucket: Optional[int] = None) -> None:
        """Drop every copy of a post's update files and write its tree out again."""
        await self._clear_post(post_cid)
        for node in self._tree(post_cid):
            target = bucket if bucket is not None else node.bucket
            if node.update is not None and target is not None:
                await self._write_update(node, target)

    # -------------------------------------------------
    # Records
    # -------------------------------------------------

    def _sign_update(self, state: CommentState, replies: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        update: Dict[str, Any] = {
            "cid": state.cid,
            "upvoteCount": state.upvote_count,
            "downvoteCount": state.downvote_count,
            "replyCount": self.descendant_count(state.cid),
            "updatedAt": self.clock(),
            "protocolVersion": m.PROTOCOL_VERSION,
            "author": {"subplebbit": self.author_stats(state.author_address)},
        }
        if state.edit is not None:
            update["edit"] = state.edit
        update.update(state.moderation)
        if replies is not None:
            update["replies"] = replies
        return m.sign_all_fields(update, self.signer)

    def verification_stub(self, cid: str) -> Dict[str, Any]:
        """The signed {cid, author stats} stub a successful comment verification carries."""
        state = self.comments[cid]
        stub = {
            "cid": cid,
            "protocolVersion": m.PROTOCOL_VERSION,
            "author": {"subplebbit": self.author_stats(state.author_address)},
        }
        return m.sign_all_fields(stub, self.signer)

    def _entry(self, cid: str) -> Dict[str, Any]:
        state = self.comments[cid]
        return {"comment": state.record, "commentUpdate": state.page_update}

    async def _rebuild(self, state: CommentState) -> None:
        children = [self._entry(child) for child in state.children]
        replies = await pages.publish_listing(
            self.store, children, pages.REPLY_SORTS, pages.DEFAULT_REPLY_SORT, self.page_size
        )
        state.update = self._sign_update(state, replies)
        # page entries leave out nested replies; they have their own update path
        state.page_update = self._sign_update(state, None)

    async def _write_update(self, state: CommentState, bucket: int) -> None:
        post = self.comments[state.post_cid]
        path = update_path(self.address, bucket, post.cid, state.cid)
        await self.store.files_write(path, dump_json(state.update))
        state.bucket = bucket

    def _tree(self, cid: str) -> List[CommentState]:
        state = self.comments[cid]
        out = [state]
        for child in state.children:
            out.extend(self._tree(child))
        return out

    async def _refresh(self, state: CommentState) -> None:
        chain = [state]
        while chain[-1].parent_cid:
            chain.append(self.comments[chain[-1].parent_cid])
        post = chain[-1]
        bucket = bucket_for(self.clock() - post.timestamp)

        for link in chain:
            await self._rebuild(link)

        moved = post.bucket is not None and post.bucket != bucket
        if moved or post.cid in self._stale:
            # the post aged into a bigger bucket (or its files are suspect); rewrite its whole tree
            await self._rewrite_post(post.cid, bucket)
        else:
            for link in chain:
                await self._write_update(link, bucket)
        # posts an earlier rollback couldn't write back
        for cid in sorted(self._stale - {post.cid}):
            if cid in self.comments:
                await self._rewrite_post(cid)
            else:
                await self._clear_post(cid)

        await self._publish_index()
        self._stale.clear()

    async def publish_index(self) -> Dict[str, Any]:
        async with self.lock():
            return await self._publish_index()

    async def _publish_index(self) -> Dict[str, Any]:
        index: Dict[str, Any] = {
            "address": self.address,
            "createdAt": self.created_at,
            "updatedAt": self.clock(),
            "protocolVersion": m.PROTOCOL_VERSION,
            "encryption": {
                "type": crypto.DEFAULT_ENCRYPTION_TYPES[self.signer.type],
                "publicKey": self.signer.public_key,
            },
            "pubsubTopic": self.address,
            "challenges": self.challenges,
        }
        if self.title is not None:
            index["title"] = self.title
        if self.description is not None:
            index["description"] = self.description
        if self.roles:
            index["roles"] = self.roles

        posts = await pages.publish_listing(
            self.store, [self._entry(cid) for cid in self.posts],
            pages.POST_SORTS, pages.DEFAULT_POST_SORT, self.page_size,
        )
        if posts is not None:
            index["posts"] = posts

        buckets = sorted({s.bucket for s in self.comments.values() if s.bucket is not None})
        if buckets:
            index["postUpdates"] = {
                str(b): await self.store.files_stat(f"/{self.address}/postUpdates/{b}") for b in buckets
            }

        m.sign_all_fields(index, self.signer)
        cid = await self.store.put_json(index)
        await self.store.name_publish(self.address, cid)
        self.index, self.index_cid = index, cid
        return index
