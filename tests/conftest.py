"""Shared helpers: an in-memory subplebbit + client wired over one pubsub and one store."""

from typing import Optional

import pytest

from plebproto import crypto
from plebproto.challenges import ChallengePolicy
from plebproto.config import Settings
from plebproto.node import ClientNode, SubplebbitNode
from plebproto.storage import MemoryStore
from plebproto.transport import MemoryPubsub

QUESTION_CHALLENGE = [{
    "name": "question",
    "options": {"question": "1+1=?", "answer": "2"},
    "exclude": ["vote", "commentEdit"],
}]


class FailingStore(MemoryStore):
    """
    Behaves like MemoryStore until `fail` is set (every block write errors)
    or `fail_names` is set (only name publishes error).
    """

    def __init__(self) -> None:
        super().__init__()
        self.fail = False
        self.fail_names = False

    def _put_block(self, cid, data):
        if self.fail:
            raise OSError("disk full")
        super()._put_block(cid, data)

    def _set_name(self, address, cid):
        if self.fail_names:
            raise OSError("name publish refused")
        super()._set_name(address, cid)


class Network:
    def __init__(self, sub: SubplebbitNode, client: ClientNode, pubsub: MemoryPubsub, store,
                 author: crypto.Signer, other: crypto.Signer, moderator: crypto.Signer) -> None:
        self.sub = sub
        self.client = client
        self.pubsub = pubsub
        self.store = store
        self.author = author
        self.other = other
        self.moderator = moderator

    @property
    def address(self) -> str:
        return self.sub.address


async def make_network(challenges=None, page_size: int = 50, store=None,
                       settings: Optional[Settings] = None, clock=None) -> Network:
    """Start a subplebbit (moderator role pre-assigned) and a client. Call inside a running loop."""
    settings = settings or Settings(page_size=page_size)
    store = store if store is not None else MemoryStore()
    pubsub = MemoryPubsub()
    author, other, moderator = crypto.Signer.generate(), crypto.Signer.generate(), crypto.Signer.generate()
    kwargs = {"clock": clock} if clock is not None else {}
    sub = SubplebbitNode(
        crypto.Signer.generate(), pubsub, store,
        policy=ChallengePolicy.from_settings(challenges or []),
        settings=settings,
        title="test board",
        roles={moderator.address: {"role": "moderator"}},
        **kwargs,
    )
    await sub.start()
    client = ClientNode(pubsub, store, settings=settings, signer=author)
    return Network(sub, client, pubsub, store, author, other, moderator)


def answer_two(challenges):
    return ["2"] * len(challenges)


def no_answers(challenges):
    raise AssertionError(f"unexpected challenges: {challenges}")


@pytest.fixture
def signer():
    return crypto.Signer.generate()


@pytest.fixture
def store():
    return MemoryStore()
