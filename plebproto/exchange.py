"""
exchange.py — per-request state for the challenge handshake.

Each side keeps an ExchangeTable: challengeRequestId -> Exchange. An entry is
inserted when a CHALLENGEREQUEST is sent/received and removed when the
exchange reaches its terminal state (or is cancelled / expires). Nothing is
kept in module-level variables, so many exchanges can share one topic.

    publisher:  IDLE -> REQUEST_SENT -> CHALLENGE_RECEIVED -> ANSWER_SENT -> VERIFIED
                                  \\------------------------------------> VERIFIED
    responder:  LISTENING -> REQUEST_RECEIVED -> CHALLENGE_SENT -> ANSWER_RECEIVED -> VERIFICATION_SENT
                                          \\---------------------------------------> VERIFICATION_SENT
"""

import asyncio
import enum
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

from .errors import ProtocolError


class PublisherState(enum.Enum):
    IDLE = "idle"
    REQUEST_SENT = "request-sent"
    CHALLENGE_RECEIVED = "challenge-received"
    ANSWER_SENT = "answer-sent"
    VERIFIED = "verified"


class ResponderState(enum.Enum):
    LISTENING = "listening"
    REQUEST_RECEIVED = "request-received"
    CHALLENGE_SENT = "challenge-sent"
    ANSWER_RECEIVED = "answer-received"
    VERIFICATION_SENT = "verification-sent"


TRANSITIONS = {
    PublisherState.IDLE: {PublisherState.REQUEST_SENT},
    PublisherState.REQUEST_SENT: {PublisherState.CHALLENGE_RECEIVED, PublisherState.VERIFIED},
    PublisherState.CHALLENGE_RECEIVED: {PublisherState.ANSWER_SENT},
    PublisherState.ANSWER_SENT: {PublisherState.VERIFIED},
    PublisherState.VERIFIED: set(),
    ResponderState.LISTENING: {ResponderState.REQUEST_RECEIVED},
    ResponderState.REQUEST_RECEIVED: {ResponderState.CHALLENGE_SENT, ResponderState.VERIFICATION_SENT},
    ResponderState.CHALLENGE_SENT: {ResponderState.ANSWER_RECEIVED, ResponderState.VERIFICATION_SENT},
    ResponderState.ANSWER_RECEIVED: {ResponderState.VERIFICATION_SENT},
    ResponderState.VERIFICATION_SENT: set(),
}

TERMINAL_STATES = {PublisherState.VERIFIED, ResponderState.VERIFICATION_SENT}


@dataclass
class Exchange:
    """
    Everything one side knows about one request id.

    `peer_public_key` is the key the other side must sign with: the
    subplebbit key on the publisher side, the request signer's key on the
    responder side. `encryption_type` is the envelope scheme both directions
    use. `signer` is only set on the publisher side.
    """
    request_id: str
    state: enum.Enum
    topic: str
    peer_public_key: Optional[str] = None
    encryption_type: Optional[str] = None
    signer: Any = None
    publication: Any = None
    inbox: "asyncio.Queue[Optional[Dict[str, Any]]]" = field(default_factory=asyncio.Queue)
    expiry: Optional[asyncio.TimerHandle] = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, new_state: enum.Enum) -> None:
        if new_state not in TRANSITIONS.get(self.state, set()):
            raise ProtocolError(f"exchange {self.request_id}: illegal transition {self.state.name} -> {new_state.name}")
        self.state = new_state

    def cancel(self) -> None:
        """Wake any waiter with the None sentinel and drop the expiry timer."""
        if self.expiry is not None:
            self.expiry.cancel()
            self.expiry = None
        self.inbox.put_nowait(None)


class ExchangeTable:
    """request id -> live Exchange, plus a bounded memory of finished ids."""

    MAX_COMPLETED = 16384

    def __init__(self) -> None:
        self._live: Dict[str, Exchange] = {}
        self._completed: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._live

    def __len__(self) -> int:
        return len(self._live)

    def __iter__(self) -> Iterator[Exchange]:
        return iter(list(self._live.values()))

    def seen(self, request_id: str) -> bool:
        """True for live exchanges and for ones that already finished."""
        return request_id in self._live or request_id in self._completed

    def add(self, exchange: Exchange) -> Exchange:
        if self.seen(exchange.request_id):
            raise ProtocolError(f"duplicate request id {exchange.request_id}")
        self._live[exchange.request_id] = exchange
        return exchange

    def get(self, request_id: Any) -> Optional[Exchange]:
        if not isinstance(request_id, str):
            return None
        return self._live.get(request_id)

    def finish(self, request_id: str) -> Optional[Exchange]:
        """Remove a live exchange and remember its id so resends are ignored."""
        exchange = self._live.pop(request_id, None)
        self._completed[request_id] = None
        # drop the oldest ids first
        while len(self._completed) > self.MAX_COMPLETED:
            self._completed.popitem(last=False)
        return exchange
