import asyncio
import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from . import crypto
from . import messages as m
from .challenges import ChallengePolicy, ChallengePrompt
from .config import Settings
from .content import ContentPublisher
from .errors import EncryptionError, PlebProtoError, ProtocolError, SignatureError, StorageError
from .exchange import Exchange, ExchangeTable, PublisherState, ResponderState
from .framing import decode_message, encode_message
from .pages import iter_page_entries
from .poller import CommentPoller
from .publications import Comment, CommentEdit, Publication, Vote, publication_from_payload
from .updates import UpdateAggregator, verify_comment_update

"""
node.py — the two ends of the challenge exchange.

SubplebbitNode (responder):
  - Listens on its own address as pubsub topic.
  - CHALLENGEREQUEST: verify, decrypt, validate, pre-check, then either send a
    CHALLENGE or go straight to the verification.
  - CHALLENGEANSWER: must be signed by the same key as the request; answers
    are checked by the ChallengePolicy.
  - Exactly one CHALLENGEVERIFICATION per request id, success or not. Accepted
    comments are stored first so the verification can carry their cid.

ClientNode (publisher + reader):
  - publish(): one exchange per call, many calls can share a topic. Inbound
    messages are routed to the right exchange by challengeRequestId and must
    be signed by the subplebbit key.
  - get_subplebbit / get_comment / get_comment_update / iter_page / watch for
    the read side.

Notes:
- Messages we can't parse, can't verify, or that belong to nobody are logged
  and dropped; they never end an exchange on their own.
- Neither node keeps per-exchange state outside its ExchangeTable.
"""

logger = logging.getLogger(__name__)

AnswerCallback = Callable[[List[ChallengePrompt]], Union[List[str], Awaitable[List[str]]]]


def _dump(obj: Dict[str, Any]) -> str:
    return encode_message(obj).decode("utf-8")


def _load(text: str) -> Dict[str, Any]:
    return decode_message(text.encode("utf-8"))


class SubplebbitNode:
    """Responder: runs challenges and accepts publications for one subplebbit."""

    def __init__(
        self,
        signer: crypto.Signer,
        transport,
        store,
        policy: Optional[ChallengePolicy] = None,
        settings: Optional[Settings] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        roles: Optional[Dict[str, Dict[str, str]]] = None,
        clock: Callable[[], int] = m.now_s,
    ) -> None:
        self.signer = signer
        self.transport = transport
        self.store = store
        self.policy = policy or ChallengePolicy()
        self.settings = settings or Settings()
        self.aggregator = UpdateAggregator(
            signer, store,
            page_size=self.settings.page_size,
            title=title,
            description=description,
            challenges=self.policy.describe(),
            roles=roles,
            clock=clock,
        )
        self.publisher = ContentPublisher(store, self.aggregator)
        self.exchanges = ExchangeTable()
        self.topic = signer.address
        self._tasks: Set[asyncio.Task] = set()

    @property
    def address(self) -> str:
        return self.signer.address

    async def start(self) -> None:
        """Publish the first index, then start listening for requests."""
        await self.aggregator.publish_index()
        await self.transport.subscribe(self.topic, self.handle_message)
        logger.info(f"subplebbit {self.address} listening")

    async def stop(self) -> None:
        await self.transport.unsubscribe(self.topic, self.handle_message)
        for exchange in self.exchanges:
            if exchange.expiry is not None:
                exchange.expiry.cancel()
                exchange.expiry = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def handle_message(self, data: bytes) -> None:
        try:
            msg = decode_message(data)
        except ValueError as exc:
            logger.debug(f"dropping undecodable pubsub message: {exc}")
            return
        msg_type = msg.get("type")
        if msg_type == m.CHALLENGEREQUEST:
            await self._on_request(msg)
        elif msg_type == m.CHALLENGEANSWER:
            await self._on_answer(msg)
        # CHALLENGE / CHALLENGEVERIFICATION on our topic are our own echoes

    # ---- CHALLENGEREQUEST ----

    async def _on_request(self, msg: Dict[str, Any]) -> None:
        request_id = msg.get("challengeRequestId")
        if not isinstance(request_id, str) or not request_id:
            return
        if self.exchanges.seen(request_id):
            logger.debug(f"ignoring resent request {request_id}")
            return
        if not m.verify_message(msg):
            logger.warning(f"dropping request {request_id}: bad signature")
            return

        envelope = msg.get("encrypted")
        # registered before the first await so a resend racing us is ignored
        exchange = self.exchanges.add(Exchange(
            request_id=request_id,
            state=ResponderState.LISTENING,
            topic=self.topic,
            peer_public_key=msg["signature"]["publicKey"],
            encryption_type=envelope.get("type") if isinstance(envelope, dict) else None,
        ))
        exchange.advance(ResponderState.REQUEST_RECEIVED)

        try:
            plaintext = crypto.decrypt(envelope, self.signer.private_key, exchange.peer_public_key)
        except EncryptionError as exc:
            logger.warning(f"request {request_id}: {exc}")
            await self._send_verification(exchange, False, reason="could not decrypt publication")
            return
        try:
            publication = publication_from_payload(_load(plaintext))
            publication.verify_signature()
            self.aggregator.check(publication)
        except (ProtocolError, SignatureError, ValueError) as exc:
            logger.info(f"rejecting request {request_id}: {exc}")
            await self._send_verification(exchange, False, reason=str(exc))
            return
        exchange.publication = publication

        prompts = self.policy.get_challenges(publication)
        if not prompts:
            await self._accept(exchange)
            return

        accepted = msg.get("acceptedChallengeTypes") or ["text/plain"]
        unsupported = sorted({p.type for p in prompts} - set(accepted))
        if unsupported:
            await self._send_verification(exchange, False, reason=f"challenge types not accepted: {unsupported}")
            return

        try:
            encrypted = crypto.encrypt(
                _dump({"challenges": [p.to_dict() for p in prompts]}),
                self.signer.private_key, exchange.peer_public_key, exchange.encryption_type,
            )
        except EncryptionError as exc:
            logger.warning(f"request {request_id}: {exc}")
            await self._send_verification(exchange, False, reason="could not encrypt challenges")
            return
        challenge = m.sign_message(m.new_challenge(request_id, encrypted), self.signer)
        exchange.advance(ResponderState.CHALLENGE_SENT)
        exchange.expiry = asyncio.get_running_loop().call_later(
            self.settings.challenge_timeout, self.cancel, request_id
        )
        await self.transport.publish(self.topic, encode_message(challenge))

    # ---- CHALLENGEANSWER ----

    async def _on_answer(self, msg: Dict[str, Any]) -> None:
        exchange = self.exchanges.get(msg.get("challengeRequestId"))
        if exchange is None or exchange.state != ResponderState.CHALLENGE_SENT:
            return
        if not m.verify_message(msg, exchange.peer_public_key):
            logger.warning(f"dropping answer for {exchange.request_id}: not signed by the request key")
            return
        exchange.advance(ResponderState.ANSWER_RECEIVED)
        if exchange.expiry is not None:
            exchange.expiry.cancel()
            exchange.expiry = None

        try:
            payload = _load(crypto.decrypt(msg.get("encrypted"), self.signer.private_key, exchange.peer_public_key))
            answers = payload["challengeAnswers"]
        except (EncryptionError, KeyError, ValueError) as exc:
            logger.warning(f"answer for {exchange.request_id}: {exc}")
            await self._send_verification(exchange, False, reason="could not decrypt challenge answers")
            return

        errors = self.policy.verify_answers(exchange.publication, answers)
        if errors:
            await self._send_verification(exchange, False, challenge_errors=errors)
            return
        await self._accept(exchange)

    # ---- outcome ----

    async def _accept(self, exchange: Exchange) -> None:
        publication = exchange.publication
        encrypted = None
        try:
            if isinstance(publication, Comment):
                result = await self.publisher.publish(publication)
                encrypted = crypto.encrypt(
                    _dump(result), self.signer.private_key, exchange.peer_public_key, exchange.encryption_type
                )
            elif isinstance(publication, Vote):
                await self.aggregator.on_vote(publication)
            elif isinstance(publication, CommentEdit):
                await self.aggregator.on_edit(publication)
        except StorageError as exc:
            logger.error(f"request {exchange.request_id}: storage error: {exc}")
            await self._send_verification(exchange, False, reason=f"storage error: {exc}")
            return
        except ProtocolError as exc:
            await self._send_verification(exchange, False, reason=str(exc))
            return
        except PlebProtoError as exc:
            logger.error(f"request {exchange.request_id}: could not accept: {exc}")
            await self._send_verification(exchange, False, reason=f"could not accept publication: {exc}")
            return
        await self._send_verification(exchange, True, encrypted=encrypted)

    async def _send_verification(self, exchange: Exchange, success: bool, encrypted=None,
                                 challenge_errors=None, reason=None) -> None:
        msg = m.new_challenge_verification(
            exchange.request_id, success,
            encrypted=encrypted, challenge_errors=challenge_errors, reason=reason,
        )
        m.sign_message(msg, self.signer)
        exchange.advance(ResponderState.VERIFICATION_SENT)
        self.exchanges.finish(exchange.request_id)
        logger.info(f"verification for {exchange.request_id}: success={success}")
        await self.transport.publish(self.topic, encode_message(msg))

    def cancel(self, request_id: str) -> bool:
        """Give up on an unanswered challenge; the publisher still gets a (failed) verification."""
        exchange = self.exchanges.get(request_id)
        if exchange is None or exchange.state != ResponderState.CHALLENGE_SENT:
            return False
        if exchange.expiry is not None:
            exchange.expiry.cancel()
            exchange.expiry = None
        task = asyncio.ensure_future(self._send_verification(exchange, False, reason="challenge answer timed out"))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True


class ClientNode:
    """
    Publisher and reader. `signer` is the default author identity; it is only
    used to sign pubsub messages when anonymous_pubsub_signer is off.
    """

    def __init__(self, transport, store, settings: Optional[Settings] = None,
                 signer: Optional[crypto.Signer] = None) -> None:
        self.transport = transport
        self.store = store
        self.settings = settings or Settings()
        self.signer = signer
        self.exchanges = ExchangeTable()
        self._topic_refs: Dict[str, int] = {}

    # ---- read side ----

    async def get_subplebbit(self, address: str) -> Dict[str, Any]:
        """Resolve, fetch and verify a subplebbit index. Raises SignatureError if it's forged."""
        index = await self.store.get_json(await self.store.name_resolve(address))
        if not isinstance(index, dict) or not m.verify_object(index):
            raise SignatureError(f"invalid index signature for {address}")
        sig = index["signature"]
        if crypto.address_from_public_key(sig["publicKey"], sig["type"]) != address or index.get("address") != address:
            raise SignatureError(f"index for {address} is signed by another key")
        return index

    async def get_comment(self, cid: str) -> Dict[str, Any]:
        record = await self.store.get_json(cid)
        if not isinstance(record, dict) or not m.verify_object(record):
            raise SignatureError(f"invalid comment signature for {cid}")
        return record

    async def get_comment_update(self, cid: str, subplebbit: Optional[Dict[str, Any]] = None,
                                 comment: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Walk index -> postUpdates/<bucket> -> <postCid>[/<cid>]/update.
        Buckets are tried smallest first; the record is verified against the
        subplebbit key before it is returned.
        """
        comment = comment or await self.get_comment(cid)
        index = subplebbit or await self.get_subplebbit(comment["subplebbitAddress"])
        post_cid = comment.get("postCid") or cid
        path = f"{post_cid}/update" if post_cid == cid else f"{post_cid}/{cid}/update"
        buckets = index.get("postUpdates") or {}
        for bucket in sorted(buckets, key=int):
            try:
                data = await self.store.get_path(buckets[bucket], path)
            except StorageError:
                continue
            try:
                update = decode_message(data)
            except ValueError as exc:
                raise SignatureError(f"unreadable comment update for {cid}: {exc}") from exc
            if update.get("cid") != cid or not verify_comment_update(update, index["signature"]["publicKey"]):
                raise SignatureError(f"invalid comment update for {cid}")
            return update
        raise StorageError(f"no update published for {cid}")

    async def iter_page(self, page_cid: str):
        """Every entry reachable from page_cid, following nextCid links."""
        async for entry in iter_page_entries(self.store, page_cid):
            yield entry

    def watch(self, cid: str, interval: Optional[float] = None) -> CommentPoller:
        return CommentPoller(self, cid, interval if interval is not None else self.settings.update_interval)

    # ---- publish side ----

    async def publish(self, publication: Publication, answer_challenges: AnswerCallback,
                      signer: Optional[crypto.Signer] = None, timeout: Optional[float] = None) -> m.ChallengeVerification:
        """
        Run one full exchange for `publication` and return the verification.
        Raises ProtocolError on timeout/cancel, EncryptionError/SignatureError if
        the final verification can't be trusted.
        """
        index = await self.get_subplebbit(publication.subplebbit_address)
        enc_type = index["encryption"]["type"]
        sub_encryption_key = index["encryption"]["publicKey"]
        topic = index.get("pubsubTopic") or publication.subplebbit_address

        if signer is not None:
            request_id = str(uuid.uuid4())
        elif self.settings.anonymous_pubsub_signer:
            signer = crypto.Signer.generate(crypto.ENCRYPTION_KEY_TYPES.get(enc_type, crypto.ED25519))
            request_id = signer.address
        elif self.signer is not None:
            signer = self.signer
            request_id = str(uuid.uuid4())
        else:
            raise ProtocolError("no signer configured for pubsub messages")

        encrypted = crypto.encrypt(_dump(publication.to_payload()), signer.private_key, sub_encryption_key, enc_type)
        request = m.sign_message(m.new_challenge_request(request_id, encrypted), signer)
        exchange = self.exchanges.add(Exchange(
            request_id=request_id,
            state=PublisherState.IDLE,
            topic=topic,
            peer_public_key=index["signature"]["publicKey"],
            encryption_type=enc_type,
            signer=signer,
            publication=publication,
        ))

        timeout = timeout if timeout is not None else self.settings.exchange_timeout
        await self._subscribe(topic)
        try:
            exchange.advance(PublisherState.REQUEST_SENT)
            await self.transport.publish(topic, encode_message(request))
            return await asyncio.wait_for(self._run(exchange, sub_encryption_key, answer_challenges), timeout)
        except asyncio.TimeoutError:
            raise ProtocolError(f"no verification for {request_id} within {timeout}s") from None
        finally:
            self.exchanges.finish(request_id)
            await self._release(topic)

    def cancel(self, request_id: str) -> bool:
        """Abort a pending publish(); it raises ProtocolError and unsubscribes."""
        exchange = self.exchanges.get(request_id)
        if exchange is None:
            return False
        exchange.cancel()
        return True

    async def _run(self, exchange: Exchange, sub_encryption_key: str,
                   answer_challenges: AnswerCallback) -> m.ChallengeVerification:
        signer = exchange.signer
        while True:
            msg = await exchange.inbox.get()
            if msg is None:
                raise ProtocolError(f"exchange {exchange.request_id} cancelled")

            if msg["type"] == m.CHALLENGE:
                if exchange.state != PublisherState.REQUEST_SENT:
                    logger.debug(f"ignoring extra challenge for {exchange.request_id}")
                    continue
                try:
                    payload = _load(crypto.decrypt(msg["encrypted"], signer.private_key, exchange.peer_public_key))
                    prompts = [ChallengePrompt.from_dict(c) for c in payload["challenges"]]
                except (EncryptionError, ProtocolError, KeyError, TypeError, ValueError) as exc:
                    logger.warning(f"dropping unreadable challenge for {exchange.request_id}: {exc}")
                    continue
                exchange.advance(PublisherState.CHALLENGE_RECEIVED)

                answers = answer_challenges(prompts)
                if inspect.isawaitable(answers):
                    answers = await answers
                encrypted = crypto.encrypt(
                    _dump({"challengeAnswers": list(answers)}),
                    signer.private_key, sub_encryption_key, exchange.encryption_type,
                )
                answer = m.sign_message(m.new_challenge_answer(exchange.request_id, encrypted), signer)
                exchange.advance(PublisherState.ANSWER_SENT)
                await self.transport.publish(exchange.topic, encode_message(answer))

            elif msg["type"] == m.CHALLENGEVERIFICATION:
                exchange.advance(PublisherState.VERIFIED)
                return self._open_verification(exchange, msg)

    def _open_verification(self, exchange: Exchange, msg: Dict[str, Any]) -> m.ChallengeVerification:
        result = m.ChallengeVerification(
            request_id=exchange.request_id,
            challenge_success=bool(msg.get("challengeSuccess")),
            challenge_errors=msg.get("challengeErrors"),
            reason=msg.get("reason"),
        )
        if result.challenge_success and msg.get("encrypted") is not None:
            # this is the completing message, so failures here end the exchange
            plaintext = crypto.decrypt(msg["encrypted"], exchange.signer.private_key, exchange.peer_public_key)
            try:
                payload = _load(plaintext)
            except ValueError as exc:
                raise ProtocolError(f"unreadable verification payload: {exc}") from exc
            comment, stub = payload.get("comment"), payload.get("commentUpdate")
            if not isinstance(comment, dict) or comment.get("signature") != exchange.publication.signature:
                raise ProtocolError("verification carries a different publication")
            if not isinstance(stub, dict) or not verify_comment_update(stub, exchange.peer_public_key):
                raise SignatureError("invalid comment update stub in verification")
            result.comment, result.comment_update = comment, stub
        logger.info(f"exchange {exchange.request_id} verified: success={result.challenge_success}")
        return result

    # ---- topic routing ----

    async def _subscribe(self, topic: str) -> None:
        self._topic_refs[topic] = self._topic_refs.get(topic, 0) + 1
        if self._topic_refs[topic] == 1:
            await self.transport.subscribe(topic, self._route)

    async def _release(self, topic: str) -> None:
        self._topic_refs[topic] -= 1
        if self._topic_refs[topic] == 0:
            del self._topic_refs[topic]
            await self.transport.unsubscribe(topic, self._route)

    async def _route(self, data: bytes) -> None:
        """Shared topic handler: hand each verified message to its exchange's inbox."""
        try:
            msg = decode_message(data)
        except ValueError:
            return
        if msg.get("type") not in (m.CHALLENGE, m.CHALLENGEVERIFICATION):
            return
        exchange = self.exchanges.get(msg.get("challengeRequestId"))
        if exchange is None:
            return
        if not m.verify_message(msg, exchange.peer_public_key):
            logger.warning(f"dropping {msg['type']} for {exchange.request_id}: not signed by the subplebbit")
            return
        exchange.inbox.put_nowait(msg)
