import asyncio

import pytest

from plebproto import crypto, framing
from plebproto.challenges import ChallengePolicy
from plebproto.node import ClientNode, SubplebbitNode
from plebproto.publications import Comment
from plebproto.storage import MemoryStore
from plebproto.transport import MemoryPubsub, PubsubRelay, RelayPubsubClient

from conftest import QUESTION_CHALLENGE, answer_two


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestMemoryPubsub:
    def test_fan_out_and_unsubscribe(self):
        async def scenario():
            pubsub = MemoryPubsub()
            got = []

            async def a(data):
                got.append(("a", data))

            async def b(data):
                got.append(("b", data))

            await pubsub.subscribe("t", a)
            await pubsub.subscribe("t", b)
            await pubsub.subscribe("t", a)
            await pubsub.publish("t", b"1")
            await pubsub.publish("other", b"x")
            await pubsub.drain()
            await pubsub.unsubscribe("t", a)
            await pubsub.publish("t", b"2")
            await pubsub.drain()
            subs = pubsub.subscriptions()
            await pubsub.unsubscribe("t")
            return got, subs, pubsub.subscriptions()

        got, subs, after = asyncio.run(scenario())
        assert sorted(got) == [("a", b"1"), ("b", b"1"), ("b", b"2")]
        assert subs == {"t": 1}
        assert after == {}

    def test_failing_handler_does_not_break_others(self):
        async def scenario():
            pubsub = MemoryPubsub()
            got = []

            async def broken(data):
                raise RuntimeError("boom")

            async def fine(data):
                got.append(data)

            await pubsub.subscribe("t", broken)
            await pubsub.subscribe("t", fine)
            await pubsub.publish("t", b"1")
            await pubsub.drain()
            return got

        assert asyncio.run(scenario()) == [b"1"]


class TestFraming:
    def test_frame_round_trip(self):
        async def scenario():
            reader = asyncio.StreamReader()
            payload = framing.encode_message({"op": "publish", "topic": "é"})
            reader.feed_data(framing.LENGTH_STRUCT.pack(len(payload)) + payload)
            reader.feed_eof()
            return await framing.read_frame(reader), await framing.read_frame(reader)

        frame, eof = asyncio.run(scenario())
        assert frame == {"op": "publish", "topic": "é"}
        assert eof is None

    def test_oversized_frame(self):
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data(framing.LENGTH_STRUCT.pack(framing.MAX_FRAME_SIZE + 1))
            await framing.read_frame(reader)

        with pytest.raises(ValueError, match="too large"):
            asyncio.run(scenario())

    @pytest.mark.parametrize("payload", [b"[1,2]", b"\xff", b"{"])
    def test_non_object_payload(self, payload):
        with pytest.raises(ValueError):
            framing.decode_message(payload)


class TestRelay:
    def test_two_clients(self):
        async def scenario():
            relay = PubsubRelay("127.0.0.1", 0)
            await relay.start()
            alice, bob = RelayPubsubClient("127.0.0.1", relay.port), RelayPubsubClient("127.0.0.1", relay.port)
            await alice.connect()
            await bob.connect()
            got = []

            async def on_bob(data):
                got.append(data)

            await bob.subscribe("topic", on_bob)
            await alice.publish("topic", b"\x00binary\xff")
            await alice.publish("elsewhere", b"ignored")
            await _wait_for(lambda: got)
            await bob.unsubscribe("topic", on_bob)
            await alice.publish("topic", b"after unsubscribe")
            await asyncio.sleep(0.05)
            await alice.close()
            await bob.close()
            await relay.stop()
            return got

        assert asyncio.run(scenario()) == [b"\x00binary\xff"]

    def test_exchange_over_relay(self):
        async def scenario():
            relay = PubsubRelay("127.0.0.1", 0)
            await relay.start()
            store = MemoryStore()
            sub_transport = RelayPubsubClient("127.0.0.1", relay.port)
            client_transport = RelayPubsubClient("127.0.0.1", relay.port)
            await sub_transport.connect()
            await client_transport.connect()
            sub = SubplebbitNode(crypto.Signer.generate(), sub_transport, store,
                                 policy=ChallengePolicy.from_settings(QUESTION_CHALLENGE))
            await sub.start()
            client = ClientNode(client_transport, store)
            comment = Comment.create(crypto.Signer.generate(), sub.address, content="over tcp")
            result = await asyncio.wait_for(client.publish(comment, answer_two), 5)
            await sub.stop()
            await sub_transport.close()
            await client_transport.close()
            await relay.stop()
            return result

        result = asyncio.run(scenario())
        assert result.challenge_success
        assert result.cid.startswith("Qm")
