import asyncio

from plebproto.publications import Comment, Vote
from plebproto.storage import dump_json
from plebproto.updates import update_path

from conftest import make_network, no_answers


async def _network_with_post():
    net = await make_network()
    result = await net.client.publish(Comment.create(net.author, net.address, content="watch me"), no_answers)
    return net, result.cid


class TestCommentPoller:
    def test_poll_only_returns_changes(self):
        async def scenario():
            net, cid = await _network_with_post()
            poller = net.client.watch(cid, interval=0.01)
            first = await poller.poll()
            again = await poller.poll()
            await net.client.publish(Vote.create(net.other, net.address, comment_cid=cid, vote=1), no_answers)
            after_vote = await poller.poll()
            return first, again, after_vote

        first, again, after_vote = asyncio.run(scenario())
        assert first["upvoteCount"] == 0
        assert again is None
        assert after_vote["upvoteCount"] == 1

    def test_async_iteration_resumes(self):
        async def scenario():
            net, cid = await _network_with_post()
            poller = net.client.watch(cid, interval=0.01)
            seen = []
            async for update in poller:
                seen.append(update["upvoteCount"])
                poller.stop()
            await net.client.publish(Vote.create(net.other, net.address, comment_cid=cid, vote=-1), no_answers)
            async for update in poller:
                seen.append(update["downvoteCount"])
                poller.stop()
            return seen

        assert asyncio.run(asyncio.wait_for(scenario(), 5)) == [0, 1]

    def test_stop_ends_an_idle_watch(self):
        async def scenario():
            net, cid = await _network_with_post()
            poller = net.client.watch(cid, interval=10)
            await poller.poll()

            async def consume():
                return [u async for u in poller]

            task = asyncio.create_task(consume())
            await asyncio.sleep(0.05)
            poller.stop()
            return await asyncio.wait_for(task, 1)

        assert asyncio.run(scenario()) == []

    def test_forged_update_is_skipped(self):
        async def scenario():
            net, cid = await _network_with_post()
            poller = net.client.watch(cid)
            genuine = await poller.poll()
            state = net.sub.aggregator.get(cid)
            forged = dict(genuine, upvoteCount=99)
            await net.store.files_write(update_path(net.address, state.bucket, cid, cid), dump_json(forged))
            await net.sub.aggregator.publish_index()
            return poller, await poller.poll()

        poller, result = asyncio.run(scenario())
        assert result is None
        assert poller.last_update["upvoteCount"] == 0

    def test_unknown_comment(self):
        async def scenario():
            net = await make_network()
            return await net.client.watch("QmNothingHere").poll()

        assert asyncio.run(scenario()) is None

    def test_garbage_record_is_skipped(self):
        async def scenario():
            net, cid = await _network_with_post()
            poller = net.client.watch(cid)
            genuine = await poller.poll()
            state = net.sub.aggregator.get(cid)
            await net.store.files_write(update_path(net.address, state.bucket, cid, cid), b"\xff not json")
            await net.sub.aggregator.publish_index()
            skipped = await poller.poll()
            await net.client.publish(Vote.create(net.other, net.address, comment_cid=cid, vote=1), no_answers)
            return genuine, skipped, await poller.poll()

        genuine, skipped, after_vote = asyncio.run(scenario())
        assert genuine["upvoteCount"] == 0
        assert skipped is None
        assert after_vote["upvoteCount"] == 1
