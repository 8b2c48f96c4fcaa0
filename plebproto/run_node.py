import argparse
import asyncio
import json
import logging
from typing import List, Optional, Tuple

from .challenges import ChallengePolicy, ChallengePrompt
from .config import Settings, load_signer
from .errors import PlebProtoError
from .node import ClientNode, SubplebbitNode
from .publications import Comment, CommentEdit, Vote
from .storage import FileSystemStore
from .transport import PubsubRelay, RelayPubsubClient

"""
run_node.py — single entry point to run plebproto in different modes.

What you can do here:
- Relay:       the TCP pubsub hub every other process connects to
- Subplebbit:  a long-running responder that challenges and accepts publications
- CLI:         one-shot commands (post, reply, vote, edit, watch, show)

All processes on one machine share the store under PLEBPROTO_DATA_DIR; keys
live in ~/.plebproto/<id>_priv.key and are created on first use.
"""


# -------------------------
# Process runners (thin wrappers)
# -------------------------

def _split_addr(value: str) -> Tuple[str, int]:
    host, port = value.rsplit(":", 1)
    return host, int(port)


async def run_relay(host: str, port: int) -> None:
    """Spin up the relay and serve forever on host:port."""
    relay = PubsubRelay(host, port)
    await relay.start()
    print(f"Relay listening on {relay.host}:{relay.port}")
    await relay.serve_forever()


async def run_subplebbit(args: argparse.Namespace, settings: Settings) -> None:
    """
    Start a subplebbit responder. With --question/--answer every comment has
    to solve that challenge; votes and edits pass straight through.
    """
    signer = load_signer(args.ident)
    challenges = []
    if args.question:
        challenges.append({
            "name": "question",
            "options": {"question": args.question, "answer": args.answer or ""},
            "exclude": ["vote", "commentEdit"],
        })
    roles = {address: {"role": "moderator"} for address in args.moderator or []}
    roles[signer.address] = {"role": "owner"}

    transport = RelayPubsubClient(*_split_addr(args.relay))
    await transport.connect()
    node = SubplebbitNode(
        signer, transport, FileSystemStore(settings.data_dir),
        policy=ChallengePolicy.from_settings(challenges),
        settings=settings,
        title=args.title,
        description=args.description,
        roles=roles,
    )
    await node.start()
    print(f"Subplebbit {node.address} is up (data in {settings.data_dir})")
    try:
        await asyncio.Event().wait()
    finally:
        await node.stop()
        await transport.close()


async def _ask(challenges: List[ChallengePrompt], preset: Optional[List[str]]) -> List[str]:
    """Use --answer values if given, otherwise prompt on the terminal."""
    if preset:
        return preset
    loop = asyncio.get_running_loop()
    answers = []
    for c in challenges:
        answers.append(await loop.run_in_executor(None, input, f"{c.challenge} "))
    return answers


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


async def run_cli(args: argparse.Namespace, settings: Settings) -> None:
    """
    Minimal CLI client for quick testing:
      - post / reply:  publish a comment (answers challenges interactively)
      - vote / edit:   publish a vote or comment edit
      - watch:         print each new update of a comment
      - show:          print a subplebbit index and its newest posts
    """
    author = load_signer(args.ident or "cli")
    transport = RelayPubsubClient(*_split_addr(args.relay))
    await transport.connect()
    client = ClientNode(transport, FileSystemStore(settings.data_dir), settings=settings, signer=author)

    async def publish(publication) -> None:
        result = await client.publish(publication, lambda cs: _ask(cs, args.answer))
        if not result.challenge_success:
            print(f"Rejected: {result.reason or result.challenge_errors}")
            return
        print(f"Accepted{f' as {result.cid}' if result.cid else ''}")

    try:
        if args.command == "post":
            await publish(Comment.create(
                author, args.subplebbit, title=args.title, content=" ".join(args.content) or None,
            ))

        elif args.command == "reply":
            parent = await client.get_comment(args.parent)
            await publish(Comment.create(
                author, parent["subplebbitAddress"], content=" ".join(args.content),
                parent_cid=args.parent, post_cid=parent.get("postCid") or args.parent,
            ))

        elif args.command == "vote":
            comment = await client.get_comment(args.comment)
            await publish(Vote.create(author, comment["subplebbitAddress"], comment_cid=args.comment, vote=args.value))

        elif args.command == "edit":
            comment = await client.get_comment(args.comment)
            fields = {
                "content": args.content, "reason": args.reason,
                "deleted": args.deleted or None, "pinned": args.pinned or None,
                "locked": args.locked or None, "removed": args.removed or None,
            }
            await publish(CommentEdit.create(
                author, comment["subplebbitAddress"], comment_cid=args.comment,
                **{k: v for k, v in fields.items() if v is not None},
            ))

        elif args.command == "watch":
            async for update in client.watch(args.comment):
                print(f"[{update['updatedAt']}] +{update['upvoteCount']} -{update['downvoteCount']} "
                      f"replies={update['replyCount']}")

        elif args.command == "show":
            index = await client.get_subplebbit(args.subplebbit)
            print(f"{index.get('title') or index['address']} (updated {index['updatedAt']})")
            new_cid = (index.get("posts") or {}).get("pageCids", {}).get("new")
            if new_cid is None:
                print("  no posts yet")
            else:
                async for entry in client.iter_page(new_cid):
                    comment, update = entry["comment"], entry["commentUpdate"]
                    print(f"  {update['cid']}  {comment.get('title') or comment.get('content', '')!r}  "
                          f"score={update['upvoteCount'] - update['downvoteCount']} replies={update['replyCount']}")
            if args.json:
                _print_json(index)
        else:
            raise SystemExit("cli mode needs a command (post, reply, vote, edit, watch, show)")
    except PlebProtoError as exc:
        raise SystemExit(f"error: {exc}")
    finally:
        await transport.close()


def parse_args() -> argparse.Namespace:
    """
    Parse modes and subcommands.

    Quick examples:
      Relay:       python -m plebproto.run_node --mode relay --port 9000
      Subplebbit:  python -m plebproto.run_node --mode subplebbit --id mysub --relay 127.0.0.1:9000 \
                       --title "My board" --question "1+1=?" --answer 2
      CLI post:    python -m plebproto.run_node --mode cli --id alice --relay 127.0.0.1:9000 \
                       post --subplebbit 12D3KooW... --title hello first post
      CLI show:    python -m plebproto.run_node --mode cli --relay 127.0.0.1:9000 show --subplebbit 12D3KooW...
    """
    p = argparse.ArgumentParser(prog="plebproto")
    p.add_argument("--mode", choices=["relay", "subplebbit", "cli"], required=True)
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    p.add_argument("--id", dest="ident")
    p.add_argument("--relay")
    p.add_argument("--title")
    p.add_argument("--description")
    p.add_argument("--question")
    p.add_argument("--moderator", action="append", help="address granted the moderator role")
    p.add_argument("--answer", action="append", help="challenge answer (cli) or expected answer (subplebbit)")

    sub = p.add_subparsers(dest="command")
    sub.required = False

    sp = sub.add_parser("post")
    sp.add_argument("--subplebbit", required=True)
    sp.add_argument("--title")
    sp.add_argument("content", nargs=argparse.REMAINDER)

    sp = sub.add_parser("reply")
    sp.add_argument("--parent", required=True)
    sp.add_argument("content", nargs=argparse.REMAINDER)

    sp = sub.add_parser("vote")
    sp.add_argument("--comment", required=True)
    sp.add_argument("--value", type=int, choices=[-1, 0, 1], default=1)

    sp = sub.add_parser("edit")
    sp.add_argument("--comment", required=True)
    sp.add_argument("--content")
    sp.add_argument("--reason")
    sp.add_argument("--deleted", action="store_true")
    sp.add_argument("--pinned", action="store_true")
    sp.add_argument("--locked", action="store_true")
    sp.add_argument("--removed", action="store_true")

    sp = sub.add_parser("watch")
    sp.add_argument("--comment", required=True)

    sp = sub.add_parser("show")
    sp.add_argument("--subplebbit", required=True)
    sp.add_argument("--json", action="store_true", help="also dump the raw index")

    return p.parse_args()


# -------------------------
# Main entrypoint
# -------------------------

def main() -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args()
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.mode == "relay":
        asyncio.run(run_relay(args.host or "127.0.0.1", args.port or 9000))

    elif args.mode == "subplebbit":
        if not args.ident or not args.relay:
            raise SystemExit("--id and --relay are required for subplebbit mode")
        # in subplebbit mode --answer is the expected answer, not a reply to one
        args.answer = args.answer[0] if args.answer else None
        asyncio.run(run_subplebbit(args, settings))

    elif args.mode == "cli":
        if not args.relay:
            raise SystemExit("--relay required for cli mode")
        asyncio.run(run_cli(args, settings))


if __name__ == "__main__":
    main()
