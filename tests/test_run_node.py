import asyncio
import sys

import pytest

from plebproto import run_node
from plebproto.challenges import ChallengePrompt


class TestArgs:
    def test_cli_post(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", [
            "plebproto", "--mode", "cli", "--id", "alice", "--relay", "127.0.0.1:9000",
            "--answer", "2", "post", "--subplebbit", "12D3KooWsub", "--title", "hi", "first", "post",
        ])
        args = run_node.parse_args()
        assert args.command == "post"
        assert args.subplebbit == "12D3KooWsub"
        assert args.content == ["first", "post"]
        assert args.answer == ["2"]

    def test_vote_values(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["plebproto", "--mode", "cli", "vote", "--comment", "QmC", "--value", "-1"])
        assert run_node.parse_args().value == -1
        monkeypatch.setattr(sys, "argv", ["plebproto", "--mode", "cli", "vote", "--comment", "QmC", "--value", "5"])
        with pytest.raises(SystemExit):
            run_node.parse_args()

    def test_split_addr(self):
        assert run_node._split_addr("127.0.0.1:9000") == ("127.0.0.1", 9000)


def test_preset_answers_skip_the_prompt():
    prompts = [ChallengePrompt(challenge="1+1=?")]
    assert asyncio.run(run_node._ask(prompts, ["2"])) == ["2"]
