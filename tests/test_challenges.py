import pytest

from plebproto import crypto
from plebproto.challenges import ChallengePolicy, ChallengePrompt
from plebproto.errors import ProtocolError
from plebproto.publications import Comment, Vote

from conftest import QUESTION_CHALLENGE

SUB = "12D3KooWsubplebbit"


@pytest.fixture
def comment():
    return Comment.create(crypto.Signer.generate(), SUB, content="hi")


@pytest.fixture
def vote():
    return Vote.create(crypto.Signer.generate(), SUB, comment_cid="QmC", vote=1)


class TestQuestionPolicy:
    def test_prompts(self, comment):
        policy = ChallengePolicy.from_settings(QUESTION_CHALLENGE)
        prompts = policy.get_challenges(comment)
        assert prompts == [ChallengePrompt(challenge="1+1=?")]
        assert prompts[0].to_dict() == {"challenge": "1+1=?", "type": "text/plain"}

    def test_excluded_kinds_pass_through(self, vote):
        policy = ChallengePolicy.from_settings(QUESTION_CHALLENGE)
        assert policy.get_challenges(vote) == []
        assert policy.verify_answers(vote, []) == {}

    def test_answers(self, comment):
        policy = ChallengePolicy.from_settings(QUESTION_CHALLENGE)
        assert policy.verify_answers(comment, ["2"]) == {}
        assert policy.verify_answers(comment, [" 2 "]) == {}
        assert policy.verify_answers(comment, ["3"]) == {"0": "Wrong answer."}
        assert policy.verify_answers(comment, []) == {"0": "Wrong answer."}
        assert policy.verify_answers(comment, "2") == {"0": "Wrong answer."}

    def test_errors_are_indexed_by_position(self, comment):
        settings = QUESTION_CHALLENGE + [{"name": "question", "options": {"question": "2+2=?", "answer": "4"}}]
        policy = ChallengePolicy.from_settings(settings)
        assert policy.verify_answers(comment, ["2", "5"]) == {"1": "Wrong answer."}

    def test_describe_hides_answer(self):
        info = ChallengePolicy.from_settings(QUESTION_CHALLENGE).describe()
        assert info == [{"type": "text/plain", "challenge": "1+1=?", "exclude": ["commentEdit", "vote"]}]
        assert "2" not in str(info)


class TestPolicies:
    def test_empty_policy(self, comment):
        policy = ChallengePolicy.from_settings([])
        assert policy.get_challenges(comment) == []
        assert policy.describe() == []

    def test_fail_challenge(self, comment):
        policy = ChallengePolicy.from_settings([{"name": "fail", "options": {"error": "read only"}}])
        assert policy.verify_answers(comment, ["anything"]) == {"0": "read only"}

    def test_unknown_challenge(self):
        with pytest.raises(ValueError):
            ChallengePolicy.from_settings([{"name": "captcha-canvas"}])

    def test_prompt_from_dict(self):
        assert ChallengePrompt.from_dict({"challenge": "q?"}).type == "text/plain"
        with pytest.raises(ProtocolError):
            ChallengePrompt.from_dict({"type": "image/png"})
