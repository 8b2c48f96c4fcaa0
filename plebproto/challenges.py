"""
challenges.py — the anti-spam policy a subplebbit runs on each request.

The exchange code only needs three things from a policy:
- which prompts (if any) to send for a publication,
- whether a list of answers passes,
- a public description to put in the subplebbit index (never the answers).

Policies are configured the same way subplebbit settings store them:
    [{"name": "question", "options": {"question": "1+1=?", "answer": "2"}}]
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Type

from .errors import ProtocolError


@dataclass
class ChallengePrompt:
    challenge: str
    type: str = "text/plain"

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChallengePrompt":
        if not isinstance(data, dict) or not isinstance(data.get("challenge"), str):
            raise ProtocolError("challenge must be an object with a 'challenge' string")
        return cls(challenge=data["challenge"], type=str(data.get("type", "text/plain")))


class Challenge:
    """One configured challenge. Subclasses override get_challenge/verify."""
    name = ""
    type = "text/plain"

    def __init__(self, exclude: Optional[List[str]] = None, description: Optional[str] = None) -> None:
        # publication kinds ("vote", "commentEdit", ...) this challenge skips
        self.exclude = set(exclude or [])
        self.description = description

    def applies_to(self, publication) -> bool:
        return publication.KIND not in self.exclude

    def get_challenge(self, publication) -> ChallengePrompt:
        raise NotImplementedError

    def verify(self, answer: Any) -> Optional[str]:
        """Return an error string, or None when the answer passes."""
        raise NotImplementedError

    def describe(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {"type": self.type}
        if self.description:
            info["description"] = self.description
        if self.exclude:
            info["exclude"] = sorted(self.exclude)
        return info


class QuestionChallenge(Challenge):
    """Ask a fixed question, compare the answer after trimming whitespace."""
    name = "question"

    def __init__(self, question: str, answer: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.question = question
        self.answer = answer

    def get_challenge(self, publication) -> ChallengePrompt:
        return ChallengePrompt(challenge=self.question, type=self.type)

    def verify(self, answer: Any) -> Optional[str]:
        if not isinstance(answer, str) or answer.strip() != self.answer.strip():
            return "Wrong answer."
        return None

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        info["challenge"] = self.question
        return info


class FailChallenge(Challenge):
    """Always rejects; useful for read-only subplebbits and tests."""
    name = "fail"

    def __init__(self, error: str = "You're not allowed to publish.", **kwargs) -> None:
        super().__init__(**kwargs)
        self.error = error

    def get_challenge(self, publication) -> ChallengePrompt:
        return ChallengePrompt(challenge=self.error, type=self.type)

    def verify(self, answer: Any) -> Optional[str]:
        return self.error


CHALLENGE_TYPES: Dict[str, Type[Challenge]] = {
    QuestionChallenge.name: QuestionChallenge,
    FailChallenge.name: FailChallenge,
}


class ChallengePolicy:
    def __init__(self, challenges: Optional[List[Challenge]] = None) -> None:
        self.challenges = list(challenges or [])

    @classmethod
    def from_settings(cls, settings: List[Dict[str, Any]]) -> "ChallengePolicy":
        challenges = []
        for entry in settings or []:
            name = entry.get("name")
            if name not in CHALLENGE_TYPES:
                raise ValueError(f"unknown challenge '{name}'")
            options = dict(entry.get("options") or {})
            challenges.append(CHALLENGE_TYPES[name](
                exclude=entry.get("exclude"), description=entry.get("description"), **options
            ))
        return cls(challenges)

    def pending_for(self, publication) -> List[Challenge]:
        return [c for c in self.challenges if c.applies_to(publication)]

    def get_challenges(self, publication) -> List[ChallengePrompt]:
        """Prompts to send; an empty list means the publication passes straight through."""
        return [c.get_challenge(publication) for c in self.pending_for(publication)]

    def verify_answers(self, publication, answers: List[Any]) -> Dict[str, str]:
        """
        Check answers positionally against the pending challenges.
        Returns {challenge index (as str): error}; empty dict means success.
        """
        pending = self.pending_for(publication)
        if not isinstance(answers, list):
            answers = []
        errors: Dict[str, str] = {}
        for index, challenge in enumerate(pending):
            answer = answers[index] if index < len(answers) else None
            error = challenge.verify(answer)
            if error:
                errors[str(index)] = error
        return errors

    def describe(self) -> List[Dict[str, Any]]:
        return [c.describe() for c in self.challenges]
