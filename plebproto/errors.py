"""
errors.py — the small exception family every plebproto module raises.

Rule of thumb:
- SignatureError / EncryptionError are per-message problems. Callers usually
  log and drop the message instead of tearing down the whole exchange.
- ChallengeFailure is a normal protocol outcome (the subplebbit said no), so it
  carries the reason and per-challenge errors the verification message had.
- StorageError wraps whatever the content store complained about.
"""

from typing import Dict, Optional


class PlebProtoError(Exception):
    """Base class so callers can catch everything we raise in one place."""


class SignatureError(PlebProtoError):
    """Signature missing, malformed, or not matching the signed fields."""


class EncryptionError(PlebProtoError):
    """Decryption failed (bad key, tag mismatch) or unknown envelope type."""


class ProtocolError(PlebProtoError):
    """Unexpected message for the current state, bad publication, timeouts."""


class ChallengeFailure(PlebProtoError):
    """The subplebbit rejected the publication (challengeSuccess=false)."""

    def __init__(self, reason: Optional[str] = None, challenge_errors: Optional[Dict[str, str]] = None) -> None:
        self.reason = reason
        self.challenge_errors = challenge_errors
        super().__init__(reason or f"challenge failed: {challenge_errors}")


class StorageError(PlebProtoError):
    """The content store failed to put/get/publish/resolve something."""
