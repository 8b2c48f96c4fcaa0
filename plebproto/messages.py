"""
messages.py — canonical signing plus the four challenge exchange messages.

What this module does:
- Builds the deterministic bytes a signature covers: only the fields named in
  `signedPropertyNames`, nulls skipped, encoded as canonical CBOR. The encoder
  sorts map keys, so the order the names arrive in never matters.
- Attaches/checks signature records `{signature, publicKey, type,
  signedPropertyNames}` on any JSON object (publications, pubsub messages,
  comment updates, verification stubs, the subplebbit index).
- Builds the pubsub envelopes of one exchange:
      CHALLENGEREQUEST -> CHALLENGE -> CHALLENGEANSWER -> CHALLENGEVERIFICATION
  all correlated by `challengeRequestId`.

Why CBOR for signing but JSON on the wire?
- JSON key order and number formatting differ between implementations; the
  canonical CBOR encoding doesn't, so every peer rebuilds the same bytes.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import cbor2

from . import crypto
from .errors import ChallengeFailure, SignatureError

PROTOCOL_VERSION = "1.0.0"
USER_AGENT = "/plebproto:0.1.0/"

# -----------------------
# Pubsub message type tags
# -----------------------
CHALLENGEREQUEST = "CHALLENGEREQUEST"
CHALLENGE = "CHALLENGE"
CHALLENGEANSWER = "CHALLENGEANSWER"
CHALLENGEVERIFICATION = "CHALLENGEVERIFICATION"

_COMMON_SIGNED = ("type", "challengeRequestId", "timestamp", "protocolVersion", "userAgent")

SIGNED_PROPERTY_NAMES: Dict[str, tuple] = {
    CHALLENGEREQUEST: _COMMON_SIGNED + ("encrypted", "acceptedChallengeTypes"),
    CHALLENGE: _COMMON_SIGNED + ("encrypted",),
    CHALLENGEANSWER: _COMMON_SIGNED + ("encrypted",),
    CHALLENGEVERIFICATION: _COMMON_SIGNED + ("challengeSuccess", "challengeErrors", "reason", "encrypted"),
}

# Fields a peer refuses to accept unsigned, whatever else the sender chose to sign.
REQUIRED_SIGNED_PROPERTY_NAMES: Dict[str, tuple] = {
    CHALLENGEREQUEST: ("type", "challengeRequestId", "encrypted"),
    CHALLENGE: ("type", "challengeRequestId", "encrypted"),
    CHALLENGEANSWER: ("type", "challengeRequestId", "encrypted"),
    CHALLENGEVERIFICATION: ("type", "challengeRequestId", "challengeSuccess"),
}


def now_s() -> int:
    """Current Unix time in seconds (protocol timestamps are seconds)."""
    return int(time.time())


# -------------------------------------------------
# Canonical signing input
# -------------------------------------------------

def bytes_to_sign(obj: Dict[str, Any], signed_property_names: Iterable[str]) -> bytes:
    """
    Deterministic bytes for signing.

    Keep the named fields whose value isn't None/absent and hand them to the
    canonical CBOR encoder, which orders map keys itself.
    """
    props = {}
    for name in signed_property_names:
        value = obj.get(name)
        if value is not None:
            props[name] = value
    return cbor2.dumps(props, canonical=True)


def sign_object(obj: Dict[str, Any], signed_property_names: Iterable[str], signer) -> Dict[str, Any]:
    """Return a signature record over `signed_property_names` of `obj`."""
    names = list(signed_property_names)
    if "signature" in names:
        raise SignatureError("a signature cannot sign itself")
    return {
        "signature": signer.sign(bytes_to_sign(obj, names)),
        "publicKey": signer.public_key,
        "type": signer.type,
        "signedPropertyNames": names,
    }


def sign_all_fields(obj: Dict[str, Any], signer) -> Dict[str, Any]:
    """
    Sign every field except the signature itself and attach the record.
    Used for records the subplebbit owns (comment updates, verification stubs, the index).
    """
    obj.pop("signature", None)
    obj["signature"] = sign_object(obj, sorted(obj), signer)
    return obj


def verify_object(obj: Dict[str, Any], expected_public_key: Optional[str] = None) -> bool:
    """
    Check obj['signature'] against the canonical bytes of the fields it names.
    Returns True if valid; False if missing, malformed or invalid. Never raises.
    """
    if not isinstance(obj, dict):
        return False
    sig = obj.get("signature")
    if not isinstance(sig, dict):
        return False
    names = sig.get("signedPropertyNames")
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        return False
    if "signature" in names:
        return False
    public_key = sig.get("publicKey")
    if expected_public_key is not None and public_key != expected_public_key:
        return False
    try:
        data = bytes_to_sign(obj, names)
    except (cbor2.CBOREncodeError, TypeError, ValueError):
        return False
    return crypto.verify_bytes(sig.get("type"), public_key, data, sig.get("signature"))


def assert_signature(obj: Dict[str, Any], expected_public_key: Optional[str] = None, what: str = "object") -> None:
    """verify_object() for call sites that want an exception instead of a bool."""
    if not verify_object(obj, expected_public_key):
        raise SignatureError(f"invalid {what} signature")


# -----------------------
# Exchange messages
# -----------------------

def _new_message(msg_type: str, request_id: str) -> Dict[str, Any]:
    return {
        "type": msg_type,
        "challengeRequestId": request_id,
        "timestamp": now_s(),
        "protocolVersion": PROTOCOL_VERSION,
        "userAgent": USER_AGENT,
    }


def new_challenge_request(request_id: str, encrypted: Dict[str, str],
                          accepted_challenge_types: Optional[List[str]] = None) -> Dict[str, Any]:
    msg = _new_message(CHALLENGEREQUEST, request_id)
    msg["encrypted"] = encrypted
    msg["acceptedChallengeTypes"] = list(accepted_challenge_types or ["text/plain"])
    return msg


def new_challenge(request_id: str, encrypted: Dict[str, str]) -> Dict[str, Any]:
    msg = _new_message(CHALLENGE, request_id)
    msg["encrypted"] = encrypted
    return msg


def new_challenge_answer(request_id: str, encrypted: Dict[str, str]) -> Dict[str, Any]:
    msg = _new_message(CHALLENGEANSWER, request_id)
    msg["encrypted"] = encrypted
    return msg


def new_challenge_verification(
    request_id: str,
    challenge_success: bool,
    encrypted: Optional[Dict[str, str]] = None,
    challenge_errors: Optional[Dict[str, str]] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Optional fields are left out entirely rather than set to null, so a
    successful vote verification carries no 'encrypted', 'reason' or
    'challengeErrors' keys at all.
    """
    msg = _new_message(CHALLENGEVERIFICATION, request_id)
    msg["challengeSuccess"] = bool(challenge_success)
    if encrypted is not None:
        msg["encrypted"] = encrypted
    if challenge_errors:
        msg["challengeErrors"] = challenge_errors
    if reason:
        msg["reason"] = reason
    return msg


def sign_message(msg: Dict[str, Any], signer) -> Dict[str, Any]:
    """Attach the signature record for the message's type."""
    msg["signature"] = sign_object(msg, SIGNED_PROPERTY_NAMES[msg["type"]], signer)
    return msg


def verify_message(msg: Dict[str, Any], expected_public_key: Optional[str] = None) -> bool:
    """Signature valid AND it covers the fields the protocol can't do without."""
    required = REQUIRED_SIGNED_PROPERTY_NAMES.get(msg.get("type"))
    if required is None:
        return False
    names = (msg.get("signature") or {}).get("signedPropertyNames")
    if not isinstance(names, list) or not set(required).issubset(names):
        return False
    return verify_object(msg, expected_public_key)


@dataclass
class ChallengeVerification:
    """What the publisher's caller gets back once an exchange is over."""
    request_id: str
    challenge_success: bool
    challenge_errors: Optional[Dict[str, str]] = None
    reason: Optional[str] = None
    comment: Optional[Dict[str, Any]] = None
    comment_update: Optional[Dict[str, Any]] = None

    @property
    def cid(self) -> Optional[str]:
        """Content id of the accepted comment (None for votes/edits)."""
        if self.comment_update:
            return self.comment_update.get("cid")
        return None

    def raise_for_failure(self) -> None:
        if not self.challenge_success:
            raise ChallengeFailure(self.reason, self.challenge_errors)
