"""
plebproto — the subplebbit publication protocol.

A publication (comment, vote, comment edit) reaches a subplebbit through a
four-message challenge exchange over pubsub:

    CHALLENGEREQUEST -> CHALLENGE -> CHALLENGEANSWER -> CHALLENGEVERIFICATION

Accepted comments are stored once in a content-addressed store; the
subplebbit then keeps re-signing and re-publishing the mutable side (comment
updates, sorted pages, the index) that readers poll.

SAFETY RAILS:
- Every message and record is signed over an explicit field list, encoded as
  canonical CBOR, so peers rebuild the exact same bytes.
- Publication payloads, challenges and answers travel encrypted to one key.
- Anything that fails to verify is dropped, never surfaced as valid state.
"""
__all__ = [
    "challenges", "config", "content", "crypto", "errors", "exchange", "framing",
    "messages", "node", "pages", "poller", "publications", "run_node", "storage",
    "transport", "updates",
]
