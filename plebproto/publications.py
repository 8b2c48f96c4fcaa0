"""
publications.py — the three things a user can publish to a subplebbit.

    Comment      a post (no parentCid) or a reply (parentCid + postCid)
    Vote         +1 / -1 / 0 on a comment
    CommentEdit  author or moderator changes to an existing comment

Python attributes are snake_case; the wire (and the signature) uses camelCase,
`to_dict()`/`from_dict()` convert. A publication is immutable once signed:
change a signed field and `verify_signature()` fails.
"""

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, Optional, Set, Tuple, Type

from . import crypto
from . import messages as m
from .errors import ProtocolError, SignatureError


def _camel(name: str) -> str:
    first, *rest = name.split("_")
    return first + "".join(part.title() for part in rest)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class Publication:
    KIND: ClassVar[str] = ""
    SIGNED_PROPERTY_NAMES: ClassVar[Tuple[str, ...]] = ()

    subplebbit_address: str = ""
    author: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0
    protocol_version: str = m.PROTOCOL_VERSION
    signature: Optional[Dict[str, Any]] = None

    # ---- wire format ----

    def to_dict(self, include_signature: bool = True) -> Dict[str, Any]:
        out = {}
        for f in fields(self):
            if f.name == "signature" and not include_signature:
                continue
            value = getattr(self, f.name)
            if value is not None:
                out[_camel(f.name)] = value
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Publication":
        if not isinstance(data, dict):
            raise ProtocolError(f"{cls.KIND} must be an object")
        by_wire = {_camel(f.name): f.name for f in fields(cls)}
        unknown = set(data) - set(by_wire)
        if unknown:
            raise ProtocolError(f"unknown {cls.KIND} fields: {sorted(unknown)}")
        return cls(**{by_wire[key]: value for key, value in data.items()})

    def to_payload(self) -> Dict[str, Any]:
        """What gets encrypted into a CHALLENGEREQUEST: {"comment": {...}} etc."""
        return {self.KIND: self.to_dict()}

    @property
    def author_address(self) -> str:
        return self.author.get("address", "")

    # ---- signing ----

    @classmethod
    def create(cls, signer, subplebbit_address: str, timestamp: Optional[int] = None,
               author: Optional[Dict[str, Any]] = None, **kwargs) -> "Publication":
        """Build, validate and sign a publication authored by `signer`."""
        author = dict(author or {})
        author["address"] = signer.address
        publication = cls(
            subplebbit_address=subplebbit_address,
            author=author,
            timestamp=timestamp if timestamp is not None else m.now_s(),
            **kwargs,
        )
        publication.validate(require_signature=False)
        publication.sign(signer)
        return publication

    def sign(self, signer) -> None:
        self.signature = m.sign_object(self.to_dict(include_signature=False), self.SIGNED_PROPERTY_NAMES, signer)

    def verify_signature(self) -> None:
        """
        Raise SignatureError unless the signature is valid, covers every signable
        field that is present, and the author address belongs to the signing key.
        """
        data = self.to_dict()
        m.assert_signature(data, what=self.KIND)
        signed = set(self.signature.get("signedPropertyNames", []))
        unsigned = [name for name in self.SIGNED_PROPERTY_NAMES if data.get(name) is not None and name not in signed]
        if unsigned:
            raise SignatureError(f"{self.KIND} fields not covered by signature: {unsigned}")
        try:
            expected = crypto.address_from_public_key(self.signature["publicKey"], self.signature["type"])
        except (SignatureError, TypeError, ValueError) as exc:
            raise SignatureError(f"bad {self.KIND} signature public key: {exc}") from exc
        if self.author_address != expected:
            raise SignatureError("author address doesn't match signature public key")

    # ---- validation ----

    def validate(self, require_signature: bool = True) -> None:
        """Shape checks at the encode/decode boundary. Raises ProtocolError."""
        if not isinstance(self.subplebbit_address, str) or not self.subplebbit_address:
            raise ProtocolError("subplebbitAddress is required")
        if not isinstance(self.author, dict) or not isinstance(self.author.get("address"), str):
            raise ProtocolError("author.address is required")
        if not _is_int(self.timestamp) or self.timestamp <= 0:
            raise ProtocolError("timestamp must be a positive integer")
        if not isinstance(self.protocol_version, str):
            raise ProtocolError("protocolVersion must be a string")
        if require_signature and not isinstance(self.signature, dict):
            raise ProtocolError(f"{self.KIND} is not signed")
        self._validate_fields()

    def _validate_fields(self) -> None:
        pass


@dataclass
class Comment(Publication):
    KIND: ClassVar[str] = "comment"
    # flair and spoiler are left unsigned so moderators can override them
    SIGNED_PROPERTY_NAMES: ClassVar[Tuple[str, ...]] = (
        "subplebbitAddress", "author", "timestamp", "protocolVersion",
        "content", "title", "link", "parentCid", "postCid",
    )

    content: Optional[str] = None
    title: Optional[str] = None
    link: Optional[str] = None
    parent_cid: Optional[str] = None
    post_cid: Optional[str] = None
    flair: Optional[Dict[str, Any]] = None
    spoiler: Optional[bool] = None

    @property
    def is_reply(self) -> bool:
        return self.parent_cid is not None

    def _validate_fields(self) -> None:
        if self.content is None and self.title is None and self.link is None:
            raise ProtocolError("comment needs content, title or link")
        for name in ("content", "title", "link", "parent_cid", "post_cid"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise ProtocolError(f"{_camel(name)} must be a string")
        if self.parent_cid is not None and not self.post_cid:
            raise ProtocolError("replies must include postCid")
        if self.parent_cid is None and self.post_cid is not None:
            raise ProtocolError("posts cannot have a postCid")
        if self.flair is not None and not isinstance(self.flair, dict):
            raise ProtocolError("flair must be an object")
        if self.spoiler is not None and not isinstance(self.spoiler, bool):
            raise ProtocolError("spoiler must be a boolean")


@dataclass
class Vote(Publication):
    KIND: ClassVar[str] = "vote"
    SIGNED_PROPERTY_NAMES: ClassVar[Tuple[str, ...]] = (
        "subplebbitAddress", "author", "timestamp", "protocolVersion", "commentCid", "vote",
    )

    comment_cid: str = ""
    vote: int = 0

    def _validate_fields(self) -> None:
        if not isinstance(self.comment_cid, str) or not self.comment_cid:
            raise ProtocolError("commentCid is required")
        if not _is_int(self.vote) or self.vote not in (-1, 0, 1):
            raise ProtocolError("vote must be -1, 0 or 1")


@dataclass
class CommentEdit(Publication):
    KIND: ClassVar[str] = "commentEdit"
    SIGNED_PROPERTY_NAMES: ClassVar[Tuple[str, ...]] = (
        "subplebbitAddress", "author", "timestamp", "protocolVersion", "commentCid",
        "content", "deleted", "flair", "spoiler", "reason",
        "pinned", "locked", "removed", "commentAuthor",
    )
    AUTHOR_FIELDS: ClassVar[Tuple[str, ...]] = ("content", "deleted", "flair", "spoiler", "reason")
    MODERATOR_FIELDS: ClassVar[Tuple[str, ...]] = ("flair", "spoiler", "reason", "pinned", "locked", "removed", "commentAuthor")

    comment_cid: str = ""
    content: Optional[str] = None
    deleted: Optional[bool] = None
    flair: Optional[Dict[str, Any]] = None
    spoiler: Optional[bool] = None
    reason: Optional[str] = None
    pinned: Optional[bool] = None
    locked: Optional[bool] = None
    removed: Optional[bool] = None
    comment_author: Optional[Dict[str, Any]] = None

    def edited_fields(self) -> Set[str]:
        """Wire names of the edit fields this edit actually sets."""
        data = self.to_dict()
        return {name for name in self.AUTHOR_FIELDS + self.MODERATOR_FIELDS if data.get(name) is not None}

    def _validate_fields(self) -> None:
        if not isinstance(self.comment_cid, str) or not self.comment_cid:
            raise ProtocolError("commentCid is required")
        if not self.edited_fields():
            raise ProtocolError("comment edit changes nothing")
        for name in ("deleted", "spoiler", "pinned", "locked", "removed"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, bool):
                raise ProtocolError(f"{name} must be a boolean")
        for name in ("content", "reason"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise ProtocolError(f"{name} must be a string")
        for name in ("flair", "comment_author"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, dict):
                raise ProtocolError(f"{_camel(name)} must be an object")


PUBLICATION_TYPES: Dict[str, Type[Publication]] = {
    Comment.KIND: Comment,
    Vote.KIND: Vote,
    CommentEdit.KIND: CommentEdit,
}


def publication_from_payload(payload: Dict[str, Any]) -> Publication:
    """Inverse of Publication.to_payload(); validates the shape on the way in."""
    if not isinstance(payload, dict) or len(payload) != 1:
        raise ProtocolError("publication payload must hold exactly one publication")
    (kind, data), = payload.items()
    cls = PUBLICATION_TYPES.get(kind)
    if cls is None:
        raise ProtocolError(f"unknown publication type '{kind}'")
    try:
        publication = cls.from_dict(data)
    except TypeError as exc:
        raise ProtocolError(f"malformed {kind}: {exc}") from exc
    publication.validate()
    return publication
