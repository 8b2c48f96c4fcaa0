import pytest

from plebproto import crypto
from plebproto import messages as m
from plebproto.errors import ProtocolError, SignatureError
from plebproto.publications import Comment, CommentEdit, Vote, publication_from_payload

SUB = "12D3KooWsubplebbit"


class TestComment:
    def test_create_and_verify(self, signer):
        post = Comment.create(signer, SUB, title="hello", content="first post", timestamp=1700000000)
        post.verify_signature()
        data = post.to_dict()
        assert data["subplebbitAddress"] == SUB
        assert data["author"]["address"] == signer.address
        assert "parentCid" not in data
        assert "parentCid" not in data["signature"]["signedPropertyNames"]

    def test_payload_round_trip(self, signer):
        reply = Comment.create(signer, SUB, content="reply", parent_cid="QmParent", post_cid="QmParent")
        again = publication_from_payload(reply.to_payload())
        assert isinstance(again, Comment)
        assert again.is_reply
        again.verify_signature()

    def test_tampered_content(self, signer):
        post = Comment.create(signer, SUB, content="original")
        post.content = "changed"
        with pytest.raises(SignatureError):
            post.verify_signature()

    def test_author_must_match_signing_key(self, signer):
        post = Comment.create(signer, SUB, content="x")
        data = post.to_dict()
        data["author"] = {"address": crypto.Signer.generate().address}
        forged = Comment.from_dict(data)
        with pytest.raises(SignatureError):
            forged.verify_signature()

    def test_author_swap_resigned_by_other_key(self, signer):
        other = crypto.Signer.generate()
        post = Comment.create(signer, SUB, content="x")
        post.sign(other)
        with pytest.raises(SignatureError, match="author address"):
            post.verify_signature()

    def test_flair_is_not_signed(self, signer):
        post = Comment.create(signer, SUB, content="x", flair={"text": "new"})
        post.flair = {"text": "mod override"}
        post.verify_signature()

    def test_unsigned_present_field_is_rejected(self, signer):
        post = Comment.create(signer, SUB, content="x")
        names = [n for n in Comment.SIGNED_PROPERTY_NAMES if n != "title"]
        post.title = "sneaky"
        post.signature = m.sign_object(post.to_dict(include_signature=False), names, signer)
        with pytest.raises(SignatureError, match="not covered"):
            post.verify_signature()

    def test_validation(self, signer):
        with pytest.raises(ProtocolError, match="content, title or link"):
            Comment.create(signer, SUB)
        with pytest.raises(ProtocolError, match="postCid"):
            Comment.create(signer, SUB, content="x", parent_cid="QmP")
        with pytest.raises(ProtocolError, match="posts cannot"):
            Comment.create(signer, SUB, content="x", post_cid="QmP")
        with pytest.raises(ProtocolError, match="subplebbitAddress"):
            Comment.create(signer, "", content="x")


class TestVote:
    def test_values(self, signer):
        for value in (-1, 0, 1):
            Vote.create(signer, SUB, comment_cid="QmC", vote=value).verify_signature()
        with pytest.raises(ProtocolError):
            Vote.create(signer, SUB, comment_cid="QmC", vote=2)
        with pytest.raises(ProtocolError):
            Vote.create(signer, SUB, comment_cid="QmC", vote=True)
        with pytest.raises(ProtocolError, match="commentCid"):
            Vote.create(signer, SUB, comment_cid="", vote=1)


class TestCommentEdit:
    def test_edited_fields(self, signer):
        edit = CommentEdit.create(signer, SUB, comment_cid="QmC", content="fixed typo", pinned=True)
        assert edit.edited_fields() == {"content", "pinned"}
        edit.verify_signature()

    def test_empty_edit(self, signer):
        with pytest.raises(ProtocolError, match="changes nothing"):
            CommentEdit.create(signer, SUB, comment_cid="QmC")

    def test_types(self, signer):
        with pytest.raises(ProtocolError, match="locked"):
            CommentEdit.create(signer, SUB, comment_cid="QmC", locked="yes")
        with pytest.raises(ProtocolError, match="commentAuthor"):
            CommentEdit.create(signer, SUB, comment_cid="QmC", comment_author="banned")


class TestPayload:
    def test_unknown_field(self, signer):
        data = Vote.create(signer, SUB, comment_cid="QmC", vote=1).to_dict()
        data["extra"] = 1
        with pytest.raises(ProtocolError, match="unknown vote fields"):
            publication_from_payload({"vote": data})

    def test_unknown_kind(self):
        with pytest.raises(ProtocolError, match="unknown publication type"):
            publication_from_payload({"poll": {}})

    def test_exactly_one(self, signer):
        vote = Vote.create(signer, SUB, comment_cid="QmC", vote=1).to_dict()
        with pytest.raises(ProtocolError):
            publication_from_payload({"vote": vote, "comment": vote})
        with pytest.raises(ProtocolError):
            publication_from_payload([])

    def test_unsigned_payload(self, signer):
        data = Vote.create(signer, SUB, comment_cid="QmC", vote=1).to_dict()
        del data["signature"]
        with pytest.raises(ProtocolError, match="not signed"):
            publication_from_payload({"vote": data})
