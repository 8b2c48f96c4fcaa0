import pytest

from plebproto import crypto
from plebproto.errors import EncryptionError, SignatureError


@pytest.fixture(scope="module")
def rsa_signer():
    return crypto.Signer.generate(crypto.RSA)


class TestSignatures:
    def test_ed25519_sign_and_verify(self, signer):
        sig = crypto.sign_bytes(crypto.ED25519, signer.private_key, b"hello")
        assert crypto.verify_bytes(crypto.ED25519, signer.public_key, b"hello", sig)

    def test_rsa_sign_and_verify(self, rsa_signer):
        sig = rsa_signer.sign(b"hello")
        assert crypto.verify_bytes(crypto.RSA, rsa_signer.public_key, b"hello", sig)

    def test_tampered_data_fails(self, signer):
        sig = signer.sign(b"hello")
        assert not crypto.verify_bytes(crypto.ED25519, signer.public_key, b"hellp", sig)

    def test_wrong_key_fails(self, signer):
        other = crypto.Signer.generate()
        sig = signer.sign(b"hello")
        assert not crypto.verify_bytes(crypto.ED25519, other.public_key, b"hello", sig)

    def test_verify_never_raises_on_garbage(self, signer):
        sig = signer.sign(b"hello")
        assert not crypto.verify_bytes("dsa", signer.public_key, b"hello", sig)
        assert not crypto.verify_bytes(crypto.ED25519, "not base64!!", b"hello", sig)
        assert not crypto.verify_bytes(crypto.ED25519, signer.public_key, b"hello", "AAAA")
        assert not crypto.verify_bytes(crypto.RSA, signer.public_key, b"hello", sig)

    def test_unknown_algorithm_cannot_sign(self, signer):
        with pytest.raises(SignatureError):
            crypto.sign_bytes("dsa", signer.private_key, b"hello")

    def test_malformed_private_key_is_fatal(self):
        with pytest.raises(ValueError):
            crypto.sign_bytes(crypto.ED25519, crypto.b64_encode(b"short"), b"hello")

    def test_small_rsa_keys_are_rejected(self):
        with pytest.raises(ValueError):
            crypto.generate_rsa(1024)


class TestSigner:
    def test_ed25519_address_is_inline_peer_id(self, signer):
        assert signer.address.startswith("12D3KooW")
        assert crypto.address_from_public_key(signer.public_key, crypto.ED25519) == signer.address

    def test_rsa_address_is_hashed_peer_id(self, rsa_signer):
        assert rsa_signer.address.startswith("Qm")

    def test_from_private_key_round_trip(self, signer):
        again = crypto.Signer.from_private_key(signer.private_key)
        assert again.public_key == signer.public_key
        assert again.address == signer.address

    def test_private_key_not_in_repr(self, signer):
        assert signer.private_key not in repr(signer)


class TestEncryption:
    def test_ed25519_round_trip(self):
        alice, bob = crypto.Signer.generate(), crypto.Signer.generate()
        envelope = crypto.encrypt("héllo wörld", alice.private_key, bob.public_key)
        assert envelope["type"] == crypto.ED25519_AES_GCM
        assert set(envelope) == {"ciphertext", "iv", "tag", "type"}
        assert crypto.decrypt(envelope, bob.private_key, alice.public_key) == "héllo wörld"

    def test_rsa_round_trip(self, rsa_signer):
        sender = crypto.Signer.generate(crypto.RSA)
        envelope = crypto.encrypt('{"a": 1}', sender.private_key, rsa_signer.public_key, crypto.RSA_AES_GCM)
        assert "encryptedKey" in envelope
        assert crypto.decrypt(envelope, rsa_signer.private_key, sender.public_key) == '{"a": 1}'

    def test_fresh_iv_each_time(self):
        alice, bob = crypto.Signer.generate(), crypto.Signer.generate()
        a = crypto.encrypt("same", alice.private_key, bob.public_key)
        b = crypto.encrypt("same", alice.private_key, bob.public_key)
        assert a["iv"] != b["iv"]

    def test_tampered_ciphertext_fails_closed(self):
        alice, bob = crypto.Signer.generate(), crypto.Signer.generate()
        envelope = crypto.encrypt("secret", alice.private_key, bob.public_key)
        raw = bytearray(crypto.b64_decode(envelope["ciphertext"]))
        raw[0] ^= 0x01
        envelope["ciphertext"] = crypto.b64_encode(bytes(raw))
        with pytest.raises(EncryptionError, match="tag"):
            crypto.decrypt(envelope, bob.private_key, alice.public_key)

    def test_wrong_recipient_fails_closed(self):
        alice, bob, eve = crypto.Signer.generate(), crypto.Signer.generate(), crypto.Signer.generate()
        envelope = crypto.encrypt("secret", alice.private_key, bob.public_key)
        with pytest.raises(EncryptionError):
            crypto.decrypt(envelope, eve.private_key, alice.public_key)

    def test_unknown_type(self, signer):
        with pytest.raises(EncryptionError):
            crypto.encrypt("x", signer.private_key, signer.public_key, "rot13")
        with pytest.raises(EncryptionError):
            crypto.decrypt({"type": "rot13", "ciphertext": ""}, signer.private_key, signer.public_key)

    def test_missing_fields(self, signer):
        with pytest.raises(EncryptionError):
            crypto.decrypt({"type": crypto.ED25519_AES_GCM}, signer.private_key, signer.public_key)
        with pytest.raises(EncryptionError):
            crypto.decrypt(None, signer.private_key, signer.public_key)
