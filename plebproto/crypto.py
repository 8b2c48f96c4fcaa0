"""
crypto.py — key, signature and encryption helpers.

Why this exists:
- Keep all the key handling in one place so the rest of the code can call
  `sign_bytes/verify_bytes/encrypt/decrypt` with a type tag and base64 strings.
- Every signature and every encrypted envelope names its algorithm, so peers
  running older protocol versions still interoperate. The tag is looked up in
  a capability table below; adding a scheme means adding a table row.

Notes:
- Keys travel as standard base64: raw 32 bytes for ed25519, DER
  (PKCS#8 / SubjectPublicKeyInfo) for RSA.
- Addresses are libp2p peer ids (base58btc multihash of the protobuf key).
- `ed25519-aes-gcm` converts both ed25519 keys to X25519, so the signing key of
  a subplebbit doubles as its encryption key.
"""

import base64
import hashlib
import os
from dataclasses import dataclass, field
from typing import Callable, Dict, Tuple

import base58
from cryptography.exceptions import InvalidKey, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa, x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import EncryptionError, SignatureError

ED25519 = "ed25519"
RSA = "rsa"
ED25519_AES_GCM = "ed25519-aes-gcm"
RSA_AES_GCM = "rsa-aes-gcm"

MIN_RSA_BITS = 2048
IV_LENGTH = 12
TAG_LENGTH = 16

# -----------------------------
# Base64 helpers (standard alphabet, padded)
# -----------------------------

def b64_encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64_decode(data: str) -> bytes:
    """Strict decode; raises ValueError (binascii.Error) on junk."""
    return base64.b64decode(data, validate=True)


# -------------
# Ed25519 key utils
# -------------

def generate_ed25519() -> Tuple[str, str]:
    """Fresh ed25519 keypair as (private_b64, public_b64), raw 32-byte encodings."""
    priv = ed25519.Ed25519PrivateKey.generate()
    private_raw = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return b64_encode(private_raw), _ed25519_public_b64(priv)


def _ed25519_public_b64(priv: ed25519.Ed25519PrivateKey) -> str:
    public_raw = priv.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return b64_encode(public_raw)


def load_ed25519_private(private_key: str) -> ed25519.Ed25519PrivateKey:
    return ed25519.Ed25519PrivateKey.from_private_bytes(b64_decode(private_key))


def load_ed25519_public(public_key: str) -> ed25519.Ed25519PublicKey:
    return ed25519.Ed25519PublicKey.from_public_bytes(b64_decode(public_key))


# -------------
# RSA key utils
# -------------

def enforce_rsa(key) -> None:
    """Only RSA keys, and nothing weaker than MIN_RSA_BITS."""
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        if key.key_size < MIN_RSA_BITS:
            raise InvalidKey(f"RSA key must be at least {MIN_RSA_BITS} bits.")
    else:
        raise InvalidKey("Key must be RSA public/private key.")


def generate_rsa(bits: int = MIN_RSA_BITS) -> Tuple[str, str]:
    """Fresh RSA keypair as (PKCS#8 DER b64, SubjectPublicKeyInfo DER b64)."""
    if bits < MIN_RSA_BITS:
        raise ValueError(f"RSA key must be at least {MIN_RSA_BITS} bits.")
    priv = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    return export_rsa_private(priv), export_rsa_public(priv.public_key())


def export_rsa_private(priv: rsa.RSAPrivateKey) -> str:
    der = priv.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return b64_encode(der)


def export_rsa_public(pub: rsa.RSAPublicKey) -> str:
    der = pub.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return b64_encode(der)


def load_rsa_private(private_key: str) -> rsa.RSAPrivateKey:
    key = serialization.load_der_private_key(b64_decode(private_key), password=None)
    enforce_rsa(key)
    return key


def load_rsa_public(public_key: str) -> rsa.RSAPublicKey:
    key = serialization.load_der_public_key(b64_decode(public_key))
    enforce_rsa(key)
    return key


def rsa_encrypt(pub: rsa.RSAPublicKey, plaintext: bytes) -> str:
    """
    RSA-OAEP(SHA-256), base64 out. Only ever used to wrap a symmetric key;
    the payload itself goes through AES-GCM.
    """
    ct = pub.encrypt(
        plaintext,
        padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA256()),
            algorithm=hashes.SHA256(),
            label=None,
        ),
    )
    return b64_encode(ct)


def rsa_decrypt(priv: rsa.RSAPrivateKey, ct_b64: str) -> bytes:
    """Reverse of rsa_encrypt()."""
    return priv.decrypt(
        b64_decode(ct_b64),
        padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA256()),
            algorithm=hashes.SHA256(),
            label=None,
        ),
    )


# -------------------------
# Signing & Verification API
# -------------------------

def _sign_ed25519(private_key: str, data: bytes) -> bytes:
    return load_ed25519_private(private_key).sign(data)


def _verify_ed25519(public_key: str, data: bytes, signature: bytes) -> None:
    load_ed25519_public(public_key).verify(signature, data)


def _sign_rsa(private_key: str, data: bytes) -> bytes:
    # PKCS#1 v1.5 is what libp2p RSA keys sign with; PSS would not interop.
    return load_rsa_private(private_key).sign(data, padding.PKCS1v15(), hashes.SHA256())


def _verify_rsa(public_key: str, data: bytes, signature: bytes) -> None:
    load_rsa_public(public_key).verify(signature, data, padding.PKCS1v15(), hashes.SHA256())


# type tag -> (sign, verify). verify raises on mismatch; verify_bytes turns that into False.
SIGNATURE_TYPES: Dict[str, Tuple[Callable[[str, bytes], bytes], Callable[[str, bytes, bytes], None]]] = {
    ED25519: (_sign_ed25519, _verify_ed25519),
    RSA: (_sign_rsa, _verify_rsa),
}


def sign_bytes(sig_type: str, private_key: str, data: bytes) -> str:
    """
    Sign raw bytes with the scheme named by `sig_type`. Returns base64.

    Raises SignatureError for unknown schemes and ValueError/InvalidKey for
    malformed key material; both mean the caller has a configuration bug.
    """
    try:
        signer, _ = SIGNATURE_TYPES[sig_type]
    except (KeyError, TypeError):
        raise SignatureError(f"unsupported signature type '{sig_type}'") from None
    return b64_encode(signer(private_key, data))


def verify_bytes(sig_type: str, public_key: str, data: bytes, signature_b64: str) -> bool:
    """
    Verify a base64 signature produced by `sign_bytes()`.
    Returns True on success, False on any failure (bad key, wrong data, etc.).
    """
    if not isinstance(sig_type, str) or sig_type not in SIGNATURE_TYPES:
        return False
    _, verifier = SIGNATURE_TYPES[sig_type]
    try:
        verifier(public_key, data, b64_decode(signature_b64))
        return True
    except Exception:
        # We don't leak verify errors to callers; they just see False.
        return False


def public_key_from_private(sig_type: str, private_key: str) -> str:
    if sig_type == ED25519:
        return _ed25519_public_b64(load_ed25519_private(private_key))
    if sig_type == RSA:
        return export_rsa_public(load_rsa_private(private_key).public_key())
    raise SignatureError(f"unsupported signature type '{sig_type}'")


# ---------------------------------------
# Addresses (libp2p peer ids)
# ---------------------------------------

_PROTOBUF_KEY_TYPES = {RSA: 0, ED25519: 1}
_MAX_INLINE_KEY_LENGTH = 42  # libp2p inlines short keys with the identity hash


def _varint(n: int) -> bytes:
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def address_from_public_key(public_key: str, sig_type: str = ED25519) -> str:
    """Base58 peer id of a public key; ed25519 keys give the familiar 12D3KooW... form."""
    if sig_type not in _PROTOBUF_KEY_TYPES:
        raise SignatureError(f"unsupported signature type '{sig_type}'")
    key_bytes = b64_decode(public_key)
    proto = bytes([0x08, _PROTOBUF_KEY_TYPES[sig_type], 0x12]) + _varint(len(key_bytes)) + key_bytes
    if len(proto) <= _MAX_INLINE_KEY_LENGTH:
        multihash = bytes([0x00, len(proto)]) + proto
    else:
        multihash = bytes([0x12, 0x20]) + hashlib.sha256(proto).digest()
    return base58.b58encode(multihash).decode("ascii")


@dataclass
class Signer:
    """A keypair plus the address derived from it. Private key never printed."""
    type: str
    private_key: str = field(repr=False)
    public_key: str
    address: str

    @classmethod
    def generate(cls, sig_type: str = ED25519, rsa_bits: int = MIN_RSA_BITS) -> "Signer":
        if sig_type == ED25519:
            private_key, public_key = generate_ed25519()
        elif sig_type == RSA:
            private_key, public_key = generate_rsa(rsa_bits)
        else:
            raise SignatureError(f"unsupported signature type '{sig_type}'")
        return cls(sig_type, private_key, public_key, address_from_public_key(public_key, sig_type))

    @classmethod
    def from_private_key(cls, private_key: str, sig_type: str = ED25519) -> "Signer":
        public_key = public_key_from_private(sig_type, private_key)
        return cls(sig_type, private_key, public_key, address_from_public_key(public_key, sig_type))

    def sign(self, data: bytes) -> str:
        return sign_bytes(self.type, self.private_key, data)


# ---------------------------
# Encryption & Decryption API
# ---------------------------

_ED25519_P = 2 ** 255 - 19


def _x25519_private_from_ed25519(private_key: str) -> x25519.X25519PrivateKey:
    seed = b64_decode(private_key)
    if len(seed) != 32:
        raise ValueError("ed25519 private key must be 32 bytes")
    # Same scalar ed25519 derives from the seed; X25519 clamps it itself.
    return x25519.X25519PrivateKey.from_private_bytes(hashlib.sha512(seed).digest()[:32])


def _x25519_public_from_ed25519(public_key: str) -> x25519.X25519PublicKey:
    raw = b64_decode(public_key)
    if len(raw) != 32:
        raise ValueError("ed25519 public key must be 32 bytes")
    y = int.from_bytes(raw, "little") & ((1 << 255) - 1)
    denominator = (1 - y) % _ED25519_P
    if denominator == 0:
        raise ValueError("ed25519 public key has no montgomery form")
    # Birational map Edwards y -> Montgomery u = (1 + y) / (1 - y)
    u = (1 + y) * pow(denominator, _ED25519_P - 2, _ED25519_P) % _ED25519_P
    return x25519.X25519PublicKey.from_public_bytes(u.to_bytes(32, "little"))


def _ed25519_shared_key(private_key: str, public_key: str) -> bytes:
    shared = _x25519_private_from_ed25519(private_key).exchange(_x25519_public_from_ed25519(public_key))
    return shared[:16]  # AES-128-GCM


def _aes_gcm_seal(key: bytes, plaintext: bytes) -> Dict[str, str]:
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    return {
        "ciphertext": b64_encode(sealed[:-TAG_LENGTH]),
        "iv": b64_encode(iv),
        "tag": b64_encode(sealed[-TAG_LENGTH:]),
    }


def _aes_gcm_open(key: bytes, envelope: Dict[str, str]) -> bytes:
    sealed = b64_decode(envelope["ciphertext"]) + b64_decode(envelope["tag"])
    return AESGCM(key).decrypt(b64_decode(envelope["iv"]), sealed, None)


def _encrypt_ed25519_aes_gcm(plaintext: bytes, sender_private_key: str, recipient_public_key: str) -> Dict[str, str]:
    return _aes_gcm_seal(_ed25519_shared_key(sender_private_key, recipient_public_key), plaintext)


def _decrypt_ed25519_aes_gcm(envelope: Dict[str, str], recipient_private_key: str, sender_public_key: str) -> bytes:
    return _aes_gcm_open(_ed25519_shared_key(recipient_private_key, sender_public_key), envelope)


def _encrypt_rsa_aes_gcm(plaintext: bytes, sender_private_key: str, recipient_public_key: str) -> Dict[str, str]:
    # Sender key is not needed: the content key is wrapped for the recipient only.
    key = AESGCM.generate_key(bit_length=256)
    envelope = _aes_gcm_seal(key, plaintext)
    envelope["encryptedKey"] = rsa_encrypt(load_rsa_public(recipient_public_key), key)
    return envelope


def _decrypt_rsa_aes_gcm(envelope: Dict[str, str], recipient_private_key: str, sender_public_key: str) -> bytes:
    key = rsa_decrypt(load_rsa_private(recipient_private_key), envelope["encryptedKey"])
    return _aes_gcm_open(key, envelope)


ENCRYPTION_TYPES = {
    ED25519_AES_GCM: (_encrypt_ed25519_aes_gcm, _decrypt_ed25519_aes_gcm),
    RSA_AES_GCM: (_encrypt_rsa_aes_gcm, _decrypt_rsa_aes_gcm),
}

# encryption scheme -> signer type whose keys it consumes
ENCRYPTION_KEY_TYPES = {
    ED25519_AES_GCM: ED25519,
    RSA_AES_GCM: RSA,
}

# signer type -> encryption scheme a subplebbit with that key advertises
DEFAULT_ENCRYPTION_TYPES = {
    ED25519: ED25519_AES_GCM,
    RSA: RSA_AES_GCM,
}


def encrypt(plaintext: str, sender_private_key: str, recipient_public_key: str,
            enc_type: str = ED25519_AES_GCM) -> Dict[str, str]:
    """Encrypt UTF-8 text for one recipient. The envelope names its scheme in 'type'."""
    if enc_type not in ENCRYPTION_TYPES:
        raise EncryptionError(f"unsupported encryption type '{enc_type}'")
    encrypter, _ = ENCRYPTION_TYPES[enc_type]
    try:
        envelope = encrypter(plaintext.encode("utf-8"), sender_private_key, recipient_public_key)
    except (InvalidKey, TypeError, ValueError) as exc:
        raise EncryptionError(f"cannot encrypt with {enc_type}: {exc}") from exc
    envelope["type"] = enc_type
    return envelope


def decrypt(envelope: Dict[str, str], recipient_private_key: str, sender_public_key: str) -> str:
    """Reverse of encrypt(). Fails closed with EncryptionError, never returns garbage."""
    if not isinstance(envelope, dict):
        raise EncryptionError("encrypted envelope must be an object")
    enc_type = envelope.get("type")
    if not isinstance(enc_type, str) or enc_type not in ENCRYPTION_TYPES:
        raise EncryptionError(f"unsupported encryption type '{enc_type}'")
    _, decrypter = ENCRYPTION_TYPES[enc_type]
    try:
        return decrypter(envelope, recipient_private_key, sender_public_key).decode("utf-8")
    except InvalidTag as exc:
        raise EncryptionError("authentication tag mismatch") from exc
    except (InvalidKey, KeyError, TypeError, ValueError) as exc:
        raise EncryptionError(f"cannot decrypt {enc_type} envelope: {exc}") from exc
