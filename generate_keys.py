import sys

from plebproto import crypto
from plebproto.config import key_path, save_signer

# Quick one-off keygen for a named identity (default "alice").
# - ed25519 unless "rsa" is given as the second argument.
# - Private key is written unencrypted to ~/.plebproto/<name>_priv.key
#   (fine for local testing; lock it down for real use).

name = sys.argv[1] if len(sys.argv) > 1 else "alice"
sig_type = sys.argv[2] if len(sys.argv) > 2 else crypto.ED25519

# 1) Refuse to clobber an identity that already exists.
if key_path(name).exists():
    raise SystemExit(f"{key_path(name)} already exists")

# 2) Generate the keypair and save it.
signer = crypto.Signer.generate(sig_type)
path = save_signer(name, signer)

# 3) Print the address so it can be pasted into --subplebbit / --moderator.
print(f"Saved {signer.type} key to {path}")
print(f"{name}'s address:")
print(signer.address)
