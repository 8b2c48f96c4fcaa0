"""Runtime settings, read from PLEBPROTO_* environment variables, plus key files."""

import json
import os
from dataclasses import dataclass
from pathlib import Path

from . import crypto


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def key_dir() -> Path:
    """Where signer keys live (~/.plebproto unless PLEBPROTO_KEY_DIR says otherwise)."""
    return Path(os.environ.get("PLEBPROTO_KEY_DIR", Path.home() / ".plebproto"))


def key_path(name: str) -> Path:
    return key_dir() / f"{name}_priv.key"


def save_signer(name: str, signer: crypto.Signer) -> Path:
    """Write {"type", "privateKey"} to <key_dir>/<name>_priv.key (owner-only permissions)."""
    path = key_path(name)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump({"type": signer.type, "privateKey": signer.private_key}, f)
    os.chmod(path, 0o600)
    return path


def load_signer(name: str, create: bool = True, sig_type: str = crypto.ED25519) -> crypto.Signer:
    """Load a named signer, generating and saving a fresh one the first time."""
    path = key_path(name)
    if path.exists():
        with open(path) as f:
            data = json.load(f)
        return crypto.Signer.from_private_key(data["privateKey"], data.get("type", crypto.ED25519))
    if not create:
        raise FileNotFoundError(f"no key for '{name}' at {path}")
    signer = crypto.Signer.generate(sig_type)
    save_signer(name, signer)
    return signer


@dataclass
class Settings:
    data_dir: str = "./plebproto-data"
    page_size: int = 50
    update_interval: float = 1.0        # seconds between poller refreshes
    challenge_timeout: float = 120.0    # responder drops unanswered challenges after this
    exchange_timeout: float = 60.0      # publisher gives up waiting after this
    anonymous_pubsub_signer: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            data_dir=os.environ.get("PLEBPROTO_DATA_DIR", defaults.data_dir),
            page_size=int(os.environ.get("PLEBPROTO_PAGE_SIZE", defaults.page_size)),
            update_interval=float(os.environ.get("PLEBPROTO_UPDATE_INTERVAL", defaults.update_interval)),
            challenge_timeout=float(os.environ.get("PLEBPROTO_CHALLENGE_TIMEOUT", defaults.challenge_timeout)),
            exchange_timeout=float(os.environ.get("PLEBPROTO_EXCHANGE_TIMEOUT", defaults.exchange_timeout)),
            anonymous_pubsub_signer=_env_bool("PLEBPROTO_ANONYMOUS_SIGNER", defaults.anonymous_pubsub_signer),
            log_level=os.environ.get("PLEBPROTO_LOG_LEVEL", defaults.log_level),
        )
