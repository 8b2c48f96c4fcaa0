"""
framing.py — wire encoding for pubsub payloads and relay streams.

Two layers, same JSON:
- Pubsub payloads are compact UTF-8 JSON objects (`encode_message` /
  `decode_message`). Signing never uses these bytes; see messages.bytes_to_sign.
- The TCP relay wraps each JSON object in a frame: 4-byte little-endian
  unsigned length (N) + N bytes of UTF-8 JSON.

Hard cap at 4 MiB so a buggy peer can't make us allocate silly amounts of memory.
"""

import asyncio
import json
import struct
from typing import Any, Dict, Optional

MAX_FRAME_SIZE = 4 * 1024 * 1024  # 4 MiB hard limit
LENGTH_STRUCT = struct.Struct("<I")  # little-endian unsigned 32-bit length


def encode_message(obj: Dict[str, Any]) -> bytes:
    """Compact JSON, keep non-ASCII as UTF-8 (not \\u escapes)."""
    payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError("Message exceeds maximum size")
    return payload


def decode_message(payload: bytes) -> Dict[str, Any]:
    """
    Parse one pubsub payload.

    Raises:
        ValueError: too big, not UTF-8 JSON, or not a JSON object.
    """
    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError(f"Message too large: {len(payload)} > {MAX_FRAME_SIZE}")
    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # Keep the message short; no payload echo to avoid leaking big data.
        raise ValueError(f"Invalid JSON message: {exc}") from exc
    if not isinstance(obj, dict):
        raise ValueError("Message must be a JSON object")
    return obj


async def read_frame(reader: asyncio.StreamReader) -> Optional[Dict[str, Any]]:
    """
    Read one framed JSON message and return it as a dict.

    Returns None on a clean EOF between frames.
    Raises:
        ValueError: if the frame is too big or the JSON is invalid.
        asyncio.IncompleteReadError: if the peer vanished mid-frame.
    """
    # 1) Read the 4-byte length prefix.
    try:
        len_bytes = await reader.readexactly(LENGTH_STRUCT.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise
    (length,) = LENGTH_STRUCT.unpack(len_bytes)

    # Quick sanity check before allocating/reading the body.
    if length > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")

    # 2) Read the JSON payload exactly as long as the prefix said, then parse.
    payload = await reader.readexactly(length)
    return decode_message(payload)


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    """Serialize a dict to compact JSON and write it as a framed message."""
    payload = encode_message(obj)

    # Prefix with 4-byte little-endian length, then the payload itself.
    writer.write(LENGTH_STRUCT.pack(len(payload)))
    writer.write(payload)
    await writer.drain()  # Let the transport flush; important under backpressure.
