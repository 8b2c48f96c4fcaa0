"""
storage.py — content-addressed store + mutable names + a small path filesystem.

Three namespaces, mirroring what an IPFS node gives a subplebbit:
- blocks:  put(bytes) -> cid, get(cid) -> bytes. Immutable.
- names:   name_publish(address, cid), name_resolve(address) -> cid. Mutable.
- files:   files_write(path, bytes), files_rm(path), files_stat(path) -> cid.
           A directory's cid is the cid of a JSON block listing its children,
           so get_path(dir_cid, "a/b") can walk it later without the files view.

Subclasses only implement the private `_...` primitives; everything callers
use lives on ContentStore and is async so a networked store can slot in.
"""

import hashlib
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

import base58

from .errors import StorageError

logger = logging.getLogger(__name__)

DIRECTORY_TYPE = "directory"


def compute_cid(data: bytes) -> str:
    """CIDv0: base58btc of the sha2-256 multihash (0x12, 0x20, digest) -> 'Qm...'."""
    return base58.b58encode(b"\x12\x20" + hashlib.sha256(data).digest()).decode("ascii")


def dump_json(obj: Any) -> bytes:
    """Stored records are compact, key-sorted JSON so equal objects share a cid."""
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def split_path(path: str) -> List[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts or any(p in (".", "..") for p in parts):
        raise StorageError(f"invalid path '{path}'")
    return parts


class ContentStore:
    # ---- primitives for subclasses ----

    def _put_block(self, cid: str, data: bytes) -> None:
        raise NotImplementedError

    def _get_block(self, cid: str) -> Optional[bytes]:
        raise NotImplementedError

    def _set_name(self, address: str, cid: str) -> None:
        raise NotImplementedError

    def _get_name(self, address: str) -> Optional[str]:
        raise NotImplementedError

    def _set_file(self, parts: List[str], cid: str) -> None:
        raise NotImplementedError

    def _remove_files(self, parts: List[str]) -> bool:
        raise NotImplementedError

    def _list_files(self, parts: List[str]) -> Dict[str, str]:
        """Every file at or below `parts`: {'/'-joined path relative to parts: cid}."""
        raise NotImplementedError

    # ---- blocks ----

    async def put(self, data: bytes) -> str:
        cid = compute_cid(data)
        try:
            self._put_block(cid, data)
        except OSError as exc:
            raise StorageError(f"put failed: {exc}") from exc
        return cid

    async def get(self, cid: str) -> bytes:
        try:
            data = self._get_block(cid)
        except OSError as exc:
            raise StorageError(f"get {cid} failed: {exc}") from exc
        if data is None:
            raise StorageError(f"no block for cid {cid}")
        return data

    async def has(self, cid: str) -> bool:
        try:
            return self._get_block(cid) is not None
        except OSError:
            return False

    async def put_json(self, obj: Any) -> str:
        return await self.put(dump_json(obj))

    async def get_json(self, cid: str) -> Any:
        data = await self.get(cid)
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StorageError(f"block {cid} is not JSON: {exc}") from exc

    # ---- names ----

    async def name_publish(self, address: str, cid: str) -> None:
        try:
            self._set_name(address, cid)
        except OSError as exc:
            raise StorageError(f"name publish for {address} failed: {exc}") from exc
        logger.debug(f"{address} -> {cid}")

    async def name_resolve(self, address: str) -> str:
        try:
            cid = self._get_name(address)
        except OSError as exc:
            raise StorageError(f"resolve {address} failed: {exc}") from exc
        if cid is None:
            raise StorageError(f"nothing published under {address}")
        return cid

    # ---- files ----

    async def files_write(self, path: str, data: bytes) -> str:
        cid = await self.put(data)
        try:
            self._set_file(split_path(path), cid)
        except OSError as exc:
            raise StorageError(f"write {path} failed: {exc}") from exc
        return cid

    async def files_rm(self, path: str) -> bool:
        """Remove a file or a whole directory. False if nothing was there."""
        try:
            return self._remove_files(split_path(path))
        except OSError as exc:
            raise StorageError(f"rm {path} failed: {exc}") from exc

    async def files_stat(self, path: str) -> str:
        """cid of a file, or of the directory block built from everything below it."""
        parts = split_path(path)
        try:
            entries = self._list_files(parts)
        except OSError as exc:
            raise StorageError(f"stat {path} failed: {exc}") from exc
        if not entries:
            raise StorageError(f"no such file or directory '{path}'")
        if "" in entries:
            return entries[""]
        tree: Dict[str, Any] = {}
        for rel, cid in entries.items():
            node = tree
            *dirs, name = rel.split("/")
            for d in dirs:
                node = node.setdefault(d, {})
            node[name] = cid
        return await self._put_tree(tree)

    async def _put_tree(self, tree: Dict[str, Any]) -> str:
        links = {}
        for name in sorted(tree):
            child = tree[name]
            links[name] = await self._put_tree(child) if isinstance(child, dict) else child
        return await self.put_json({"type": DIRECTORY_TYPE, "links": links})

    async def get_path(self, root_cid: str, path: str) -> bytes:
        """Follow directory blocks from root_cid down `path`; return the file bytes."""
        cid = root_cid
        for name in split_path(path):
            block = await self.get_json(cid)
            if not isinstance(block, dict) or block.get("type") != DIRECTORY_TYPE:
                raise StorageError(f"{cid} is not a directory")
            cid = block.get("links", {}).get(name)
            if cid is None:
                raise StorageError(f"'{name}' not found under {root_cid}/{path}")
        return await self.get(cid)


class MemoryStore(ContentStore):
    """Dict-backed store for tests and single-process demos."""

    def __init__(self) -> None:
        self.blocks: Dict[str, bytes] = {}
        self.names: Dict[str, str] = {}
        self.files: Dict[str, str] = {}

    def _put_block(self, cid: str, data: bytes) -> None:
        self.blocks[cid] = data

    def _get_block(self, cid: str) -> Optional[bytes]:
        return self.blocks.get(cid)

    def _set_name(self, address: str, cid: str) -> None:
        self.names[address] = cid

    def _get_name(self, address: str) -> Optional[str]:
        return self.names.get(address)

    def _set_file(self, parts: List[str], cid: str) -> None:
        self.files["/".join(parts)] = cid

    def _remove_files(self, parts: List[str]) -> bool:
        doomed = list(self._list_files(parts))
        prefix = "/".join(parts)
        for rel in doomed:
            self.files.pop(f"{prefix}/{rel}" if rel else prefix)
        return bool(doomed)

    def _list_files(self, parts: List[str]) -> Dict[str, str]:
        prefix = "/".join(parts)
        out = {}
        for path, cid in self.files.items():
            if path == prefix:
                out[""] = cid
            elif path.startswith(prefix + "/"):
                out[path[len(prefix) + 1:]] = cid
        return out


class FileSystemStore(ContentStore):
    """
    Store rooted at a directory:
        <root>/blocks/<cid>     raw block bytes
        <root>/names/<address>  cid text
        <root>/files/<path>     cid text (one small file per stored path)
    Every write goes to a temp file first and is swapped in with os.replace.
    """

    def __init__(self, root) -> None:
        self.root = Path(root)
        for sub in ("blocks", "names", "files"):
            (self.root / sub).mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    @staticmethod
    def _read(path: Path) -> Optional[bytes]:
        if not path.is_file():
            return None
        with open(path, "rb") as f:
            return f.read()

    def _put_block(self, cid: str, data: bytes) -> None:
        path = self.root / "blocks" / cid
        if not path.exists():
            self._atomic_write(path, data)

    def _get_block(self, cid: str) -> Optional[bytes]:
        if "/" in cid or cid in (".", ".."):
            return None
        return self._read(self.root / "blocks" / cid)

    def _set_name(self, address: str, cid: str) -> None:
        self._atomic_write(self.root / "names" / address, cid.encode("ascii"))

    def _get_name(self, address: str) -> Optional[str]:
        if "/" in address:
            return None
        data = self._read(self.root / "names" / address)
        return data.decode("ascii") if data is not None else None

    def _set_file(self, parts: List[str], cid: str) -> None:
        self._atomic_write(self.root.joinpath("files", *parts), cid.encode("ascii"))

    def _remove_files(self, parts: List[str]) -> bool:
        path = self.root.joinpath("files", *parts)
        if path.is_dir():
            shutil.rmtree(path)
            return True
        if path.is_file():
            path.unlink()
            return True
        return False

    def _list_files(self, parts: List[str]) -> Dict[str, str]:
        path = self.root.joinpath("files", *parts)
        if path.is_file():
            return {"": path.read_text("ascii")}
        out = {}
        if path.is_dir():
            for dirpath, _dirs, filenames in os.walk(path):
                for name in filenames:
                    if name.endswith(".tmp"):
                        continue
                    full = Path(dirpath) / name
                    out[full.relative_to(path).as_posix()] = full.read_text("ascii")
        return out
