# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import re
import tarfile
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

import redis

from .errors import CacheStoreUnavailable

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-addressed, first-writer-wins blob store:
#   - a key is a deterministic string (declared key template with matrix
#     values and hashFiles(...) lock-file digests resolved)
#   - the first successful writer for a key wins; later writes are no-ops
#   - backends only need "get" and "add if absent"; CacheStore adds the
#     per-key lock, the entry envelope and error mapping
#
# Entry layout stored by every backend:
#   <json header>\n<blob bytes>
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".dagci/cache"
DEFAULT_HASH_EXCLUDES = [
    ".git/**",
    ".dagci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

_HASH_FILES = re.compile(r"\$\{\{\s*hashFiles\((?P<args>.*?)\)\s*\}\}")
_QUOTED = re.compile("'([^']*)'|\"([^\"]*)\"")


@dataclass(frozen=True)
class CacheEntry:
    key: str
    blob: bytes
    origin: str
    created_at: float


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


# ---------------------------------------------------------------------
# Key resolution
# ---------------------------------------------------------------------

def hash_files(repo_root: str | Path, patterns: Iterable[str]) -> str:
    """
    Digest of every file matching `patterns` under `repo_root`.

    Files are ordered by relative path so the digest is stable. No match
    gives an empty string, which keeps keys like `prefix-` usable.
    """
    root = Path(repo_root).resolve()
    files: Dict[str, str] = {}
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        for p in sorted(root.glob(pat)):
            if not p.is_file():
                continue
            rel = _relpath(p, root)
            if _matches_any_glob(rel, DEFAULT_HASH_EXCLUDES):
                continue
            files[rel] = _hash_file_contents(p)

    if not files:
        return ""
    return _sha256_str(_json_dumps_stable(sorted(files.items())))


def resolve_key(key: str, repo_root: str | Path = ".") -> str:
    """Expand `${{ hashFiles('glob', ...) }}` expressions in a cache key."""
    def repl(m: re.Match) -> str:
        patterns = [a or b for a, b in _QUOTED.findall(m.group("args"))]
        return hash_files(repo_root, patterns)

    return _HASH_FILES.sub(repl, key)


# ---------------------------------------------------------------------
# Mount contents <-> blob
# ---------------------------------------------------------------------

def pack_path(path: str | Path) -> bytes:
    """tar.gz of a directory's contents (or a single file), paths relative to it."""
    src = Path(path)
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        if src.is_file():
            tar.add(str(src), arcname=src.name, recursive=False)
        elif src.is_dir():
            for f in sorted(src.rglob("*")):
                if f.is_file():
                    tar.add(str(f), arcname=_relpath(f, src), recursive=False)
    return buf.getvalue()


def unpack_into(path: str | Path, blob: bytes) -> None:
    dest = Path(path)
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        members = tar.getmembers()
        if len(members) == 1 and members[0].name == dest.name and not dest.is_dir():
            # single-file mount
            dest.parent.mkdir(parents=True, exist_ok=True)
            tar.extractall(path=str(dest.parent), filter="data")
            return
        dest.mkdir(parents=True, exist_ok=True)
        tar.extractall(path=str(dest), filter="data")


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def add(self, key: str, data: bytes) -> bool:
        """Store `data` only if `key` is absent. True if this call stored it."""
        ...


class MemoryCacheBackend:
    """Process-local backend, mostly for tests and dry runs."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def add(self, key: str, data: bytes) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = data
            return True


class FileCacheBackend:
    """
    File-based backend:
      root/
        <sha[:2]>/
          <sha256(key)>.entry
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheStoreUnavailable(f"Cannot create cache dir {self.root}: {exc}") from exc

    def entry_path(self, key: str) -> Path:
        digest = _sha256_str(key)
        return self.root / digest[:2] / f"{digest}.entry"

    def get(self, key: str) -> Optional[bytes]:
        p = self.entry_path(key)
        try:
            return p.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CacheStoreUnavailable(f"Cache read failed for key={key!r}: {exc}") from exc

    def add(self, key: str, data: bytes) -> bool:
        final = self.entry_path(key)
        tmp = final.with_name(f"{final.name}.{uuid.uuid4().hex}.tmp")
        try:
            final.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            # link() refuses to replace an existing entry: atomic first-writer-wins
            os.link(tmp, final)
            return True
        except FileExistsError:
            return False
        except OSError as exc:
            raise CacheStoreUnavailable(f"Cache write failed for key={key!r}: {exc}") from exc
        finally:
            tmp.unlink(missing_ok=True)


class RedisCacheBackend:
    """Shared backend on Redis; SET NX gives first-writer-wins across hosts."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "dagci:cache:",
        ttl: int | None = None,
        client=None,
    ) -> None:
        self.prefix = prefix
        self.ttl = ttl
        self._client = client if client is not None else redis.Redis.from_url(url)

    def _name(self, key: str) -> str:
        return self.prefix + _sha256_str(key)

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(self._name(key))
        except (redis.RedisError, OSError) as exc:
            raise CacheStoreUnavailable(f"Redis GET failed for key={key!r}: {exc}") from exc

    def add(self, key: str, data: bytes) -> bool:
        try:
            return bool(self._client.set(self._name(key), data, nx=True, ex=self.ttl))
        except (redis.RedisError, OSError) as exc:
            raise CacheStoreUnavailable(f"Redis SET failed for key={key!r}: {exc}") from exc


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

def _encode(entry: CacheEntry) -> bytes:
    header = _json_dumps_stable(
        {"key": entry.key, "origin": entry.origin, "created_at": entry.created_at}
    ).encode("utf-8")
    return header + b"\n" + entry.blob


def _decode(data: bytes) -> CacheEntry:
    header, _, blob = data.partition(b"\n")
    meta = json.loads(header.decode("utf-8"))
    return CacheEntry(
        key=meta["key"],
        blob=blob,
        origin=meta.get("origin", ""),
        created_at=float(meta.get("created_at", 0.0)),
    )


LOCK_STRIPES = 64


class CacheStore:
    """
    First-writer-wins cache shared by all job instances of a run.

    Errors from the backend surface as CacheStoreUnavailable; the scheduler
    records a warning and carries on as if it were a miss.
    """

    def __init__(self, backend: CacheBackend | None = None, *, stripes: int = LOCK_STRIPES):
        self.backend: CacheBackend = backend if backend is not None else MemoryCacheBackend()
        # fixed lock pool; keys sharing a stripe only serialise their writes
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(max(1, stripes))]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def lookup(self, key: str) -> Optional[CacheEntry]:
        data = self.backend.get(key)
        if data is None:
            return None
        try:
            return _decode(data)
        except (ValueError, KeyError, TypeError) as exc:
            raise CacheStoreUnavailable(f"Corrupt cache entry for key={key!r}: {exc}") from exc

    def persist(self, key: str, blob: bytes, *, origin: str) -> bool:
        """
        Store `blob` under `key` unless an entry already exists.
        Returns True when this call wrote the entry.
        """
        entry = CacheEntry(key=key, blob=blob, origin=origin, created_at=time.time())
        with self._lock_for(key):
            if self.backend.get(key) is not None:
                return False
            return self.backend.add(key, _encode(entry))


def open_store(cache_dir: str | Path = DEFAULT_CACHE_DIR, redis_url: str | None = None) -> CacheStore:
    if redis_url:
        return CacheStore(RedisCacheBackend(redis_url))
    return CacheStore(FileCacheBackend(cache_dir))
