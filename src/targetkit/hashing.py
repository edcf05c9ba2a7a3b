# hashing.py
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Iterable, Tuple

import joblib


def sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def sha256_str(s: str) -> str:
    return sha256_bytes(s.encode("utf-8"))


def json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_payload(obj) -> str:
    """Hash a JSON-compatible payload independent of key order."""
    return sha256_str(json_dumps_stable(obj))


def hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def hash_value(value: Any) -> str:
    """
    Content hash of an arbitrary in-memory Python value.

    Used for external constants and dynamic-branch elements, which never touch
    the disk before they are hashed.
    """
    return joblib.hash(value, hash_name="sha1")


def hash_pairs(pairs: Iterable[Tuple[str, str]]) -> str:
    # order matters: callers pass dependencies in declaration order
    return hash_payload([[k, v] for k, v in pairs])


def short(digest: str, n: int = 8) -> str:
    return digest[:n]
