# cache.py
from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Literal, Optional, Sequence
from urllib.parse import quote, unquote

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import DEFAULT_STORE
from .errors import TargetNotFoundError
from .hashing import hash_file_contents, hash_pairs, hash_payload, hash_value, sha256_str

if TYPE_CHECKING:
    from .dag import Graph, Node

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# One fingerprint per target:
#   command_hash = hash(command text + source of called functions)
#   depend_hash  = hash(
#       data_hash of every upstream target,
#       hash of every referenced constant,
#       element hashes (dynamic branches only)
#   )
#   format       = storage format id
#   data_hash    = hash of the stored object / tracked file contents
#
# A target is stale when any of these differ from what the last successful
# run recorded (subject to its Cue). Records are replaced, never edited:
#
#   root/
#     meta/<name>.json      one Fingerprint per target
#     objects/<name>        stored value (not used by file targets)
# ---------------------------------------------------------------------

RECORD_VERSION = 1


class FileStamp(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    hash: str
    size: int
    mtime_ns: int

    @classmethod
    def of(cls, path: Path, previous: Optional["FileStamp"] = None) -> "FileStamp":
        """
        Stamp a file. The content hash is reused only when path, size and
        mtime all match the previous stamp; otherwise the file is rehashed.
        """
        st = path.stat()
        if (
            previous is not None
            and previous.path == str(path)
            and previous.size == st.st_size
            and previous.mtime_ns == st.st_mtime_ns
        ):
            return previous
        return cls(path=str(path), hash=hash_file_contents(path), size=st.st_size, mtime_ns=st.st_mtime_ns)


class Fingerprint(BaseModel):
    model_config = ConfigDict(frozen=True)

    v: int = RECORD_VERSION
    name: str
    kind: Literal["stem", "branch", "pattern"] = "stem"
    command_hash: str
    depend_hash: str
    format: str
    data_hash: str
    files: List[FileStamp] = Field(default_factory=list)
    children: List[str] = Field(default_factory=list)
    parent: Optional[str] = None
    seconds: float = 0.0
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def paths(self) -> List[Path]:
        return [Path(f.path) for f in self.files]


@dataclass(frozen=True)
class Staleness:
    stale: bool
    reason: str  # human readable

    def __bool__(self) -> bool:
        return self.stale


def data_hash_of_files(stamps: Sequence[FileStamp]) -> str:
    return hash_pairs((s.path, s.hash) for s in stamps)


def data_hash_of_children(children: Sequence[Fingerprint]) -> str:
    return hash_pairs((c.name, c.data_hash) for c in children)


def branch_command_hash(parent_hash: str, pattern_text: str, reps: int) -> str:
    return sha256_str(f"{parent_hash}|{pattern_text}|reps={reps}")


class FingerprintStore:
    """
    File-based fingerprint store:
      root/
        meta/<name>.json
        objects/<name>
    """

    def __init__(self, root: str | Path = DEFAULT_STORE):
        self.root = Path(root).resolve()
        self.meta_dir = self.root / "meta"
        self.objects_dir = self.root / "objects"
        self.meta_dir.mkdir(parents=True, exist_ok=True)
        self.objects_dir.mkdir(parents=True, exist_ok=True)

    # ---- layout ----
    @staticmethod
    def _key(name: str) -> str:
        return quote(name, safe="-_.")

    def meta_path(self, name: str) -> Path:
        return self.meta_dir / f"{self._key(name)}.json"

    def object_path(self, name: str) -> Path:
        return self.objects_dir / self._key(name)

    # ---- records ----
    def lookup(self, name: str) -> Optional[Fingerprint]:
        """Return the current record, or None when there is none (or it is unreadable)."""
        p = self.meta_path(name)
        try:
            return Fingerprint.model_validate_json(p.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError, ValueError):
            # an unreadable record is as good as none: the target reruns
            return None

    def require(self, name: str) -> Fingerprint:
        fp = self.lookup(name)
        if fp is None:
            raise TargetNotFoundError(name)
        return fp

    def commit(self, fingerprint: Fingerprint) -> None:
        """Replace the record for fingerprint.name atomically."""
        dst = self.meta_path(fingerprint.name)
        tmp = dst.with_name(dst.name + ".tmp")
        try:
            tmp.write_text(fingerprint.model_dump_json(indent=2), encoding="utf-8")
            tmp.replace(dst)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def names(self) -> List[str]:
        return sorted(unquote(p.name[: -len(".json")]) for p in self.meta_dir.glob("*.json"))

    def invalidate(self, name: str) -> bool:
        """Drop the record so the target reruns next time. Stored objects stay."""
        p = self.meta_path(name)
        if not p.exists():
            return False
        p.unlink()
        return True

    def prune(self, keep: Iterable[str]) -> List[str]:
        """
        Remove records and objects of targets not in `keep`.
        Branches of a kept dynamic target are kept too.
        """
        keep_set = set(keep)
        for name in list(keep_set):
            fp = self.lookup(name)
            if fp is not None and fp.kind == "pattern":
                keep_set.update(fp.children)

        removed: List[str] = []
        for name in self.names():
            if name in keep_set:
                continue
            self.meta_path(name).unlink(missing_ok=True)
            self.object_path(name).unlink(missing_ok=True)
            removed.append(name)
        return removed

    def destroy(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)
        self.meta_dir.mkdir(parents=True, exist_ok=True)
        self.objects_dir.mkdir(parents=True, exist_ok=True)

    # ---- hashing ----
    def depend_hash(self, node: "Node", graph: "Graph") -> Optional[str]:
        """
        Hash of everything the node reads. None when an upstream target has no
        record yet (then the node is stale by definition).
        """
        deps = []
        for d in node.deps:
            fp = self.lookup(d)
            if fp is None:
                return None
            deps.append([d, fp.data_hash])
        consts = [[c, hash_value(graph.constants[c])] for c in node.constants]
        return hash_payload({"deps": deps, "constants": consts, "elements": list(node.element_hashes)})

    # ---- staleness ----
    def _files_changed(self, fp: Fingerprint) -> Optional[str]:
        if not fp.files:
            return "no stored output recorded"
        for stamp in fp.files:
            p = Path(stamp.path)
            if not p.is_file():
                return f"stored output missing: {stamp.path}"
            current = FileStamp.of(p, previous=stamp)
            if current.hash != stamp.hash:
                return f"file content changed: {stamp.path}"
        return None

    def _children_changed(self, fp: Fingerprint) -> Optional[str]:
        for child in fp.children:
            cfp = self.lookup(child)
            if cfp is None:
                return f"branch record missing: {child}"
            why = self._files_changed(cfp)
            if why:
                return f"branch {child}: {why}"
        return None

    def check(self, node: "Node", graph: "Graph") -> Staleness:
        cue = node.cue
        if cue.mode == "always":
            return Staleness(True, "cue: always")

        fp = self.lookup(node.name)
        if fp is None:
            return Staleness(True, "no record")
        if cue.mode == "never":
            return Staleness(False, "cue: never")

        if cue.command and fp.command_hash != node.command_hash:
            return Staleness(True, "command changed")
        if cue.depend:
            dh = self.depend_hash(node, graph)
            if dh is None:
                return Staleness(True, "upstream record missing")
            if dh != fp.depend_hash:
                return Staleness(True, "upstream changed")
        if cue.format and fp.format != node.format:
            return Staleness(True, f"format changed ({fp.format} -> {node.format})")
        if cue.file:
            why = self._children_changed(fp) if node.is_placeholder else self._files_changed(fp)
            if why:
                return Staleness(True, why)
        return Staleness(False, "up to date")

    def is_stale(self, node: "Node", graph: "Graph") -> bool:
        return self.check(node, graph).stale
