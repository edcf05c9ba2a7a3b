# formats.py
"""
Pluggable storage formats.

A format knows how to write one target value to a path and read it back. The
registry looks formats up by id and turns every failure into a
SerializationError, so a lost output can never pass for a stored one.

    registry = FormatRegistry.default()
    registry.register(MyParquetFormat())
    registry.serialize("parquet", df, Path(".targetkit/objects/data"))
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Sequence, Union

import joblib

from .errors import NodeError, SerializationError, StaleFileNotFoundError, UnknownFormatError

Location = Union[Path, Sequence[Path]]


class Format:
    """Base class. Subclasses set `name` and implement write/read."""
    name: str = ""
    # True when the value is a path to a file the user owns and we only track
    tracks_files: bool = False
    # False when a Python list (one dynamic batch) cannot be stored as-is
    holds_lists: bool = True

    def write(self, value: Any, path: Path) -> None:
        raise NotImplementedError

    def read(self, path: Path) -> Any:
        raise NotImplementedError


class ObjectFormat(Format):
    """Any picklable Python object."""
    name = "object"

    def write(self, value: Any, path: Path) -> None:
        joblib.dump(value, str(path))

    def read(self, path: Path) -> Any:
        return joblib.load(str(path))


class JsonFormat(Format):
    name = "json"

    def write(self, value: Any, path: Path) -> None:
        path.write_text(json.dumps(value, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")

    def read(self, path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))


class CsvFormat(Format):
    """Tabular data as a pandas DataFrame."""
    name = "csv"
    holds_lists = False

    def write(self, value: Any, path: Path) -> None:
        import pandas as pd

        if not isinstance(value, pd.DataFrame):
            raise TypeError(f"csv format stores pandas DataFrames, got {type(value).__name__}")
        value.to_csv(str(path), index=False)

    def read(self, path: Path) -> Any:
        import pandas as pd

        return pd.read_csv(str(path))


class FileFormat(Format):
    """
    Externally tracked file(s).

    The command returns a path (or a list of paths). Nothing is copied into the
    store; the fingerprint records path + content hash only.
    """
    name = "file"
    tracks_files = True

    def external_paths(self, value: Any, *, target: str = "") -> List[Path]:
        if isinstance(value, (str, os.PathLike)):
            raw = [value]
        elif isinstance(value, (list, tuple)) and all(isinstance(v, (str, os.PathLike)) for v in value):
            raw = list(value)
        else:
            raise TypeError(
                f"file format expects the command to return a path or a list of paths, "
                f"got {type(value).__name__}"
            )
        paths = [Path(p) for p in raw]
        for p in paths:
            if not p.is_file():
                raise StaleFileNotFoundError(target=target, path=str(p))
        return paths

    def read(self, path: Path) -> Any:
        return str(path)


BUILTIN_FORMATS = (ObjectFormat, JsonFormat, CsvFormat, FileFormat)


class FormatRegistry:
    def __init__(self) -> None:
        self._formats: Dict[str, Format] = {}

    @classmethod
    def default(cls) -> "FormatRegistry":
        reg = cls()
        for fmt_cls in BUILTIN_FORMATS:
            reg.register(fmt_cls())
        return reg

    def register(self, fmt: Format, *, replace: bool = False) -> None:
        if not fmt.name:
            raise ValueError(f"{type(fmt).__name__} has no name")
        if fmt.name in self._formats and not replace:
            raise ValueError(f"Format '{fmt.name}' is already registered (pass replace=True to override)")
        self._formats[fmt.name] = fmt

    def names(self) -> List[str]:
        return sorted(self._formats)

    def __contains__(self, format_id: str) -> bool:
        return format_id in self._formats

    def get(self, format_id: str) -> Format:
        try:
            return self._formats[format_id]
        except KeyError:
            raise UnknownFormatError(format=format_id, known=self.names()) from None

    def serialize(self, format_id: str, value: Any, location: Path, *, target: str = "") -> List[Path]:
        """
        Store `value` and return the path(s) that now hold it.

        Written to a temporary sibling first and moved into place, so a failed
        write leaves any previous output untouched.
        """
        fmt = self.get(format_id)
        if fmt.tracks_files:
            try:
                return fmt.external_paths(value, target=target)
            except NodeError:
                raise
            except Exception as e:
                raise SerializationError(format_id, str(location), "serialize", e) from e

        location = Path(location)
        location.parent.mkdir(parents=True, exist_ok=True)
        tmp = location.with_name(location.name + ".tmp")
        try:
            fmt.write(value, tmp)
            tmp.replace(location)
        except Exception as e:
            raise SerializationError(format_id, str(location), "serialize", e) from e
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return [location]

    def deserialize(self, format_id: str, location: Location) -> Any:
        fmt = self.get(format_id)
        paths = [Path(location)] if isinstance(location, (str, os.PathLike)) else [Path(p) for p in location]
        if fmt.tracks_files:
            out = [fmt.read(p) for p in paths]
            return out[0] if len(out) == 1 else out
        if len(paths) != 1:
            raise SerializationError(format_id, str(paths), "deserialize", ValueError("expected one stored object"))
        try:
            return fmt.read(paths[0])
        except Exception as e:
            raise SerializationError(format_id, str(paths[0]), "deserialize", e) from e
