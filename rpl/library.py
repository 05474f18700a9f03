"""
rpl/library.py
==============

Loading pattern files into an immutable, shareable pattern library.

Each file is parsed and lowered once; results are cached under the
SHA-256 of the file's content, so loading the same text twice (or the same
file under two paths) does no extra work.

Error policy
------------
* A :class:`~rpl.errors.ParseError` discards the whole file; other files
  still load.
* A :class:`~rpl.errors.LoweringError` discards one pattern with a warning.
* A pattern whose name was already loaded from an earlier file is skipped.
* :meth:`PatternLibrary.freeze` raises
  :class:`~rpl.errors.PatternLibraryError` when no usable pattern remains.

All skipped items are kept in :attr:`PatternLibrary.errors` so that they
can be reported beside the diagnostics.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from rpl.constraints import CompiledPattern
from rpl.errors import (
    ErrorCode,
    ParseError,
    PatternLibraryError,
    RplError,
    SourcePos,
)
from rpl.lowering import lower_file
from rpl.parser import parse

logger = logging.getLogger(__name__)

#: File suffix picked up when a directory is given.
PATTERN_SUFFIX = ".rpl"

_CacheEntry = Tuple[Tuple[CompiledPattern, ...], Tuple[RplError, ...]]


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def iter_pattern_files(paths: Iterable[Union[str, Path]]) -> Iterator[Path]:
    """Expand directories to their ``*.rpl`` files, sorted by path."""
    for path in paths:
        p = Path(path)
        if p.is_dir():
            yield from sorted(p.rglob(f"*{PATTERN_SUFFIX}"))
        else:
            yield p


@dataclass(frozen=True, slots=True)
class CompiledLibrary:
    """The read-only pattern set handed to every matching task."""

    patterns: Tuple[CompiledPattern, ...]

    def __len__(self) -> int:
        return len(self.patterns)

    def __iter__(self):
        return iter(self.patterns)

    def names(self) -> List[str]:
        return [p.name for p in self.patterns]

    def get(self, name: str) -> Optional[CompiledPattern]:
        for p in self.patterns:
            if p.name == name:
                return p
        return None

    def select(self, names: Iterable[str]) -> CompiledLibrary:
        """Keep only the named patterns, in library order.

        Raises
        ------
        PatternLibraryError
            If none of ``names`` is in the library.
        """
        wanted = set(names)
        kept = tuple(p for p in self.patterns if p.name in wanted)
        missing = sorted(wanted - {p.name for p in kept})
        for name in missing:
            logger.warning("no pattern named %r", name)
        if not kept:
            raise PatternLibraryError(
                "none of the selected patterns exist: " + ", ".join(sorted(wanted))
            )
        return CompiledLibrary(kept)


class PatternLibrary:
    """Accumulates patterns from files and strings.

    Usage::

        lib = PatternLibrary()
        lib.load_paths(["patterns/"])
        compiled = lib.freeze()
    """

    def __init__(self, cache: Optional[Dict[str, _CacheEntry]] = None) -> None:
        self._cache: Dict[str, _CacheEntry] = cache if cache is not None else {}
        self._patterns: List[CompiledPattern] = []
        self._names: Dict[str, str] = {}
        self.errors: List[RplError] = []
        self.files: List[str] = []

    @property
    def patterns(self) -> Tuple[CompiledPattern, ...]:
        return tuple(self._patterns)

    def _compile(self, text: str, filename: str) -> _CacheEntry:
        key = content_hash(text)
        hit = self._cache.get(key)
        if hit is not None:
            logger.debug("%s: cache hit (%s)", filename, key[:12])
            return hit
        try:
            pf = parse(text, filename=filename)
        except ParseError as e:
            entry: _CacheEntry = ((), (e,))
        else:
            compiled, errors = lower_file(pf)
            entry = (tuple(compiled), tuple(errors))
        self._cache[key] = entry
        return entry

    def load_text(self, text: str, filename: str = "<string>") -> List[CompiledPattern]:
        """Add every usable pattern of ``text``; return the ones added."""
        compiled, errors = self._compile(text, filename)
        self.files.append(filename)
        for e in errors:
            if isinstance(e, ParseError):
                logger.warning("skipping pattern file %s: %s", filename, e)
        self.errors.extend(errors)
        added: List[CompiledPattern] = []
        for p in compiled:
            first = self._names.get(p.name)
            if first is not None:
                err = RplError(
                    f"pattern {p.name!r} already defined in {first}",
                    code=ErrorCode.DUPLICATE_PATTERN,
                    pos=p.loc,
                    pattern=p.name,
                )
                logger.warning("skipping pattern: %s", err)
                self.errors.append(err)
                continue
            self._names[p.name] = filename
            self._patterns.append(p)
            added.append(p)
        logger.debug("%s: %d pattern(s) loaded, %d error(s)", filename, len(added), len(errors))
        return added

    def load_file(self, path: Union[str, Path]) -> List[CompiledPattern]:
        """Load one file; an unreadable file is recorded in ``errors``."""
        p = Path(path)
        try:
            text = p.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            err = ParseError(f"cannot read pattern file: {e}", code=ErrorCode.UNREADABLE_FILE,
                             pos=SourcePos(str(p)))
            logger.warning("skipping pattern file %s: %s", p, err)
            self.files.append(str(p))
            self.errors.append(err)
            return []
        return self.load_text(text, str(p))

    def load_paths(self, paths: Sequence[Union[str, Path]]) -> List[CompiledPattern]:
        """Load files and directories (``*.rpl`` files, sorted by name)."""
        added: List[CompiledPattern] = []
        for path in iter_pattern_files(paths):
            added.extend(self.load_file(path))
        return added

    def freeze(self) -> CompiledLibrary:
        """Return the immutable library.

        Raises
        ------
        PatternLibraryError
            If not a single pattern could be loaded.
        """
        if not self._patterns:
            raise PatternLibraryError(
                f"no usable pattern in {len(self.files)} file(s) "
                f"({len(self.errors)} error(s))"
            )
        return CompiledLibrary(tuple(self._patterns))


def load_library(paths: Sequence[Union[str, Path]]) -> Tuple[CompiledLibrary, List[RplError]]:
    """Load ``paths`` and freeze; return the library and the skipped-item errors."""
    lib = PatternLibrary()
    lib.load_paths(paths)
    return lib.freeze(), list(lib.errors)


__all__ = [
    "PATTERN_SUFFIX",
    "content_hash",
    "iter_pattern_files",
    "CompiledLibrary",
    "PatternLibrary",
    "load_library",
]
