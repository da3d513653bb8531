"""Path mapper between the two source trees.

Both trees describe the same logical units with different naming
conventions: side A uses PascalCase component files (``HomeScreen.tsx``),
side B uses snake_case widget files (``home_screen.dart``). The mapper
translates between them through a convention-neutral *logical id*.

Mapping rules:

1. **Side detection** -- a path belongs to the root it lives under.
2. **Filtering** -- only the side's source extensions count; hidden
   segments and ``ignore_patterns`` matches are skipped.
3. **Logical id** -- every segment of the root-relative path (without
   extension) is split into words and joined kebab-case; segments are
   joined with ``-`` (``screens/HomeScreen.tsx`` -> ``screens-home-screen``).
4. **Counterpart** -- directories are kept, the file name is re-cased for
   the opposite side and given that side's output extension.
"""

from __future__ import annotations

import fnmatch
import re
from pathlib import Path, PurePosixPath

from irsync.config_schema import WatchConfig
from irsync.sync.models import Side

_ACRONYM_BOUNDARY = re.compile(r"([A-Z]+)([A-Z][a-z])")
_CAMEL_BOUNDARY = re.compile(r"([a-z\d])([A-Z])")
_SEPARATORS = re.compile(r"[_\-\s.]+")


def split_words(name: str) -> list[str]:
    """Split an identifier in any common casing into lowercase words."""
    spaced = _CAMEL_BOUNDARY.sub(r"\1_\2", _ACRONYM_BOUNDARY.sub(r"\1_\2", name))
    return [w.lower() for w in _SEPARATORS.split(spaced) if w]


def to_snake_case(name: str) -> str:
    return "_".join(split_words(name))


def to_kebab_case(name: str) -> str:
    return "-".join(split_words(name))


def to_pascal_case(name: str) -> str:
    return "".join(w[:1].upper() + w[1:] for w in split_words(name))


class PathMapper:
    """Map source files to logical ids and counterpart paths.

    Args:
        watch: Watch configuration holding both roots, extensions and
            ignore patterns.
    """

    def __init__(self, watch: WatchConfig) -> None:
        if not watch.side_a_root or not watch.side_b_root:
            raise ValueError("Both side_a_root and side_b_root are required")
        self._watch = watch
        self._roots = {
            Side.A: Path(watch.side_a_root).resolve(),
            Side.B: Path(watch.side_b_root).resolve(),
        }
        self._extensions = {
            Side.A: tuple(e.lower() for e in watch.side_a_extensions),
            Side.B: tuple(e.lower() for e in watch.side_b_extensions),
        }
        self._output_extension = {
            Side.A: watch.side_a_output_extension,
            Side.B: watch.side_b_output_extension,
        }

    def root(self, side: Side) -> Path:
        return self._roots[side]

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def side_of(self, path: str | Path) -> Side | None:
        """Return the side whose root contains *path*, if any."""
        resolved = Path(path).resolve()
        for side, root in self._roots.items():
            if resolved.is_relative_to(root):
                return side
        return None

    def is_source_file(self, side: Side, path: str | Path) -> bool:
        """Whether *path* is a watched source file of *side*."""
        resolved = Path(path).resolve()
        root = self._roots[side]
        if not resolved.is_relative_to(root):
            return False
        if resolved.suffix.lower() not in self._extensions[side]:
            return False
        for part in resolved.relative_to(root).parts:
            if part.startswith("."):
                return False
            if any(fnmatch.fnmatch(part, p) for p in self._watch.ignore_patterns):
                return False
        return True

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def relative(self, side: Side, path: str | Path) -> PurePosixPath:
        """Root-relative POSIX path of *path*.

        Raises:
            ValueError: *path* is not under the side's root.
        """
        resolved = Path(path).resolve()
        root = self._roots[side]
        if not resolved.is_relative_to(root):
            raise ValueError(f"{path} is not under the side {side.value} root {root}")
        return PurePosixPath(resolved.relative_to(root).as_posix())

    def logical_id(self, side: Side, path: str | Path) -> str:
        """Convention-neutral id shared by a file and its counterpart."""
        rel = self.relative(side, path)
        segments = [*rel.parent.parts, rel.stem]
        words = [to_kebab_case(s) for s in segments if s not in ("", ".")]
        logical = "-".join(w for w in words if w)
        if not logical:
            raise ValueError(f"Cannot derive a logical id from {path}")
        return logical

    def counterpart_path(self, side: Side, path: str | Path) -> Path:
        """Path on the opposite side that mirrors *path*.

        Side A files map to snake_case names on side B; side B files map
        to PascalCase names on side A.
        """
        rel = self.relative(side, path)
        target_side = side.opposite
        if target_side is Side.B:
            name = to_snake_case(rel.stem)
        else:
            name = to_pascal_case(rel.stem)
        name += self._output_extension[target_side]
        return self._roots[target_side].joinpath(*rel.parent.parts, name)
