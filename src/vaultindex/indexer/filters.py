from __future__ import annotations

import re
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import PurePosixPath
from typing import Iterable
from urllib.parse import unquote

TAG_PATTERN_RE = re.compile(r"^#[^\s#]+$")
EXTENSION_PATTERN_RE = re.compile(r"^\*\.([A-Za-z0-9.]+)$")
NOTE_PATTERN_RE = re.compile(r"^\[\[(.*?)\]\]$")


def matches_ignore_pattern(rel_path: str, patterns: Iterable[str]) -> bool:
    """Check if a relative path matches any of the ignore globs.

    Supports:
    - "**/.DS_Store" - match .DS_Store in any directory
    - ".obsidian/**" - match everything under .obsidian
    - "templates/*.md" - plain fnmatch against the whole relative path
    """
    rel_path = rel_path.replace("\\", "/")

    for pattern in patterns:
        pattern = pattern.replace("\\", "/")

        if pattern.startswith("**/"):
            suffix = pattern[3:]
            if fnmatch(rel_path, pattern) or fnmatch(rel_path, f"*/{suffix}"):
                return True
            parts = rel_path.split("/")
            for i, part in enumerate(parts):
                if fnmatch(part, suffix) or fnmatch("/".join(parts[i:]), suffix):
                    return True

        elif pattern.endswith("/**"):
            prefix = pattern[:-3]
            if rel_path.startswith(prefix + "/") or rel_path == prefix:
                return True

        elif fnmatch(rel_path, pattern):
            return True

    return False


def split_patterns(value: str | Iterable[str]) -> list[str]:
    """Accept a comma-separated (optionally URL-encoded) string or a list."""
    items = value.split(",") if isinstance(value, str) else list(value)
    return [unquote(str(item).strip()) for item in items if str(item).strip()]


@dataclass(frozen=True)
class PatternCategory:
    """Patterns grouped by kind.

    - `#tag`: the note carries the tag (or a nested child tag)
    - `*.ext`: the file has the extension
    - `[[Note]]`: the file's basename without extension is Note
    - anything else: a folder prefix, matched on whole path segments
    """
    tags: tuple[str, ...] = ()
    extensions: tuple[str, ...] = ()
    notes: tuple[str, ...] = ()
    folders: tuple[str, ...] = ()

    @staticmethod
    def from_patterns(patterns: Iterable[str]) -> "PatternCategory":
        tags: list[str] = []
        extensions: list[str] = []
        notes: list[str] = []
        folders: list[str] = []
        for pattern in patterns:
            ext = EXTENSION_PATTERN_RE.match(pattern)
            note = NOTE_PATTERN_RE.match(pattern)
            if TAG_PATTERN_RE.match(pattern):
                tags.append(pattern[1:].lower())
            elif ext:
                extensions.append(ext.group(1).lower())
            elif note:
                notes.append(note.group(1))
            else:
                folders.append(pattern.strip("/"))
        return PatternCategory(tuple(tags), tuple(extensions), tuple(notes), tuple(folders))

    def is_empty(self) -> bool:
        return not (self.tags or self.extensions or self.notes or self.folders)

    def matches(self, path: str, tags: Iterable[str]) -> bool:
        p = PurePosixPath(path.replace("\\", "/"))
        if self.tags:
            note_tags = {t.lower().lstrip("#") for t in tags}
            for want in self.tags:
                if want in note_tags or any(t.startswith(want + "/") for t in note_tags):
                    return True
        if self.extensions:
            name = p.name.lower()
            if any(name.endswith("." + ext) for ext in self.extensions):
                return True
        if self.notes and p.stem in self.notes:
            return True
        if self.folders:
            posix = str(p)
            for folder in self.folders:
                if posix == folder or posix.startswith(folder + "/"):
                    return True
        return False


@dataclass
class PatternFilter:
    """Inclusion/exclusion rules applied to candidate notes.

    Exclusions win. When any inclusion is configured, a note must match one.
    """
    inclusions: PatternCategory = field(default_factory=PatternCategory)
    exclusions: PatternCategory = field(default_factory=PatternCategory)

    @staticmethod
    def from_patterns(
        inclusions: str | Iterable[str] = (),
        exclusions: str | Iterable[str] = (),
    ) -> "PatternFilter":
        return PatternFilter(
            inclusions=PatternCategory.from_patterns(split_patterns(inclusions)),
            exclusions=PatternCategory.from_patterns(split_patterns(exclusions)),
        )

    def matches(self, path: str, tags: Iterable[str] = ()) -> bool:
        tags = list(tags)
        if not self.exclusions.is_empty() and self.exclusions.matches(path, tags):
            return False
        if not self.inclusions.is_empty() and not self.inclusions.matches(path, tags):
            return False
        return True
