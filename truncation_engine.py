#!/usr/bin/env python3
"""
Truncation Engine - Shorten file and directory names to fit a byte-length limit.

Names are handled as raw bytes from start to finish, so names that are not valid
UTF-8 pass through unharmed. The engine never touches the filesystem: callers hand
it the names found in one directory and get back one result per name.

Rules:
1. The primary extension (after the last period) is never truncated
2. A short secondary extension (.tar in .tar.gz) is kept when enabled
3. Files sharing a directory and root-stem are truncated to the same stem
4. Cuts never split a UTF-8 code point, and can optionally land on a space
5. Entries whose extensions leave no room for a stem are skipped, not mangled
"""

import logging
from enum import Enum
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

PERIOD = b'.'
SPACE = b' '

# How far below the limit a word-boundary cut may land
WORD_BOUNDARY_MARGIN = 10


class Outcome(Enum):
    UNCHANGED = 'unchanged'
    TRUNCATED = 'truncated'
    SKIPPED = 'skipped'


class TruncationConfig(NamedTuple):
    """Engine settings shared by every name in a run.

    Attributes:
        max_len: Byte ceiling for every path component
        secondary_ext_len: Secondary extensions must be shorter than this (0 disables)
        word_boundaries: Prefer cutting at a space near the limit
    """
    max_len: int
    secondary_ext_len: int = 0
    word_boundaries: bool = False

    def validate(self) -> 'TruncationConfig':
        """Raise ValueError if the settings cannot produce a usable name."""
        if self.max_len < 1:
            raise ValueError(f"max_len must be at least 1, got {self.max_len}")
        if self.secondary_ext_len < 0:
            raise ValueError(f"secondary_ext_len cannot be negative, got {self.secondary_ext_len}")
        return self


class ExtensionSplit(NamedTuple):
    root_stem: bytes
    secondary_ext: Optional[bytes] = None
    primary_ext: Optional[bytes] = None

    @property
    def overhead(self) -> int:
        """Bytes taken by the preserved extensions, separators included."""
        total = 0
        for ext in (self.secondary_ext, self.primary_ext):
            if ext is not None:
                total += len(ext) + len(PERIOD)
        return total

    def joined(self) -> bytes:
        return assemble_name(self.root_stem, self)


class FileEntry(NamedTuple):
    parent_dir: bytes
    full_name: bytes
    split: ExtensionSplit


class Group(NamedTuple):
    parent_dir: bytes
    root_stem: bytes
    members: List[FileEntry]


class TruncationResult(NamedTuple):
    """What should happen to one name.

    `kept` counts the leading bytes of `name` that survive into `new_name`;
    everything between `kept` and the preserved extensions was dropped.
    """
    name: bytes
    new_name: bytes
    outcome: Outcome
    reason: Optional[str] = None
    kept: Optional[int] = None

    @property
    def changed(self) -> bool:
        return self.outcome is Outcome.TRUNCATED


def split_extensions(name: bytes, secondary_ext_len: int = 0) -> ExtensionSplit:
    """
    Split a name into root-stem, secondary extension and primary extension.

    A period at the very start of the name is part of the stem, never a
    separator, so '.bashrc' has no extension at all.

    Args:
        name: Raw file name
        secondary_ext_len: Middle segments shorter than this count as a secondary
            extension; 0 turns secondary extensions off

    Returns:
        ExtensionSplit that joins back to exactly `name`
    """
    last = name.rfind(PERIOD)
    if last <= 0:
        return ExtensionSplit(name)

    prefix, primary_ext = name[:last], name[last + 1:]
    if secondary_ext_len > 0:
        second = prefix.rfind(PERIOD)
        if second > 0:
            middle = prefix[second + 1:]
            if len(middle) < secondary_ext_len:
                return ExtensionSplit(prefix[:second], middle, primary_ext)
    return ExtensionSplit(prefix, None, primary_ext)


def _utf8_sequence_length(lead: int) -> int:
    """Number of bytes announced by a UTF-8 lead byte (1 for anything else)."""
    if lead >= 0xF8:
        return 1
    if lead >= 0xF0:
        return 4
    if lead >= 0xE0:
        return 3
    if lead >= 0xC0:
        return 2
    return 1


def _drop_partial_code_point(data: bytes) -> bytes:
    """Strip an incomplete multi-byte sequence from the end of `data`."""
    end = len(data)
    start = end
    # Continuation bytes look like 10xxxxxx; a code point has at most 3 of them
    while start > 0 and end - start < 3 and data[start - 1] & 0xC0 == 0x80:
        start -= 1
    if start == 0:
        return data
    lead = start - 1
    if data[lead] >= 0xC0 and end - lead < _utf8_sequence_length(data[lead]):
        return data[:lead]
    return data


def truncate_bytes(data: bytes, limit: int, word_boundaries: bool = False) -> bytes:
    """
    Shorten `data` to at most `limit` bytes without splitting a UTF-8 code point.

    Invalid UTF-8 falls back to plain byte slicing: only a trailing lead byte
    with missing continuation bytes is removed.

    Args:
        data: Bytes to shorten
        limit: Maximum length of the result
        word_boundaries: Cut at the last space no further than
            WORD_BOUNDARY_MARGIN bytes below `limit`, if there is one

    Returns:
        `data` itself when it already fits, otherwise a prefix of it
    """
    if limit < 0:
        raise ValueError(f"limit cannot be negative, got {limit}")
    if len(data) <= limit:
        return data

    result = _drop_partial_code_point(data[:limit])

    if word_boundaries:
        floor = max(limit - WORD_BOUNDARY_MARGIN, 1)
        space = result.rfind(SPACE, floor)
        if space != -1:
            # Runs of spaces are dropped too, unless nothing else is left
            cut = result[:space].rstrip(SPACE) or result[:space]
            result = _drop_partial_code_point(cut)

    return result


def group_entries(entries: Iterable[FileEntry]) -> Dict[Tuple[bytes, bytes], Group]:
    """Collect entries sharing a parent directory and root-stem into groups."""
    groups: Dict[Tuple[bytes, bytes], Group] = {}
    for entry in entries:
        key = (entry.parent_dir, entry.split.root_stem)
        if key not in groups:
            groups[key] = Group(entry.parent_dir, entry.split.root_stem, [])
        groups[key].members.append(entry)
    return groups


def compute_stem_budget(group: Group, max_len: int) -> Tuple[Optional[int], Dict[bytes, str]]:
    """
    Work out how many root-stem bytes every member of a group may keep.

    The member with the longest preserved extensions sets the budget for the
    whole group. Members whose extensions alone leave no room for a stem are
    skipped and do not take part in the budget.

    Args:
        group: Group to size
        max_len: Byte ceiling for a complete name

    Returns:
        Tuple of (budget, skipped) where skipped maps member names to the reason.
        The budget is None when every member was skipped.
    """
    skipped = {}
    overheads = []
    for member in group.members:
        overhead = member.split.overhead
        if overhead >= max_len:
            reason = (f"extensions need {overhead} bytes, leaving no room for a name "
                      f"within {max_len} bytes")
            logger.warning("Skipping %r: %s", member.full_name, reason)
            skipped[member.full_name] = reason
        else:
            overheads.append(overhead)

    if not overheads:
        return None, skipped
    return max_len - max(overheads), skipped


def assemble_name(root_stem: bytes, split: ExtensionSplit) -> bytes:
    """Put a root-stem back together with the extensions preserved in `split`."""
    parts = [root_stem]
    if split.secondary_ext is not None:
        parts.append(split.secondary_ext)
    if split.primary_ext is not None:
        parts.append(split.primary_ext)
    return PERIOD.join(parts)


def resolve_group(group: Group, config: TruncationConfig) -> List[TruncationResult]:
    """
    Decide the outcome for every member of a group.

    If any member is too long, all members get the same truncated stem, even
    members that would have fit on their own.

    Returns:
        One TruncationResult per member, in member order
    """
    budget, skipped = compute_stem_budget(group, config.max_len)
    candidates = [m for m in group.members if m.full_name not in skipped]

    new_stem = group.root_stem
    empty_reason = None
    if any(len(m.full_name) > config.max_len for m in candidates):
        new_stem = truncate_bytes(group.root_stem, budget, config.word_boundaries)
        logger.debug("Group %r: budget %d bytes, stem %r -> %r",
                     group.root_stem, budget, group.root_stem, new_stem)
        if not new_stem:
            empty_reason = f"no part of the name fits in {budget} bytes next to its extensions"

    results = []
    for member in group.members:
        if member.full_name in skipped:
            reason = skipped[member.full_name]
        elif empty_reason and len(member.full_name) > config.max_len:
            logger.warning("Skipping %r: %s", member.full_name, empty_reason)
            reason = empty_reason
        elif empty_reason:
            # Nothing to share, members that fit keep their names
            results.append(TruncationResult(member.full_name, member.full_name, Outcome.UNCHANGED,
                                            kept=len(group.root_stem)))
            continue
        else:
            new_name = assemble_name(new_stem, member.split)
            outcome = Outcome.UNCHANGED if new_name == member.full_name else Outcome.TRUNCATED
            results.append(TruncationResult(member.full_name, new_name, outcome, kept=len(new_stem)))
            continue
        results.append(TruncationResult(member.full_name, member.full_name, Outcome.SKIPPED, reason))
    return results


def plan_file_renames(parent_dir: bytes, names: Sequence[bytes],
                      config: TruncationConfig) -> List[TruncationResult]:
    """
    Truncate the file names found in one directory.

    All names are grouped before any of them is truncated, so a file is never
    shortened without knowing its siblings.

    Args:
        parent_dir: Directory holding the files
        names: File names in that directory
        config: Engine settings

    Returns:
        One TruncationResult per name, in the order given
    """
    entries = [FileEntry(parent_dir, name, split_extensions(name, config.secondary_ext_len))
               for name in names]
    by_name = {}
    for group in group_entries(entries).values():
        for result in resolve_group(group, config):
            by_name[result.name] = result
    return [by_name[entry.full_name] for entry in entries]


def truncate_directory_name(name: bytes, config: TruncationConfig) -> TruncationResult:
    """Truncate a directory name; directories have no extensions and no groups."""
    if len(name) <= config.max_len:
        return TruncationResult(name, name, Outcome.UNCHANGED)

    new_name = truncate_bytes(name, config.max_len, config.word_boundaries)
    if not new_name:
        reason = f"no part of the name fits in {config.max_len} bytes"
        logger.warning("Skipping directory %r: %s", name, reason)
        return TruncationResult(name, name, Outcome.SKIPPED, reason)
    return TruncationResult(name, new_name, Outcome.TRUNCATED, kept=len(new_name))
