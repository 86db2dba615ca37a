#!/usr/bin/env python3
"""
Name Truncator - Shorten file and directory names that exceed a byte-length limit.

Built for storage backends with a hard ceiling on each path component, such as
rclone's encrypted remotes, where names longer than about 140 bytes fail to upload.

What it does:
- Keeps every extension intact (and short secondary ones like .tar, if asked)
- Truncates files that share a name, like movie.mkv and movie.srt, to the same stem
- Never cuts a UTF-8 character in half; optionally cuts at a space instead
- Walks directories depth-first so contents are renamed before their directory
- Skips (and reports) names whose extensions alone are too long

Note on encoding:
- Names are read and written as raw bytes, so names that are not valid UTF-8 still work
- Lengths are measured in bytes, not characters: 'é' counts as 2

Version: 0.5.0 (Beta)
"""
__version__ = "0.5.0"

import os
import sys
import errno
import traceback
import logging
import argparse
import unicodedata
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence
from colorama import init, Fore, Style

from truncation_engine import (
    Outcome,
    TruncationConfig,
    TruncationResult,
    plan_file_renames,
    truncate_directory_name,
)

# Initialize colorama for cross-platform color support
init()

# rclone's name encryption fails on names much past 140 bytes
DEFAULT_MAX_LEN = 140
DEFAULT_SECONDARY_EXT_LEN = 0

SETTINGS_SECTION = 'truncation'
TRUE_VALUES = {'true', 'yes', 'on', '1'}
FALSE_VALUES = {'false', 'no', 'off', '0'}


def get_debug_level() -> str:
    """
    Get the debug level from environment. Returns one of:
    - 'detail': Show all processing steps (TRUNCATOR_DEBUG=detail)
    - 'normal': Show key steps only (TRUNCATOR_DEBUG=1 or running tests)
    - 'off': No debug output (default)
    """
    debug_env = os.environ.get('TRUNCATOR_DEBUG')
    if debug_env == 'detail':
        return 'detail'
    if 'unittest' in sys.modules or '--debug' in sys.argv or debug_env:
        return 'normal'
    return 'off'


def display_name(name: bytes) -> str:
    """Decode a raw name for printing; undecodable bytes are shown as escapes."""
    return name.decode('utf-8', errors='backslashreplace')


class PlannedRename(NamedTuple):
    """A truncation result together with where the entry lives."""
    parent: bytes
    result: TruncationResult
    is_dir: bool = False

    @property
    def old_path(self) -> bytes:
        return os.path.join(self.parent, self.result.name)

    @property
    def new_path(self) -> bytes:
        return os.path.join(self.parent, self.result.new_name)


class NameTruncator:
    """Plans and applies truncations for files and directories.

    Ordering Rules:
    1. Each directory is walked bottom-up, so its contents come first
    2. All files of one directory are planned together, so groups stay consistent
    3. Subdirectories are planned after the files at the same level
    4. Renames are applied in planning order, containers last
    """

    # Debug mode flag
    _debug_level = get_debug_level()

    @classmethod
    def debug_print(cls, *args, level='normal', **kwargs):
        """Print debug message if level matches current debug level

        Args:
            level: Required debug level ('normal' or 'detail')
        """
        if cls._debug_level == 'off':
            return
        if level == 'detail' and cls._debug_level != 'detail':
            return
        print(*args, **kwargs)

    @classmethod
    def colorize_dropped(cls, result: TruncationResult) -> str:
        """Show the original name with the bytes that will be removed in red."""
        if not result.changed or result.kept is None:
            return display_name(result.name)
        dropped = len(result.name) - len(result.new_name)
        head = result.name[:result.kept]
        cut = result.name[result.kept:result.kept + dropped]
        tail = result.name[result.kept + dropped:]
        return f"{display_name(head)}{Fore.RED}{display_name(cut)}{Style.RESET_ALL}{display_name(tail)}"

    def __init__(self, paths: Sequence[str] = ('.',), max_len: Optional[int] = None,
                 secondary_ext_len: Optional[int] = None, word_boundaries: Optional[bool] = None,
                 dry_run: bool = False, settings_path: Optional[str] = None):
        """
        Initialize the NameTruncator.

        Settings that are None fall back to the settings file, then to the defaults.

        Args:
            paths: Files and directories to process
            max_len: Byte limit per name
            secondary_ext_len: Secondary extensions must be shorter than this (0 disables)
            word_boundaries: Prefer cutting at a space near the limit
            dry_run: If True, only show what would be renamed without making changes
            settings_path: Path to settings file

        Raises:
            ValueError: If the resulting settings are unusable
        """
        self.user_settings = self.load_user_settings(settings_path)

        if max_len is None:
            max_len = self.user_settings.get('max_len', DEFAULT_MAX_LEN)
        if secondary_ext_len is None:
            secondary_ext_len = self.user_settings.get('secondary_ext_len', DEFAULT_SECONDARY_EXT_LEN)
        if word_boundaries is None:
            word_boundaries = self.user_settings.get('word_boundaries', False)

        self.config = TruncationConfig(max_len, secondary_ext_len, word_boundaries).validate()
        self.paths = [os.fsencode(p) for p in paths]
        self.dry_run = dry_run
        self.skipped: List[PlannedRename] = []
        self.processed_count = 0

    def _plan_level(self, parent: bytes, files: Sequence[bytes], dirs: Sequence[bytes],
                    batch_size: int) -> List[PlannedRename]:
        """Plan every file and subdirectory found directly inside `parent`."""
        planned = []
        for result in plan_file_renames(parent, sorted(files), self.config):
            planned.append(PlannedRename(parent, result))
        for name in sorted(dirs):
            planned.append(PlannedRename(parent, truncate_directory_name(name, self.config), is_dir=True))

        for entry in planned:
            self.processed_count += 1
            # Display progress in batches
            if self.processed_count % batch_size == 0:
                print(f"Processed {self.processed_count} names so far")
            if entry.result.changed:
                self.debug_print(f"  {display_name(entry.result.name)!r} -> "
                                 f"{display_name(entry.result.new_name)!r}", level='detail')

        return self._check_collisions(parent, planned, set(files) | set(dirs))

    def _check_collisions(self, parent: bytes, planned: List[PlannedRename],
                          existing: set) -> List[PlannedRename]:
        """
        Turn truncations whose target is already taken into skips.

        A name counts as taken if an entry has it now, or an earlier entry at
        the same level was planned to get it.
        """
        taken = set(existing)
        checked = []
        for entry in planned:
            result = entry.result
            if result.changed:
                if result.new_name in taken or os.path.lexists(entry.new_path):
                    reason = f"target '{display_name(result.new_name)}' already exists"
                    self.debug_print(f"Warning: Cannot rename '{display_name(entry.old_path)}' - {reason}")
                    entry = entry._replace(result=TruncationResult(
                        result.name, result.name, Outcome.SKIPPED, reason))
                else:
                    taken.add(result.new_name)
            checked.append(entry)
        return checked

    def _walk_directory(self, root: bytes, batch_size: int) -> List[PlannedRename]:
        """Plan a whole tree bottom-up, finishing with the root directory itself."""
        planned = []
        for dirpath, dirnames, filenames in os.walk(root, topdown=False):
            self.debug_print(f"Scanning: {display_name(dirpath)}", level='detail')
            planned.extend(self._plan_level(dirpath, filenames, dirnames, batch_size))

        root = os.path.normpath(root)
        parent, name = os.path.split(root)
        if name and name not in (b'.', b'..'):
            planned.extend(self._plan_level(parent, [], [name], batch_size))
        return planned

    def process_paths(self, batch_size=100) -> List[PlannedRename]:
        """
        Plan truncations for every path given to the truncator.

        Files named directly are grouped with the other named files of the same
        directory; directories are processed recursively.

        Args:
            batch_size: Number of names to process before displaying progress

        Returns:
            List[PlannedRename]: Renames to apply, in a safe order. Skipped
            entries are collected in self.skipped.
        """
        self.debug_print("Starting to process paths: {}".format(
            ', '.join(display_name(p) for p in self.paths)), level='normal')
        self.skipped = []
        self.processed_count = 0
        planned = []

        lone_files: Dict[bytes, List[bytes]] = {}
        directories = []
        for path in self.paths:
            if os.path.isdir(path) and not os.path.islink(path):
                directories.append(path)
            else:
                parent, name = os.path.split(path)
                lone_files.setdefault(parent, []).append(name)

        # Files inside a directory argument are already covered by its walk
        covered = [os.path.join(os.path.abspath(d), b'') for d in directories]
        for parent in list(lone_files):
            names = []
            for name in lone_files[parent]:
                full_path = os.path.abspath(os.path.join(parent, name))
                if any(full_path.startswith(prefix) for prefix in covered):
                    self.debug_print(f"{display_name(full_path)} is inside a directory argument, skipping duplicate",
                                     level='detail')
                elif name not in names:
                    names.append(name)
            if names:
                lone_files[parent] = names
            else:
                del lone_files[parent]

        for parent, names in lone_files.items():
            planned.extend(self._plan_level(parent, names, [], batch_size))
        for directory in directories:
            planned.extend(self._walk_directory(directory, batch_size))

        changes = []
        for entry in planned:
            if entry.result.outcome is Outcome.SKIPPED:
                self.skipped.append(entry)
            elif entry.result.changed:
                changes.append(entry)
        return changes

    def apply_changes(self, changes: Sequence[PlannedRename]) -> int:
        """
        Rename entries on disk, in the order given.

        Returns:
            Number of renames that failed
        """
        failures = 0
        for change in changes:
            old_path, new_path = change.old_path, change.new_path
            # os.rename silently replaces files on POSIX
            if os.path.lexists(new_path):
                print(f"{Fore.RED}Error: Cannot rename '{display_name(old_path)}' - "
                      f"'{display_name(new_path)}' already exists{Style.RESET_ALL}")
                failures += 1
                continue
            try:
                os.rename(old_path, new_path)
                self.debug_print(f"Renamed '{display_name(old_path)}' to '{display_name(new_path)}'",
                                 level='detail')
            except OSError as e:
                failures += 1
                print(f"{Fore.RED}Error while renaming '{display_name(old_path)}': "
                      f"{e.strerror or e}{Style.RESET_ALL}")
                if e.errno == errno.ENAMETOOLONG:
                    print(f"  The filesystem limit is below {self.config.max_len} bytes; "
                          "try a smaller --max-len.")
                elif e.errno in (errno.EACCES, errno.EPERM):
                    print("  Check that you have write permission on the containing directory.")
        return failures

    @classmethod
    def load_user_settings(cls, settings_path: Optional[str] = None) -> Dict[str, object]:
        """Load user settings from settings.ini file.

        Args:
            settings_path: Optional path to settings file. If None, will search in standard locations.

        Returns:
            Dict of recognised settings, e.g. {'max_len': 140, 'word_boundaries': True}
        """
        settings: Dict[str, object] = {}

        settings_file = cls._find_settings_file(settings_path)
        if not settings_file:
            cls.debug_print("No settings file found", level='detail')
            return settings

        try:
            current_section = None
            with open(settings_file, 'r', encoding='utf-8') as f:
                for line_num, line in enumerate(f, 1):
                    # Remove comments and strip whitespace
                    line = line.split('#', 1)[0].strip()

                    if not line:
                        continue

                    if line.startswith('[') and line.endswith(']'):
                        section_name = line[1:-1].strip().lower()
                        if section_name == SETTINGS_SECTION:
                            current_section = section_name
                        else:
                            cls.debug_print(f"Warning: Unknown section '{section_name}' at line {line_num}", level='normal')
                            current_section = None
                    elif current_section:
                        key, _, value = line.partition('=')
                        key = key.strip().lower()
                        parsed = cls._parse_settings_entry(key, value.strip())
                        if parsed is None:
                            cls.debug_print(f"Warning: Invalid entry '{line}' at line {line_num}", level='normal')
                        else:
                            settings[key] = parsed
                    else:
                        cls.debug_print(f"Warning: Entry '{line}' at line {line_num} not in any section", level='normal')
        except (OSError, UnicodeDecodeError) as e:
            cls.debug_print(f"Error reading settings file: {e}", level='normal')
            return {}

        if settings:
            cls.debug_print(f"Loaded {len(settings)} settings from {settings_file}", level='normal')
        return settings

    @staticmethod
    def _parse_settings_entry(key: str, value: str):
        """Validate a settings entry.

        Args:
            key: Setting name, lower-cased
            value: Raw value text

        Returns:
            The parsed value, or None if the key or value is invalid
        """
        # Control characters never belong in a value
        if any(unicodedata.category(c).startswith('C') for c in value):
            return None

        if key in ('max_len', 'secondary_ext_len'):
            if not (value.isascii() and value.isdigit()):
                return None
            number = int(value)
            if key == 'max_len' and number < 1:
                return None
            return number

        if key == 'word_boundaries':
            lowered = value.lower()
            if lowered in TRUE_VALUES:
                return True
            if lowered in FALSE_VALUES:
                return False
        return None

    @staticmethod
    def _find_settings_file(settings_path: Optional[str] = None) -> Optional[str]:
        """Find the settings file in standard locations.

        Args:
            settings_path: Optional path to settings file

        Returns:
            Path to settings file if found, None otherwise
        """
        locations = []

        # 1. Command-line specified path
        if settings_path:
            locations.append(settings_path)

        # 2. Current directory
        locations.append(os.path.join(os.getcwd(), 'settings.ini'))

        # 3. User's home directory
        home_dir = os.path.expanduser('~')
        locations.append(os.path.join(home_dir, '.config', 'name_truncator', 'settings.ini'))

        for location in locations:
            if os.path.isfile(location):
                return location

        return None


def _print_changes(changes: Sequence[PlannedRename], dry_run: bool) -> None:
    if dry_run:
        print("\nProposed changes (dry run):\n")
    else:
        print("\nPlanned changes: (bytes to be removed shown in red)\n")

    for change in changes:
        kind = 'DIR ' if change.is_dir else 'FILE'
        result = change.result
        print(f"[{kind}] {display_name(change.parent) or '.'}")
        print(f"   {NameTruncator.colorize_dropped(result)}  ({len(result.name)} bytes)")
        print(f"-> {display_name(result.new_name)}  ({len(result.new_name)} bytes)\n")


def _print_skipped(skipped: Sequence[PlannedRename]) -> None:
    for entry in skipped:
        print(f"{Fore.YELLOW}Skipped: {display_name(entry.old_path)}{Style.RESET_ALL}")
        print(f"  {entry.result.reason}\n")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Truncate file and directory names to fit a byte limit."""
    parser = argparse.ArgumentParser(
        description='Rename files and directories so every name fits within a byte-length limit',
        add_help=True,  # This adds -h/--help by default
    )
    parser.add_argument('paths', nargs='*', default=['.'],
                        help='Files or directories to truncate (directories are processed recursively)')
    parser.add_argument('--max-len', type=int, default=None,
                        help=f'Maximum name length in bytes (default: {DEFAULT_MAX_LEN}, chosen for rclone name encryption)')
    parser.add_argument('--secondary-ext-len', type=int, default=None,
                        help='Keep a secondary extension (like .tar in .tar.gz) shorter than this many bytes; '
                             f'0 disables (default: {DEFAULT_SECONDARY_EXT_LEN})')
    parser.add_argument('-w', '--word-boundaries', action='store_true', default=None,
                        help='Cut at a space when one is close to the limit')
    parser.add_argument('-n', '--dry-run', action='store_true',
                        help='Show what would be renamed without making changes')
    parser.add_argument('-y', '--yes', action='store_true',
                        help='Apply the changes without asking for confirmation')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug output')
    parser.add_argument('--settings', dest='settings_path',
                        help='Path to custom settings file')
    parser.add_argument('--batch-size', type=int, default=100,
                        help='Display progress after processing this many names (default: 100)')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    # Add a custom -? help option
    parser.add_argument('-?', action='help',
                        help='Show this help message and exit')

    args = parser.parse_args(argv)

    if args.debug:
        os.environ['TRUNCATOR_DEBUG'] = 'detail'  # Enable detailed debug output
        NameTruncator._debug_level = 'detail'

    logging.basicConfig(
        level=logging.DEBUG if NameTruncator._debug_level == 'detail' else logging.WARNING,
        format='%(levelname)s: %(message)s',
    )

    # Check if user is trying to run in the program's directory
    program_dir = Path(__file__).parent.resolve()
    for path in args.paths:
        resolved = Path(path).resolve()
        if resolved == program_dir:
            print("WARNING: You are attempting to run this program on its own directory.")
            print("This is not recommended as it could modify the program's own files.")
            print("Please specify a different directory to process.")
            print("Example: name-truncator ~/Videos --dry-run")
            return 1
        if not os.path.lexists(path):
            print(f"Error: Path '{resolved}' does not exist.")
            print("Please provide a valid file or directory path.")
            return 1

    try:
        truncator = NameTruncator(args.paths, max_len=args.max_len,
                                  secondary_ext_len=args.secondary_ext_len,
                                  word_boundaries=args.word_boundaries,
                                  dry_run=args.dry_run, settings_path=args.settings_path)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    changes = truncator.process_paths(batch_size=max(args.batch_size, 1))

    if changes:
        _print_changes(changes, args.dry_run)
    if truncator.skipped:
        _print_skipped(truncator.skipped)

    if not changes:
        print(f"\nNo names need to be truncated to fit {truncator.config.max_len} bytes.")
        return 0

    print(f"{len(changes)} names to truncate, {len(truncator.skipped)} skipped.")

    if args.dry_run:
        return 0

    if not args.yes:
        confirm = input("\nApply these changes? [y/N] ")
        if confirm.lower() != 'y':
            print("No changes made.")
            return 0

    failures = truncator.apply_changes(changes)
    if failures:
        print(f"\n{failures} of {len(changes)} renames failed.")
        return 1
    print(f"\nRenamed {len(changes)} entries.")
    return 0


# Define a custom exception handler that will only be installed when this file is run directly (not when run with pytest)
def global_exception_handler(exc_type, exc_value, exc_traceback):
    # Get the most recent frame from the traceback for location information
    tb_frame = traceback.extract_tb(exc_traceback)[-1] if exc_traceback else None

    file_info = f" in {tb_frame.filename}:{tb_frame.lineno} (function: {tb_frame.name})" if tb_frame else ""
    error_msg = f"Unhandled exception: {exc_type.__name__}: {exc_value}{file_info}\n"

    sys.stderr.write("\n==== GLOBAL EXCEPTION HANDLER ====\n")
    sys.stderr.write(error_msg)
    sys.stderr.write("\nDetailed traceback:\n")
    sys.stderr.write(''.join(traceback.format_exception(exc_type, exc_value, exc_traceback)))
    sys.stderr.write("\nPlease report this error with the above information.\n")
    sys.stderr.write("==== END EXCEPTION HANDLER ====\n")
    sys.stderr.flush()


if __name__ == '__main__':
    # Only install the exception handler when running this file directly
    # This prevents it from interfering with pytest's exception handling
    sys.excepthook = global_exception_handler
    sys.exit(main())
