#!/usr/bin/env python3
"""
Pytest configuration shared by the truncator tests.

Provides fixtures that build directory trees from raw byte names and keep each
test away from the user's real settings file, and prints where an unexpected
exception came from when a test errors out.
"""

import os
import sys
import traceback
from pathlib import Path

import pytest

from name_truncator import NameTruncator


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path_factory, monkeypatch):
    """Run every test with an empty home and working directory, so no settings.ini is found."""
    home = tmp_path_factory.mktemp('home')
    monkeypatch.setenv('HOME', str(home))
    monkeypatch.chdir(home)
    monkeypatch.setenv('TRUNCATOR_DEBUG', '')
    debug_level = NameTruncator._debug_level
    yield home
    NameTruncator._debug_level = debug_level


@pytest.fixture
def make_tree(tmp_path):
    """Create files and directories under a fresh root.

    Takes a dict mapping names (str or bytes) to None for an empty file,
    a string for file contents, or a nested dict for a directory.
    """
    def _make(layout, root=None):
        root = os.fsencode(root or tmp_path / 'tree')
        os.makedirs(root, exist_ok=True)
        for name, content in layout.items():
            path = os.path.join(root, os.fsencode(name))
            if isinstance(content, dict):
                _make(content, path)
            else:
                with open(path, 'wb') as f:
                    f.write((content or '').encode('utf-8'))
        return Path(os.fsdecode(root))
    return _make


def format_exception_details(exc_type, exc_value, exc_traceback):
    """
    Print the user-code location of an exception.

    Returns True if details were printed, False for plain assertion failures.
    """
    if exc_type is AssertionError:
        return False

    tb_frames = traceback.extract_tb(exc_traceback)
    user_frame = None
    for frame in reversed(tb_frames):
        if '/site-packages/' not in frame.filename and '/usr/lib/' not in frame.filename:
            user_frame = frame
            break
    if not user_frame and tb_frames:
        user_frame = tb_frames[-1]

    location = f"{user_frame.filename}:{user_frame.lineno} (in {user_frame.name})" if user_frame else "unknown location"

    # Print directly to stderr to bypass pytest's output capture
    print("\n==== EXCEPTION DETAILS ====", file=sys.__stderr__)
    print(f"Exception Type: {exc_type.__name__}", file=sys.__stderr__)
    print(f"Exception Message: {exc_value}", file=sys.__stderr__)
    print(f"Location: {location}", file=sys.__stderr__)
    if user_frame and user_frame.line:
        print(f"\n    {user_frame.line}", file=sys.__stderr__)
    print("==== END EXCEPTION DETAILS ====\n", file=sys.__stderr__)
    return True


def pytest_exception_interact(node, call, report):
    """Show where unexpected (non-assertion) exceptions were raised."""
    if call.excinfo:
        format_exception_details(call.excinfo.type, call.excinfo.value, call.excinfo.tb)
