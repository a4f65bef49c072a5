"""Test configuration shared by the whole suite.

Points the config loader at a path that does not exist so a developer's
local extract_config.json or environment never leaks into test runs.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

os.environ["EPUBRAW_CONFIG"] = os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "no-such-config.json"
)
os.environ.pop("EPUBRAW_BATCH_SIZE", None)

from epub_factory import build_epub, default_files  # noqa: E402


@pytest.fixture
def epub_files():
    """Archive contents of the default sample book."""
    return default_files()


@pytest.fixture
def sample_epub(epub_files):
    """Bytes of a well-formed sample EPUB."""
    return build_epub(epub_files)
