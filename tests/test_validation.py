"""
Tests for the final structural sanity check.
"""

import logging
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from epub_extract import ExtractionConfig, ImageRecord, ValidationError, validate_extraction
from epub_factory import OPF_TEXT

CHAPTERS = {"a.xhtml": "<p>a</p>"}


class TestValidateExtraction:
    """Tests for validate_extraction."""

    def test_accepts_well_formed_input(self):
        """Test that a normal manifest with chapters passes."""
        assert validate_extraction(OPF_TEXT, CHAPTERS, {}) is None

    @pytest.mark.parametrize("manifest_text", [None, "", "<package><manifest/><spine/></package>"])
    def test_rejects_missing_or_short_manifest(self, manifest_text):
        """Test that placeholder manifests are rejected."""
        with pytest.raises(ValidationError, match="empty or too small"):
            validate_extraction(manifest_text, CHAPTERS, {})

    def test_rejects_manifest_without_spine(self):
        """Test that the spine marker is required."""
        text = OPF_TEXT.replace("<spine>", "<order>").replace("</spine>", "</order>")
        with pytest.raises(ValidationError, match="<spine>"):
            validate_extraction(text, CHAPTERS, {})

    def test_rejects_manifest_without_manifest_section(self):
        """Test that the manifest marker is required."""
        text = OPF_TEXT.replace("<manifest>", "<items>").replace("</manifest>", "</items>")
        with pytest.raises(ValidationError, match="<manifest>"):
            validate_extraction(text, CHAPTERS, {})

    def test_rejects_empty_chapter_set(self):
        """Test the defensive empty-chapters check."""
        with pytest.raises(ValidationError, match="No content files"):
            validate_extraction(OPF_TEXT, {}, {})

    def test_minimum_length_is_configurable(self):
        """Test that a lower threshold lets a compact manifest through."""
        text = "<package><manifest/><spine/></package>"
        validate_extraction(text, CHAPTERS, {}, ExtractionConfig(min_manifest_length=10))

    def test_logs_distinct_image_count(self, caplog):
        """Test that the counts are reported for observability."""
        record = ImageRecord(data=b"x", mime_type="image/png")
        other = ImageRecord(data=b"x", mime_type="image/png")
        images = {"a.png": record, "Images/a.png": record, "b.png": other}

        with caplog.at_level(logging.INFO, logger="epub_extract"):
            validate_extraction(OPF_TEXT, CHAPTERS, images)

        assert "1 content files, 2 images (3 aliases)" in caplog.text
