"""Unit tests for path utility functions.

- sanitize_name: turns instance identifiers into safe file name components
- ensure_subpath: keeps checkpoint and manifest paths inside their root
- safe_write_json: atomic JSON writes with parent creation
"""
import json
import os

import pytest

from provisioner.utils.paths import ensure_subpath, read_json, safe_write_json, sanitize_name


class TestSanitizeName:
    """Tests for sanitize_name."""

    def test_replaces_unsafe_characters(self):
        name = sanitize_name("../contoso/web app:*?")
        assert "/" not in name and ":" not in name and " " not in name
        assert not name.startswith(".")

    def test_keeps_safe_characters(self):
        assert sanitize_name("contoso-web_v1.2") == "contoso-web_v1.2"

    @pytest.mark.parametrize("value", ["", "...", "///"])
    def test_never_empty(self, value):
        assert sanitize_name(value) == "unnamed"


class TestEnsureSubpath:
    """Tests for ensure_subpath."""

    def test_inside_root(self, tmp_path):
        assert ensure_subpath(tmp_path, "a.json") == (tmp_path / "a.json").resolve()

    def test_escape_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            ensure_subpath(tmp_path / "root", "../outside.json")


class TestSafeWriteJson:
    """Tests for safe_write_json and read_json."""

    def test_creates_parents_and_writes(self, tmp_path):
        path = tmp_path / "deep" / "dir" / "doc.json"
        safe_write_json(path, {"a": True})
        assert json.loads(path.read_text()) == {"a": True}
        assert read_json(path) == {"a": True}

    def test_replaces_existing_document(self, tmp_path):
        path = tmp_path / "doc.json"
        safe_write_json(path, {"v": 1})
        safe_write_json(path, {"v": 2})
        assert read_json(path) == {"v": 2}
        assert os.listdir(tmp_path) == ["doc.json"]

    def test_failed_write_keeps_previous_document(self, tmp_path):
        """A payload that cannot be serialized leaves the old file and no temp files."""
        path = tmp_path / "doc.json"
        safe_write_json(path, {"v": 1})

        with pytest.raises(TypeError):
            safe_write_json(path, {"v": object()})

        assert read_json(path) == {"v": 1}
        assert os.listdir(tmp_path) == ["doc.json"]
