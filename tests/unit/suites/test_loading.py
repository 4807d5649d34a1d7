"""Tests for suite loading."""

from importlib.metadata import EntryPoint
from unittest.mock import patch

import pytest

from conformance_harness.suites.loading import (
    SuiteNotFoundError,
    available_suites,
    load_suite_manifest,
)
from conformance_harness.suites.smart import smart_manifest


def test_load_registered_suite() -> None:
    """Loads the manifest registered under its entry point."""
    assert load_suite_manifest("smart") is smart_manifest
    assert "smart" in available_suites()


def test_unknown_suite() -> None:
    """Raises with the list of available suites."""
    with pytest.raises(SuiteNotFoundError, match="Suite 'nope' not found"):
        load_suite_manifest("nope")


def test_entry_point_must_name_a_manifest() -> None:
    """Rejects entry points that do not resolve to a SuiteManifest."""
    entry = EntryPoint(
        name="broken",
        value="conformance_harness.suites.loading:ENTRY_POINT_GROUP",
        group="conformance_harness.suites",
    )
    with patch("conformance_harness.suites.loading.entry_points", return_value=[entry]):
        with pytest.raises(TypeError, match="expected a SuiteManifest"):
            load_suite_manifest("broken")
