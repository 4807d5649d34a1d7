"""Discovery of suites registered under the ``conformance_harness.suites`` group."""

import logging
from importlib.metadata import EntryPoint, entry_points

from conformance_harness.suites.manifest import SuiteManifest

log = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "conformance_harness.suites"


class SuiteNotFoundError(Exception):
    """Raised when no installed suite matches the requested key."""


def _suite_entries() -> dict[str, EntryPoint]:
    return {entry.name: entry for entry in entry_points(group=ENTRY_POINT_GROUP)}


def available_suites() -> list[str]:
    return sorted(_suite_entries())


def load_suite_manifest(key: str) -> SuiteManifest:
    """Import the suite registered as ``key`` and return its manifest.

    Raises:
        SuiteNotFoundError: If no suite is registered under ``key``
        TypeError: If the entry point does not name a ``SuiteManifest``

    """
    entries = _suite_entries()
    entry = entries.get(key)
    if entry is None:
        raise SuiteNotFoundError(
            f"Suite '{key}' not found. Available suites: {sorted(entries)}"
        )

    manifest = entry.load()
    if not isinstance(manifest, SuiteManifest):
        raise TypeError(
            f"Entry point {entry.value} is a {type(manifest).__name__}, "
            "expected a SuiteManifest"
        )
    log.debug("Loaded suite %s (%s) from %s", key, manifest.title, entry.value)
    return manifest
