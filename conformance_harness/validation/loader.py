"""Loading of StructureDefinition and ValueSet resources from files."""

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from conformance_harness.validation.definitions import Definitions
from conformance_harness.validation.profile import (
    Binding,
    ElementNode,
    Profile,
    TypeRef,
    build_profile,
)
from conformance_harness.validation.terminology import Terminology

log = logging.getLogger(__name__)


class ProfileLoadError(Exception):
    """Raised when a definition file cannot be read or is not a usable definition."""


def read_resource(path: Path) -> Mapping[str, Any]:
    """Read a JSON or YAML resource file.

    Raises:
        ProfileLoadError: If the file is missing or cannot be parsed

    """
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ProfileLoadError(f"Cannot read {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ProfileLoadError(f"Cannot parse {path}: {e}") from e

    if not isinstance(data, Mapping):
        raise ProfileLoadError(f"{path} does not contain a resource object")
    return data


def element_from_json(element: Mapping[str, Any]) -> ElementNode:
    """Convert one ``ElementDefinition`` into an ``ElementNode`` without children."""
    max_value = element.get("max", "*")
    types = []
    for entry in element.get("type", []):
        profile = entry.get("profile")
        if isinstance(profile, list):
            profile = profile[0] if profile else None
        types.append(TypeRef(code=entry["code"], profile=profile))

    binding = None
    if "binding" in element:
        raw = element["binding"]
        value_set = raw.get("valueSet") or raw.get("valueSetUri")
        if value_set is None:
            value_set = raw.get("valueSetReference", {}).get("reference")
        binding = Binding(strength=raw["strength"], value_set=value_set)

    return ElementNode(
        path=element["path"],
        id=element.get("id"),
        name=element.get("sliceName"),
        min=int(element.get("min", 0)),
        max=None if max_value == "*" else int(max_value),
        types=types,
        binding=binding,
        fixed=_prefixed_value(element, "fixed"),
        pattern=_prefixed_value(element, "pattern"),
        short=element.get("short"),
        max_length=element.get("maxLength"),
    )


def _prefixed_value(element: Mapping[str, Any], prefix: str) -> Any:
    for key, value in element.items():
        if key.startswith(prefix) and key != prefix:
            return value
    return None


def profile_from_structure_definition(resource: Mapping[str, Any]) -> Profile:
    """Build a profile from a StructureDefinition's snapshot.

    When a differential is present only the constrained elements and their
    ancestors are kept.

    Raises:
        ProfileLoadError: If the resource has no snapshot or a malformed element

    """
    url = resource.get("url", "")
    snapshot = resource.get("snapshot", {}).get("element")
    if not snapshot:
        raise ProfileLoadError(f"StructureDefinition {url} has no snapshot")

    differential = None
    if resource.get("differential", {}).get("element"):
        differential = [
            entry.get("id") or entry["path"]
            for entry in resource["differential"]["element"]
        ]

    try:
        elements = [element_from_json(element) for element in snapshot]
        return build_profile(
            elements,
            url=url,
            kind=resource.get("kind", "resource"),
            differential=differential,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ProfileLoadError(f"Malformed StructureDefinition {url}: {e}") from e


def load_profile(path: Path) -> Profile:
    resource = read_resource(path)
    if resource.get("resourceType") != "StructureDefinition":
        raise ProfileLoadError(f"{path} is not a StructureDefinition")
    return profile_from_structure_definition(resource)


def load_directory(
    directory: Path, definitions: Definitions, terminology: Terminology
) -> int:
    """Register every StructureDefinition and ValueSet found under ``directory``.

    Base definitions (``derivation`` of ``specialization``) also become the
    definition of their type. Other files are ignored.

    Returns:
        Number of resources registered

    """
    loaded = 0
    for path in sorted(directory.rglob("*")):
        if path.suffix not in (".json", ".yaml", ".yml"):
            continue
        resource = read_resource(path)
        match resource.get("resourceType"):
            case "StructureDefinition":
                profile = profile_from_structure_definition(resource)
                base = resource.get("derivation") == "specialization"
                definitions.add(profile, base=base)
            case "ValueSet":
                terminology.load_value_set(resource)
            case _:
                log.debug("Ignoring %s", path)
                continue
        loaded += 1

    log.info("Loaded %d definition(s) from %s", loaded, directory)
    return loaded
