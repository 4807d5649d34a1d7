"""Value sets known to the validator, as predicates over codings."""

import logging
import mimetypes
from collections.abc import Callable, Iterable, Mapping
from typing import Any, TypeAlias

log = logging.getLogger(__name__)

CodingPredicate: TypeAlias = Callable[[str | None, str], bool]

MIME_TYPE_VALUE_SETS = frozenset(
    {
        "http://hl7.org/fhir/ValueSet/mimetypes",
        "http://hl7.org/fhir/ValueSet/content-type",
        "http://www.rfc-editor.org/bcp/bcp13.txt",
        "urn:ietf:bcp:13",
    }
)

MIME_TYPE_SYSTEM = "urn:ietf:bcp:13"


def is_mime_type(system: str | None, code: str) -> bool:
    if system not in (None, MIME_TYPE_SYSTEM):
        return False
    base = code.split(";", 1)[0].strip().lower()
    if base.endswith(("json", "xml")) and "/" in base:
        return True
    return mimetypes.guess_extension(base) is not None


def _canonical(url: str) -> str:
    return url.split("|", 1)[0]


class Terminology:
    """Registry of value sets, each a predicate over ``(system, code)``.

    Value sets are looked up by canonical URL; a ``|version`` suffix is
    ignored. MIME type value sets are always known.
    """

    def __init__(self) -> None:
        self._validators: dict[str, CodingPredicate] = {
            url: is_mime_type for url in MIME_TYPE_VALUE_SETS
        }

    def add_validator(self, url: str, predicate: CodingPredicate) -> None:
        self._validators[_canonical(url)] = predicate

    def add_value_set(
        self, url: str, codes: Iterable[str | tuple[str | None, str]]
    ) -> None:
        """Register an enumerated value set.

        Plain strings match the code in any system; ``(system, code)`` pairs
        match only that system, or a bare code with no system.
        """
        any_system: set[str] = set()
        pairs: set[tuple[str | None, str]] = set()
        for entry in codes:
            if isinstance(entry, str):
                any_system.add(entry)
            else:
                pairs.add(entry)

        pair_codes = {code for _, code in pairs}

        def predicate(system: str | None, code: str) -> bool:
            if code in any_system or (system, code) in pairs:
                return True
            return system is None and code in pair_codes

        self.add_validator(url, predicate)

    def load_value_set(self, resource: Mapping[str, Any]) -> str:
        """Register a ValueSet resource from its expansion or compose section."""
        url = resource["url"]
        codes: list[tuple[str | None, str]] = []

        def walk_expansion(contains: Iterable[Mapping[str, Any]]) -> None:
            for entry in contains:
                if "code" in entry:
                    codes.append((entry.get("system"), entry["code"]))
                walk_expansion(entry.get("contains", []))

        walk_expansion(resource.get("expansion", {}).get("contains", []))
        if not codes:
            for include in resource.get("compose", {}).get("include", []):
                system = include.get("system")
                for concept in include.get("concept", []):
                    codes.append((system, concept["code"]))

        if not codes:
            log.warning("ValueSet %s has no enumerated codes", url)
        self.add_value_set(url, codes)
        return _canonical(url)

    def knows(self, url: str) -> bool:
        return _canonical(url) in self._validators

    def contains_code(self, url: str, code: str) -> bool | None:
        """Whether a bare code is in the value set; None if the set is unknown."""
        predicate = self._validators.get(_canonical(url))
        if predicate is None:
            return None
        return predicate(None, code)

    def contains_coding(self, url: str, coding: Mapping[str, Any]) -> bool | None:
        predicate = self._validators.get(_canonical(url))
        if predicate is None:
            return None
        code = coding.get("code")
        if not isinstance(code, str):
            return False
        return predicate(coding.get("system"), code)
