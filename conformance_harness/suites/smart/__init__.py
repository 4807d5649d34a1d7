"""SMART App Launch suite module."""

from conformance_harness.suites.smart.manifest import build_registry, smart_manifest
from conformance_harness.suites.smart.patient import PATIENT_PROFILE

__all__ = ["PATIENT_PROFILE", "build_registry", "smart_manifest"]
