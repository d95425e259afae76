"""
Manifest loading, validation and rendering.
"""

from .models import BuildConfig, Manifest, PortMapping, ServiceSpec, VolumeMount, VolumeSpec
from .load import load_manifest, load_yaml, parse_manifest, find_manifest
from .validate import ValidationReport, validate_manifest
from .graph import plan_batches, start_order, find_cycle
from .connection import ConnectionString, parse_connection_string, derive_connection_string
from .render import render_manifest

__all__ = [
    "BuildConfig",
    "Manifest",
    "PortMapping",
    "ServiceSpec",
    "VolumeMount",
    "VolumeSpec",
    "load_manifest",
    "load_yaml",
    "parse_manifest",
    "find_manifest",
    "ValidationReport",
    "validate_manifest",
    "plan_batches",
    "start_order",
    "find_cycle",
    "ConnectionString",
    "parse_connection_string",
    "derive_connection_string",
    "render_manifest",
]
