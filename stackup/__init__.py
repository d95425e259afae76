"""
Stackup - build-and-bring-up tool for multi-container topologies.

This package reads a compose-style manifest and multi-stage build recipes,
builds runtime images and starts services in dependency order against a
container engine.
"""

__version__ = "0.1.0"
__author__ = "Stackup"
