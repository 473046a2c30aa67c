"""Scallop detection in seafloor survey imagery."""

__version__ = "0.1.0"
