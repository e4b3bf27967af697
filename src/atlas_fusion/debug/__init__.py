"""Debug output for atlas fusion."""

from .graph import GraphDumper

__all__ = ["GraphDumper"]
