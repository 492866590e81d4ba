"""Comment threads anchored to source ranges, remapped across edits and commits."""

__version__ = "0.1.0"
