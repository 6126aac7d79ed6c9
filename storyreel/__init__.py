"""Movie export pipeline: timeline layers in, rendered movie and captions out."""

__version__ = "0.1.0"
