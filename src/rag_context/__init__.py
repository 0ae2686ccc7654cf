"""Context management pipeline for retrieval-augmented chat."""

__version__ = "1.0.0"
