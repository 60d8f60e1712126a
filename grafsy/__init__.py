"""Local Graphite metrics proxy: buffering, aggregation, filtering and forwarding to carbon servers."""

__version__ = "2.0.0"

__all__ = ["__version__"]