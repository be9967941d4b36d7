"""SKU parameter optimization job engine."""

__version__ = "0.1.0"
