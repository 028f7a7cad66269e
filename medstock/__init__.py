"""medstock: atomic stock-reservation engine for healthcare facilities."""

__version__ = "0.1.0"
