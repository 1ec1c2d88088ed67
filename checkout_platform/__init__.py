"""Checkout pricing, payment splits and settlement for digital-product producers."""

__version__ = "1.0.0"
