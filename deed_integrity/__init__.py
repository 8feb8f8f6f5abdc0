"""Deed Integrity - document hash commit and verification pipeline."""

__version__ = "1.0.0"
