"""Attoteam: filesystem-coordinated worker teams."""

__version__ = "0.1.0"
