"""Aviator crash round engine and settlement pipeline."""

__version__ = "3.0.0"
