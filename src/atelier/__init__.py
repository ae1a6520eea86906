"""Atelier - unattended image generation loop with adaptive feedback."""

__version__ = "0.4.0"
