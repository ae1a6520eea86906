"""Shared helpers for Atelier."""
