"""Mallex command-line interface."""
