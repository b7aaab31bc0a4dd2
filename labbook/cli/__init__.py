"""Labbook command-line interface."""
