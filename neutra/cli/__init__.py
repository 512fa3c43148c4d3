"""Neutra command-line tools."""
