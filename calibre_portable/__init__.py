"""Portable calibre launcher."""

VERSION = "2.0.0"
