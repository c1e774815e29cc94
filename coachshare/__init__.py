"""Folder sharing between athletes and coaches with an offline-tolerant replica."""

from __future__ import annotations

__version__ = "0.4.0"
