# Copyright (c) 2024 Hostplay Contributors
# MIT License

"""Hostplay release metadata."""

from __future__ import annotations

__version__ = "0.3.0"
__author__ = "Hostplay Contributors"
__codename__ = "Converge"

# Version info tuple for programmatic comparison
VERSION_INFO = (0, 3, 0)
