#!/usr/bin/env python3
"""
setup.py compatibility wrapper for tools that still expect a setup script.

This project uses pyproject.toml with hatchling as the build backend.
Packaging tools that only understand setup.py (like stdeb) can use this file.

For normal Python installation, use:
    pip install .
"""

from setuptools import setup

# Configuration lives in pyproject.toml
setup()
