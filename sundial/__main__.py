#!/usr/bin/env python3
"""
Sundial CLI

This module allows Sundial to be run as:
    python -m sundial

Or installed and run as:
    sundial
"""

from .cli import main

if __name__ == "__main__":
    main()
