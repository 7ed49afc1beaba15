# -*- coding: utf-8 -*-
"""Sundial test suite."""
