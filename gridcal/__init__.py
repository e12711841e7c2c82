#!/usr/bin/env python
# coding=utf-8
"""
Python package to detect blob-grid calibration patterns and to select
coverage-optimal calibration frames.
"""

__all__ = ['config', 'coverage', 'patches', 'patterns']
__author__ = 'snototter'

# Load version
import os
with open(os.path.join(os.path.dirname(os.path.abspath(__file__)), 'version.py')) as vf:
    exec(vf.read())
