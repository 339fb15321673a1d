"""Disk planning and assembly.

This module handles:
- Disk size planning from commit size estimates
- Kernel command line and platform id computation
- Allocating image files and driving the sandboxed disk writer
"""
