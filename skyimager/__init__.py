"""Skyimager - build ready-to-flash Skybian images in bulk.

This package downloads a Skybian base image, derives per-board boot
parameters and writes one final image per visor (plus an optional
hypervisor image) into a work directory.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
