"""Boot parameter generation and image encoding.

This module handles:
- Deterministic generation of per-board boot parameters
- Key derivation for visors and the hypervisor
- Encoding parameters into (and out of) a disk image's MBR
"""

from skyimager.bootparams.codec import decode, encode, read_params, write_params
from skyimager.bootparams.generator import generate, render_params
from skyimager.bootparams.models import HYPERVISOR, BootParams

__all__ = [
    "HYPERVISOR",
    "BootParams",
    "decode",
    "encode",
    "generate",
    "read_params",
    "render_params",
    "write_params",
]
