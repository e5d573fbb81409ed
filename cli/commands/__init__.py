"""
Chronofuse CLI Commands

This package contains all CLI subcommands for the cfuse tool.

Commands:
    fuse      - Fuse a measurement bundle into one estimate
    align     - Align one sensor stream to another with DTW
    calibrate - Estimate sensor biases and noise with EM
    trust     - Show persisted trust scores and history
"""

from cli.commands import (
    fuse,
    align,
    calibrate,
    trust,
)

__all__ = [
    "fuse",
    "align",
    "calibrate",
    "trust",
]
