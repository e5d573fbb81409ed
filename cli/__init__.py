"""
Chronofuse CLI Package

Command-line interface for multi-sensor temporal alignment and fusion.
Provides commands for fusion, alignment, calibration and trust inspection.

Usage:
    cfuse fuse --input bundle.json --algorithm levenberg_marquardt
    cfuse align --input bundle.json --reference gps-1 --target station-2
    cfuse calibrate --input readings.json
    cfuse trust --store ./calib/
"""

__version__ = "0.1.0"

from cli.main import app

__all__ = ["app", "__version__"]
