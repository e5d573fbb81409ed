"""
Chronofuse - Multi-Sensor Temporal Alignment and Fusion.

Aligns irregularly timestamped sensor streams and fuses them into one
state estimate:
- alignment: physical delay correction and DTW alignment
- fusion: trust tracking, Byzantine consensus, Levenberg-Marquardt
  and EM calibration
- engine: the staged fuse() pipeline with provenance and cancellation

Example Usage:
    from chronofuse import FusionEngine, SensorMeasurementBundle, load_config

    engine = FusionEngine(load_config())
    result = engine.fuse(SensorMeasurementBundle.from_dict(data))
"""

__version__ = "0.1.0"

# Measurement exports
from chronofuse.measurement import (
    SensorType,
    ValueKind,
    MeasurementValue,
    EnvironmentalContext,
    QualityFlags,
    Measurement,
    SensorStream,
    SensorMeasurementBundle,
)

# Exception exports
from chronofuse.exceptions import (
    FusionError,
    MissingCalibrationError,
    EmptyInputError,
    NoFeasibleAlignmentError,
    NoTrustedSensorsError,
    SingularSystemError,
    FusionCancelledError,
)

# Configuration exports
from chronofuse.config import (
    AlgorithmKind,
    FusionConfig,
    load_config,
)

# Storage exports
from chronofuse.storage import (
    CalibrationStore,
    InMemoryCalibrationStore,
    LocalCalibrationStore,
)

# Engine exports
from chronofuse.engine import (
    FusionStage,
    CancellationToken,
    FusionResult,
    FusionEngine,
    fuse_bundle,
)

__all__ = [
    "__version__",
    # Measurements
    "SensorType",
    "ValueKind",
    "MeasurementValue",
    "EnvironmentalContext",
    "QualityFlags",
    "Measurement",
    "SensorStream",
    "SensorMeasurementBundle",
    # Exceptions
    "FusionError",
    "MissingCalibrationError",
    "EmptyInputError",
    "NoFeasibleAlignmentError",
    "NoTrustedSensorsError",
    "SingularSystemError",
    "FusionCancelledError",
    # Configuration
    "AlgorithmKind",
    "FusionConfig",
    "load_config",
    # Storage
    "CalibrationStore",
    "InMemoryCalibrationStore",
    "LocalCalibrationStore",
    # Engine
    "FusionStage",
    "CancellationToken",
    "FusionResult",
    "FusionEngine",
    "fuse_bundle",
]
