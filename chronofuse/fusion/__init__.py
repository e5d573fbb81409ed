"""
Fusion Module - Trust, Consensus and Estimation for Multi-Sensor Data.

Submodules:
- trust: Per-sensor trust scores and fault events
- consensus: Byzantine-tolerant trust-weighted consensus
- factors: Residual providers for joint least squares
- optimizer: Levenberg-Marquardt over factors
- calibration: EM estimation of biases, noise and correlation

Example Usage:
    from chronofuse.fusion import (
        TrustTracker,
        ConsensusEngine,
        GPSFactor,
        LevenbergMarquardtOptimizer,
        EMCalibrator,
    )
"""

# Trust exports
from chronofuse.fusion.trust import (
    FaultType,
    FaultEvent,
    TrustConfig,
    TrustTracker,
)

# Consensus exports
from chronofuse.fusion.consensus import (
    DOMAIN_PRIORITIES,
    SensorEvidence,
    ConsensusConfig,
    ConsensusResult,
    ConsensusEngine,
    build_consensus,
)

# Factor exports
from chronofuse.fusion.factors import (
    Factor,
    PriorFactor,
    GPSFactor,
    AtomicClockFactor,
    FunctionFactor,
    FactorGraph,
)

# Optimizer exports
from chronofuse.fusion.optimizer import (
    OptimizerConfig,
    OptimizationResult,
    LevenbergMarquardtOptimizer,
    optimize_factors,
)

# Calibration exports
from chronofuse.fusion.calibration import (
    CalibrationConfig,
    CalibrationResult,
    EMCalibrator,
    calibrate_sensors,
)

__all__ = [
    # Trust
    "FaultType",
    "FaultEvent",
    "TrustConfig",
    "TrustTracker",
    # Consensus
    "DOMAIN_PRIORITIES",
    "SensorEvidence",
    "ConsensusConfig",
    "ConsensusResult",
    "ConsensusEngine",
    "build_consensus",
    # Factors
    "Factor",
    "PriorFactor",
    "GPSFactor",
    "AtomicClockFactor",
    "FunctionFactor",
    "FactorGraph",
    # Optimizer
    "OptimizerConfig",
    "OptimizationResult",
    "LevenbergMarquardtOptimizer",
    "optimize_factors",
    # Calibration
    "CalibrationConfig",
    "CalibrationResult",
    "EMCalibrator",
    "calibrate_sensors",
]
