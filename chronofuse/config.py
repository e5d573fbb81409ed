"""
Configuration for the Fusion Engine.

Provides the FusionConfig dataclass and utilities to load it from YAML
files and environment variables, and to derive the per-component
configurations (alignment, trust, consensus, optimizer, calibration).
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from chronofuse.alignment.dtw import DTWConstraints, StepPattern
from chronofuse.fusion.calibration import CalibrationConfig
from chronofuse.fusion.consensus import ConsensusConfig
from chronofuse.fusion.optimizer import OptimizerConfig
from chronofuse.fusion.trust import TrustConfig

logger = logging.getLogger(__name__)


class AlgorithmKind(Enum):
    """Fusion algorithms selectable for the refinement stage."""
    LEVENBERG_MARQUARDT = "levenberg_marquardt"  # Least squares over sensor factors
    EM_CALIBRATION = "em_calibration"            # Joint bias/noise estimation
    BYZANTINE = "byzantine"                      # Consensus estimate only


# Environment variables and the FusionConfig fields they override
ENVIRONMENT_OVERRIDES = {
    "CHRONOFUSE_MAX_TEMPORAL_WINDOW_MS": ("max_temporal_window_ms", float),
    "CHRONOFUSE_MIN_SENSOR_RELIABILITY": ("min_sensor_reliability", float),
    "CHRONOFUSE_CONVERGENCE_THRESHOLD": ("convergence_threshold", float),
    "CHRONOFUSE_MAX_ITERATIONS": ("max_iterations", int),
    "CHRONOFUSE_BYZANTINE_FAULT_THRESHOLD": ("byzantine_fault_threshold", float),
    "CHRONOFUSE_TRUST_THRESHOLD": ("trust_threshold", float),
    "CHRONOFUSE_ALGORITHM": ("algorithm", AlgorithmKind),
    "CHRONOFUSE_MAX_WORKERS": ("max_workers", int),
}


@dataclass
class FusionConfig:
    """
    Configuration for one fusion engine.

    Attributes:
        max_temporal_window_ms: Maximum time offset of an aligned pair (ms), 0 disables
        min_sensor_reliability: Trust floor; trust never decays below it
        convergence_threshold: Convergence threshold of LM and EM
        max_iterations: Iteration cap of LM and EM
        byzantine_fault_threshold: Pairwise consistency below which a fault is recorded
        algorithm: Refinement algorithm
        trust_threshold: Sensors need trust above this to enter the consensus
        trust_learning_rate: Fraction of fault severity removed from trust
        trust_recovery_rate: Fraction of the gap to 1.0 recovered per clean cycle
        trust_recovery_window: Fault-free cycles before recovery starts
        reference_sensor: Sensor whose timeline is the common one (longest stream if None)
        step_pattern: DTW step pattern
        sakoe_chiba_radius: DTW band radius, None disables
        use_itakura: Enable the Itakura parallelogram
        max_workers: Threads used for pair alignments
        use_default_profiles: Fall back to factory delay profiles for known sensor types
        sensor_priorities: Consensus priority overrides by sensor type value
        context_priorities: Priority overrides by opaque context key
        em_learning_rate: Moving-average rate of the EM M-step
        min_factor_sigma: Floor on measurement sigma used by LM factors
    """
    max_temporal_window_ms: float = 1000.0
    min_sensor_reliability: float = 0.1
    convergence_threshold: float = 1e-6
    max_iterations: int = 100
    byzantine_fault_threshold: float = 0.3
    algorithm: AlgorithmKind = AlgorithmKind.LEVENBERG_MARQUARDT
    trust_threshold: float = 0.5
    trust_learning_rate: float = 0.5
    trust_recovery_rate: float = 0.05
    trust_recovery_window: int = 3
    reference_sensor: Optional[str] = None
    step_pattern: StepPattern = StepPattern.SYMMETRIC1
    sakoe_chiba_radius: Optional[int] = None
    use_itakura: bool = False
    max_workers: int = 4
    use_default_profiles: bool = False
    sensor_priorities: Dict[str, float] = field(default_factory=dict)
    context_priorities: Dict[str, Dict[str, float]] = field(default_factory=dict)
    em_learning_rate: float = 0.2
    min_factor_sigma: float = 1e-3

    def __post_init__(self):
        """Normalize enums and validate values."""
        if isinstance(self.algorithm, str):
            self.algorithm = AlgorithmKind(self.algorithm)
        if isinstance(self.step_pattern, str):
            self.step_pattern = StepPattern(self.step_pattern)

        if self.max_temporal_window_ms < 0:
            raise ValueError(
                f"max_temporal_window_ms must be >= 0, got {self.max_temporal_window_ms}"
            )
        if not 0.0 < self.min_sensor_reliability <= 1.0:
            raise ValueError(
                f"min_sensor_reliability must be in (0, 1], got {self.min_sensor_reliability}"
            )
        if self.convergence_threshold < 0:
            raise ValueError(
                f"convergence_threshold must be >= 0, got {self.convergence_threshold}"
            )
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not 0.0 <= self.byzantine_fault_threshold <= 1.0:
            raise ValueError(
                f"byzantine_fault_threshold must be in [0, 1], got {self.byzantine_fault_threshold}"
            )
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if not self.min_factor_sigma > 0:
            raise ValueError(f"min_factor_sigma must be > 0, got {self.min_factor_sigma}")

        # Derived configs validate the remaining fields
        self.trust_config()
        self.consensus_config()
        self.dtw_constraints()
        self.calibration_config()

    @property
    def max_time_offset(self) -> Optional[float]:
        """Temporal window in seconds, None when disabled."""
        if self.max_temporal_window_ms > 0:
            return self.max_temporal_window_ms / 1000.0
        return None

    def dtw_constraints(self) -> DTWConstraints:
        return DTWConstraints(
            step_pattern=self.step_pattern,
            sakoe_chiba_radius=self.sakoe_chiba_radius,
            itakura=self.use_itakura,
        )

    def trust_config(self) -> TrustConfig:
        return TrustConfig(
            consistency_threshold=self.byzantine_fault_threshold,
            learning_rate=self.trust_learning_rate,
            minimum_trust=self.min_sensor_reliability,
            recovery_rate=self.trust_recovery_rate,
            recovery_window=self.trust_recovery_window,
        )

    def consensus_config(self) -> ConsensusConfig:
        return ConsensusConfig(
            trust_threshold=self.trust_threshold,
            sensor_priorities=dict(self.sensor_priorities),
            context_priorities={k: dict(v) for k, v in self.context_priorities.items()},
        )

    def optimizer_config(self) -> OptimizerConfig:
        return OptimizerConfig(
            max_iterations=self.max_iterations,
            convergence_threshold=self.convergence_threshold,
        )

    def calibration_config(self) -> CalibrationConfig:
        return CalibrationConfig(
            max_iterations=self.max_iterations,
            convergence_threshold=self.convergence_threshold,
            learning_rate=self.em_learning_rate,
        )

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "FusionConfig":
        """
        Create configuration from dictionary.

        Unknown keys are ignored with a warning.

        Args:
            config_dict: Configuration dictionary

        Returns:
            FusionConfig instance
        """
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(config_dict) - known)
        if unknown:
            logger.warning(f"Ignoring unknown fusion config keys: {unknown}")
        return cls(**{k: v for k, v in config_dict.items() if k in known})

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "FusionConfig":
        """
        Load configuration from YAML file.

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            FusionConfig instance
        """
        path = Path(yaml_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(path, "r") as f:
            config_dict = yaml.safe_load(f) or {}

        # Extract fusion section if present
        if "fusion" in config_dict:
            config_dict = config_dict["fusion"] or {}

        return cls.from_dict(config_dict)

    @classmethod
    def from_environment(cls) -> "FusionConfig":
        """
        Create configuration from environment variables.

        Environment variables override default values:
        - CHRONOFUSE_MAX_TEMPORAL_WINDOW_MS
        - CHRONOFUSE_MIN_SENSOR_RELIABILITY
        - CHRONOFUSE_CONVERGENCE_THRESHOLD
        - CHRONOFUSE_MAX_ITERATIONS
        - CHRONOFUSE_BYZANTINE_FAULT_THRESHOLD
        - CHRONOFUSE_TRUST_THRESHOLD
        - CHRONOFUSE_ALGORITHM
        - CHRONOFUSE_MAX_WORKERS

        Returns:
            FusionConfig instance
        """
        return cls.from_dict(environment_overrides())

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "max_temporal_window_ms": self.max_temporal_window_ms,
            "min_sensor_reliability": self.min_sensor_reliability,
            "convergence_threshold": self.convergence_threshold,
            "max_iterations": self.max_iterations,
            "byzantine_fault_threshold": self.byzantine_fault_threshold,
            "algorithm": self.algorithm.value,
            "trust_threshold": self.trust_threshold,
            "trust_learning_rate": self.trust_learning_rate,
            "trust_recovery_rate": self.trust_recovery_rate,
            "trust_recovery_window": self.trust_recovery_window,
            "reference_sensor": self.reference_sensor,
            "step_pattern": self.step_pattern.value,
            "sakoe_chiba_radius": self.sakoe_chiba_radius,
            "use_itakura": self.use_itakura,
            "max_workers": self.max_workers,
            "use_default_profiles": self.use_default_profiles,
            "sensor_priorities": dict(self.sensor_priorities),
            "context_priorities": {k: dict(v) for k, v in self.context_priorities.items()},
            "em_learning_rate": self.em_learning_rate,
            "min_factor_sigma": self.min_factor_sigma,
        }


def environment_overrides() -> Dict[str, Any]:
    """
    Read CHRONOFUSE_* variables into a config dictionary.

    Unparseable values are reported and skipped.
    """
    overrides = {}
    for variable, (key, parse) in ENVIRONMENT_OVERRIDES.items():
        raw = os.environ.get(variable)
        if not raw:
            continue
        try:
            overrides[key] = parse(raw.strip().lower()) if parse is AlgorithmKind else parse(raw)
        except ValueError:
            logger.warning(f"Ignoring invalid value for {variable}: {raw!r}")
    return overrides


DEFAULT_CONFIG_PATHS = [
    Path("config/fusion.yaml"),
    Path("~/.chronofuse/fusion.yaml"),
    Path("/etc/chronofuse/fusion.yaml"),
]


def load_config(
    yaml_path: Optional[str] = None,
    use_environment: bool = True,
) -> FusionConfig:
    """
    Load fusion configuration with fallbacks.

    Attempts to load configuration in order:
    1. From specified YAML path (if provided)
    2. From default config paths
    3. Fall back to defaults
    Environment variables are then applied on top.

    Args:
        yaml_path: Optional explicit path to YAML config
        use_environment: Whether to apply environment variable overrides

    Returns:
        FusionConfig instance
    """
    config = None

    # Explicit path must exist
    if yaml_path:
        config = FusionConfig.from_yaml(yaml_path)

    if config is None:
        for path in DEFAULT_CONFIG_PATHS:
            path = path.expanduser()
            if path.exists():
                config = FusionConfig.from_yaml(str(path))
                logger.debug(f"Loaded fusion config from {path}")
                break

    if config is None:
        config = FusionConfig()

    if use_environment:
        overrides = environment_overrides()
        if overrides:
            merged = config.to_dict()
            merged.update(overrides)
            config = FusionConfig.from_dict(merged)

    return config
