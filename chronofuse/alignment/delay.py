"""
Physical Delay Models for Timestamp Correction.

Removes systematic timestamp bias from sensor streams before alignment:
- Fixed cable and processing latency
- Temperature and aging effects on the timing chain
- Gravitational time dilation at altitude
- Polynomial oscillator drift since calibration
- Pressure, humidity, magnetic and solar environmental terms

Key Concepts:
- A DelayProfile holds per-sensor parameters; only recalibration changes it
- Every delay term is a pure function of the profile and the inputs
- A sensor without a profile cannot be corrected and is never assumed zero-delay
"""

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from chronofuse.exceptions import MissingCalibrationError
from chronofuse.measurement import EnvironmentalContext, Measurement, SensorStream, SensorType

logger = logging.getLogger(__name__)

# Physical constants
EARTH_RADIUS_M = 6.371e6
SPEED_OF_LIGHT_M_S = 2.998e8
STANDARD_GRAVITY_M_S2 = 9.81
SECONDS_PER_DAY = 86400.0
NS_PER_SECOND = 1e9

# Reference conditions for the environmental terms
REFERENCE_TEMPERATURE_C = 25.0
REFERENCE_PRESSURE_PA = 101325.0
REFERENCE_HUMIDITY_PCT = 50.0
REFERENCE_MAGNETIC_FIELD_UT = 50.0

# Residual timing noise of any profile (ns)
BASE_TIMING_UNCERTAINTY_NS = 0.5


@dataclass
class DelayProfile:
    """
    Per-sensor timing model parameters.

    Attributes:
        sensor_id: Sensor this profile belongs to
        cable_delay_ns: Fixed signal propagation delay (ns)
        processing_delay_ns: Fixed processing latency (ns)
        temperature_coefficient: Delay change per degC from 25 degC (ns/degC)
        aging_rate: Delay growth per day since calibration (ns/day)
        calibration_epoch: Time of last calibration (s since epoch)
        drift_coefficients: Oscillator drift polynomial in days since calibration (ns)
        pressure_coefficient: Delay per Pa from standard pressure (ns/Pa)
        humidity_coefficient: Delay per percent from 50 % RH (ns/%)
        magnetic_coefficient: Delay per uT from 50 uT (ns/uT)
        solar_coefficient: Delay per unit of solar activity (ns)
    """
    sensor_id: str
    cable_delay_ns: float = 0.0
    processing_delay_ns: float = 0.0
    temperature_coefficient: float = 0.0
    aging_rate: float = 0.0
    calibration_epoch: float = 0.0
    drift_coefficients: List[float] = field(default_factory=list)
    pressure_coefficient: float = 0.0
    humidity_coefficient: float = 0.0
    magnetic_coefficient: float = 0.0
    solar_coefficient: float = 0.0

    def __post_init__(self):
        """Validate parameters."""
        numeric = {
            "cable_delay_ns": self.cable_delay_ns,
            "processing_delay_ns": self.processing_delay_ns,
            "temperature_coefficient": self.temperature_coefficient,
            "aging_rate": self.aging_rate,
            "calibration_epoch": self.calibration_epoch,
            "pressure_coefficient": self.pressure_coefficient,
            "humidity_coefficient": self.humidity_coefficient,
            "magnetic_coefficient": self.magnetic_coefficient,
            "solar_coefficient": self.solar_coefficient,
        }
        for name, value in numeric.items():
            if not math.isfinite(value):
                raise ValueError(f"{name} must be finite, got {value}")
        if not all(math.isfinite(c) for c in self.drift_coefficients):
            raise ValueError("drift_coefficients must be finite")
        self.drift_coefficients = [float(c) for c in self.drift_coefficients]

    @classmethod
    def for_sensor_type(cls, sensor_id: str, sensor_type: SensorType) -> "DelayProfile":
        """
        Factory defaults for sensor families with a known timing chain.

        Raises:
            MissingCalibrationError: If the sensor family has no default
        """
        defaults = DEFAULT_PROFILE_PARAMETERS.get(sensor_type)
        if defaults is None:
            raise MissingCalibrationError(sensor_id)
        return cls(sensor_id=sensor_id, **defaults)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sensor_id": self.sensor_id,
            "cable_delay_ns": self.cable_delay_ns,
            "processing_delay_ns": self.processing_delay_ns,
            "temperature_coefficient": self.temperature_coefficient,
            "aging_rate": self.aging_rate,
            "calibration_epoch": self.calibration_epoch,
            "drift_coefficients": list(self.drift_coefficients),
            "pressure_coefficient": self.pressure_coefficient,
            "humidity_coefficient": self.humidity_coefficient,
            "magnetic_coefficient": self.magnetic_coefficient,
            "solar_coefficient": self.solar_coefficient,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DelayProfile":
        return cls(**data)


DEFAULT_PROFILE_PARAMETERS: Dict[SensorType, Dict[str, float]] = {
    SensorType.GPS: {
        "cable_delay_ns": 5.0,
        "processing_delay_ns": 20.0,
        "temperature_coefficient": 0.1,
        "aging_rate": 0.01,
    },
    SensorType.WEATHER_STATION: {
        "cable_delay_ns": 10.0,
        "processing_delay_ns": 50.0,
        "temperature_coefficient": 0.2,
        "aging_rate": 0.05,
    },
}


class DelayModel:
    """
    Predicts the timestamp delay of one sensor.

    All terms are in nanoseconds.
    """

    def __init__(self, profile: DelayProfile):
        self.profile = profile

    def days_since_calibration(self, timestamp: float) -> float:
        return (timestamp - self.profile.calibration_epoch) / SECONDS_PER_DAY

    def systematic_delay(self) -> float:
        return self.profile.cable_delay_ns + self.profile.processing_delay_ns

    def temperature_delay(self, temperature: float) -> float:
        return self.profile.temperature_coefficient * (temperature - REFERENCE_TEMPERATURE_C)

    def aging_delay(self, timestamp: float) -> float:
        return self.profile.aging_rate * self.days_since_calibration(timestamp)

    @staticmethod
    def gravitational_delay(altitude: float) -> float:
        """Gravitational time dilation g_eff*h/c^2, with g_eff reduced by altitude."""
        g_eff = STANDARD_GRAVITY_M_S2 * (EARTH_RADIUS_M / (EARTH_RADIUS_M + altitude)) ** 2
        return g_eff * altitude / SPEED_OF_LIGHT_M_S ** 2 * NS_PER_SECOND

    def drift_delay(self, timestamp: float) -> float:
        days = self.days_since_calibration(timestamp)
        # Horner evaluation, coefficients in ascending power order
        total = 0.0
        for coefficient in reversed(self.profile.drift_coefficients):
            total = total * days + coefficient
        return total

    def environmental_delay(self, environment: EnvironmentalContext) -> float:
        profile = self.profile
        delay = profile.pressure_coefficient * (environment.pressure - REFERENCE_PRESSURE_PA)
        delay += profile.humidity_coefficient * (environment.humidity - REFERENCE_HUMIDITY_PCT)
        if environment.magnetic_field is not None:
            delay += profile.magnetic_coefficient * (
                environment.magnetic_field - REFERENCE_MAGNETIC_FIELD_UT
            )
        if environment.solar_activity is not None:
            delay += profile.solar_coefficient * environment.solar_activity
        return delay

    def predict_delay(
        self, timestamp: float, environment: Optional[EnvironmentalContext] = None
    ) -> float:
        """
        Total predicted delay for a reading.

        Args:
            timestamp: Reading timestamp (s)
            environment: Conditions at reading time (standard conditions if None)

        Returns:
            Delay in nanoseconds
        """
        environment = environment or EnvironmentalContext()
        return (
            self.systematic_delay()
            + self.temperature_delay(environment.temperature)
            + self.aging_delay(timestamp)
            + self.gravitational_delay(environment.altitude)
            + self.drift_delay(timestamp)
            + self.environmental_delay(environment)
        )

    def uncertainty(self) -> float:
        """Standard deviation of the predicted delay (ns)."""
        return math.sqrt(
            BASE_TIMING_UNCERTAINTY_NS ** 2
            + (self.profile.temperature_coefficient * 0.1) ** 2
            + (self.profile.aging_rate * 0.01) ** 2
        )

    def correct(self, measurement: Measurement) -> Measurement:
        """
        Remove the predicted delay from a measurement timestamp.

        The delay uncertainty is combined root-sum-square with any temporal
        uncertainty the measurement already carries.
        """
        delay_s = self.predict_delay(measurement.timestamp, measurement.environment) / NS_PER_SECOND
        uncertainty_s = self.uncertainty() / NS_PER_SECOND
        if measurement.temporal_uncertainty is not None:
            uncertainty_s = math.hypot(uncertainty_s, measurement.temporal_uncertainty)
        return measurement.with_timestamp(
            measurement.timestamp - delay_s,
            temporal_uncertainty=uncertainty_s,
        )


class DelayCorrector:
    """
    Applies per-sensor delay models to whole streams.

    Profiles are registered up front or through recalibration; a stream
    whose sensor has no profile is rejected.
    """

    def __init__(self, profiles: Optional[Dict[str, DelayProfile]] = None):
        self._models: Dict[str, DelayModel] = {}
        self._lock = threading.Lock()
        for profile in (profiles or {}).values():
            self.register_profile(profile)

    def register_profile(self, profile: DelayProfile) -> None:
        with self._lock:
            self._models[profile.sensor_id] = DelayModel(profile)

    def has_profile(self, sensor_id: str) -> bool:
        with self._lock:
            return sensor_id in self._models

    def get_model(self, sensor_id: str) -> DelayModel:
        with self._lock:
            model = self._models.get(sensor_id)
        if model is None:
            raise MissingCalibrationError(sensor_id)
        return model

    def recalibrate(self, sensor_id: str, **updates) -> DelayProfile:
        """
        Replace parameters of an existing profile.

        Args:
            sensor_id: Sensor to recalibrate
            **updates: DelayProfile fields to change (e.g. calibration_epoch)

        Returns:
            The new profile
        """
        with self._lock:
            model = self._models.get(sensor_id)
            if model is None:
                raise MissingCalibrationError(sensor_id)
            profile = replace(model.profile, **updates)
            self._models[sensor_id] = DelayModel(profile)
        logger.info(f"Recalibrated delay profile for {sensor_id}: {sorted(updates)}")
        return profile

    def correct_stream(self, stream: SensorStream) -> SensorStream:
        """
        Correct every measurement of a stream, preserving arrival order.

        Raises:
            MissingCalibrationError: If the stream's sensor has no profile
        """
        model = self.get_model(stream.sensor_id)
        corrected = [model.correct(m) for m in stream.measurements]
        logger.debug(
            f"Corrected {len(corrected)} measurements for {stream.sensor_id} "
            f"(uncertainty {model.uncertainty():.3f} ns)"
        )
        return SensorStream(stream.sensor_id, stream.sensor_type, corrected)
