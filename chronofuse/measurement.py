"""
Measurement Data Model for Multi-Sensor Fusion.

Defines the value types and containers that flow through the pipeline:
- Sensor types and typed measurement values
- Environmental context recorded with each reading
- Quality flags used to drop invalid readings
- Per-sensor streams and multi-sensor bundles

Key Concepts:
- A Measurement is immutable; corrections produce new instances
- Streams may arrive out of temporal order
- Bundles carry opaque region/context tags that are never interpreted here
"""

import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)


class SensorType(Enum):
    """Sensor families that can contribute to a fusion run."""
    GPS = "gps"
    ATOMIC_CLOCK = "atomic_clock"
    WEATHER_STATION = "weather_station"
    SOIL_SENSOR = "soil_sensor"
    SATELLITE_IMAGERY = "satellite_imagery"
    RADAR_PRECIPITATION = "radar_precipitation"
    LIGHTNING_DETECTOR = "lightning_detector"
    WIND_PROFILER = "wind_profiler"
    AUTONOMOUS_WEATHER_BUOY = "autonomous_weather_buoy"
    AGRICULTURAL_IOT = "agricultural_iot"
    DRONE_MULTISPECTRAL = "drone_multispectral"
    GROUND_TRUTH_STATION = "ground_truth_station"
    COSMIC_RAY_NEUTRON = "cosmic_ray_neutron"
    EDDY_COVARIANCE_TOWER = "eddy_covariance_tower"
    PHENOCAM = "phenocam"
    LYSIMETER = "lysimeter"


class ValueKind(Enum):
    """Kinds of measurement values."""
    SCALAR = "scalar"                    # Single number
    VECTOR = "vector"                    # Arbitrary-length vector
    POSITION = "position"                # (lat, lon, alt)
    TEMPERATURE = "temperature"          # Value with scale in unit
    HUMIDITY = "humidity"                # Relative humidity, percent
    PRESSURE = "pressure"                # Value with unit
    WIND_VECTOR = "wind_vector"          # (speed, direction[, gust])
    SOIL_MOISTURE = "soil_moisture"      # (value, depth_cm)
    PRECIPITATION = "precipitation"      # (rate, accumulation)
    SOLAR_RADIATION = "solar_radiation"  # (global, direct, diffuse)
    CUSTOM = "custom"                    # Labelled components


# Kinds compared on their first component only
SCALAR_KINDS = (ValueKind.SCALAR, ValueKind.HUMIDITY, ValueKind.PRESSURE)

# Kinds compared component-wise
VECTOR_KINDS = (
    ValueKind.VECTOR,
    ValueKind.POSITION,
    ValueKind.SOIL_MOISTURE,
    ValueKind.PRECIPITATION,
    ValueKind.SOLAR_RADIATION,
)


@dataclass(frozen=True)
class MeasurementValue:
    """
    A typed measurement value.

    Attributes:
        kind: Value kind, drives similarity and interpolation
        components: Numeric components
        unit: Unit or scale (e.g. "celsius", "pa"), if meaningful
        labels: Component labels for custom values
    """
    kind: ValueKind
    components: Tuple[float, ...]
    unit: Optional[str] = None
    labels: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "components", tuple(float(c) for c in self.components))
        object.__setattr__(self, "labels", tuple(self.labels))

    @classmethod
    def scalar(cls, value: float) -> "MeasurementValue":
        return cls(ValueKind.SCALAR, (value,))

    @classmethod
    def vector(cls, values: Iterable[float]) -> "MeasurementValue":
        return cls(ValueKind.VECTOR, tuple(values))

    @classmethod
    def position(cls, lat: float, lon: float, alt: float = 0.0) -> "MeasurementValue":
        return cls(ValueKind.POSITION, (lat, lon, alt))

    @classmethod
    def temperature(cls, value: float, scale: str = "celsius") -> "MeasurementValue":
        return cls(ValueKind.TEMPERATURE, (value,), unit=scale.lower())

    @classmethod
    def humidity(cls, percent: float) -> "MeasurementValue":
        return cls(ValueKind.HUMIDITY, (percent,), unit="percent")

    @classmethod
    def pressure(cls, value: float, unit: str = "pa") -> "MeasurementValue":
        return cls(ValueKind.PRESSURE, (value,), unit=unit.lower())

    @classmethod
    def wind(
        cls, speed: float, direction: float, gust: Optional[float] = None
    ) -> "MeasurementValue":
        components = (speed, direction % 360.0)
        if gust is not None:
            components = components + (gust,)
        return cls(ValueKind.WIND_VECTOR, components)

    @classmethod
    def soil_moisture(cls, value: float, depth_cm: float) -> "MeasurementValue":
        return cls(ValueKind.SOIL_MOISTURE, (value, depth_cm))

    @classmethod
    def precipitation(cls, rate: float, accumulation: float) -> "MeasurementValue":
        return cls(ValueKind.PRECIPITATION, (rate, accumulation))

    @classmethod
    def solar_radiation(
        cls, global_: float, direct: float, diffuse: float
    ) -> "MeasurementValue":
        return cls(ValueKind.SOLAR_RADIATION, (global_, direct, diffuse))

    @classmethod
    def custom(cls, values: Mapping[str, float]) -> "MeasurementValue":
        labels = tuple(sorted(values))
        return cls(ValueKind.CUSTOM, tuple(values[k] for k in labels), labels=labels)

    @property
    def dimension(self) -> int:
        return len(self.components)

    def as_array(self) -> np.ndarray:
        """Numeric representation used by consensus and optimization."""
        if self.kind == ValueKind.WIND_VECTOR:
            # Speed and direction only; gust is auxiliary
            return np.asarray(self.components[:2], dtype=float)
        return np.asarray(self.components, dtype=float)

    def is_finite(self) -> bool:
        return all(math.isfinite(c) for c in self.components)

    def compatible_with(self, other: "MeasurementValue") -> bool:
        """Whether two values can be compared or interpolated component-wise."""
        return (
            self.kind == other.kind
            and len(self.components) == len(other.components)
            and self.labels == other.labels
        )

    def interpolate(self, other: "MeasurementValue", alpha: float) -> "MeasurementValue":
        """
        Linearly interpolate toward another value.

        Incompatible values return self unchanged. Wind direction is
        interpolated along the shortest arc.

        Args:
            other: Value at alpha = 1
            alpha: Interpolation weight in [0, 1]

        Returns:
            Interpolated value
        """
        if not self.compatible_with(other):
            return self

        a = np.asarray(self.components, dtype=float)
        b = np.asarray(other.components, dtype=float)
        if self.kind == ValueKind.TEMPERATURE and self.unit != other.unit:
            b = np.array([convert_temperature(b[0], other.unit, self.unit)])

        result = a + alpha * (b - a)
        if self.kind == ValueKind.WIND_VECTOR:
            delta = ((b[1] - a[1] + 180.0) % 360.0) - 180.0
            result[1] = (a[1] + alpha * delta) % 360.0
        return replace(self, components=tuple(result))

    def to_dict(self) -> Dict[str, Any]:
        data = {"kind": self.kind.value, "components": list(self.components)}
        if self.unit is not None:
            data["unit"] = self.unit
        if self.labels:
            data["labels"] = list(self.labels)
        return data

    @classmethod
    def from_dict(cls, data: Union[float, int, Sequence[float], Dict[str, Any]]) -> "MeasurementValue":
        """
        Build a value from its dictionary form.

        A bare number is read as a scalar and a bare list as a vector.
        """
        if isinstance(data, (int, float)):
            return cls.scalar(float(data))
        if isinstance(data, (list, tuple)):
            return cls.vector(data)
        kind = ValueKind(data.get("kind", "scalar"))
        if "components" in data:
            components = data["components"]
        else:
            components = [data["value"]]
        return cls(
            kind=kind,
            components=tuple(components),
            unit=data.get("unit"),
            labels=tuple(data.get("labels", ())),
        )


def convert_temperature(value: float, from_scale: Optional[str], to_scale: Optional[str]) -> float:
    """Convert a temperature between celsius, fahrenheit and kelvin."""
    from_scale = (from_scale or "celsius").lower()
    to_scale = (to_scale or "celsius").lower()
    if from_scale == to_scale:
        return value

    if from_scale == "fahrenheit":
        celsius = (value - 32.0) * 5.0 / 9.0
    elif from_scale == "kelvin":
        celsius = value - 273.15
    else:
        celsius = value

    if to_scale == "fahrenheit":
        return celsius * 9.0 / 5.0 + 32.0
    if to_scale == "kelvin":
        return celsius + 273.15
    return celsius


@dataclass(frozen=True)
class EnvironmentalContext:
    """
    Environmental conditions at measurement time.

    Attributes:
        temperature: Ambient temperature (degC)
        humidity: Relative humidity (percent)
        pressure: Atmospheric pressure (Pa)
        altitude: Sensor altitude (m)
        magnetic_field: Magnetic field strength (uT), if measured
        solar_activity: Solar activity index, if measured
        electromagnetic_interference: EMI level, if measured
        vibration_level: Vibration level, if measured
    """
    temperature: float = 25.0
    humidity: float = 50.0
    pressure: float = 101325.0
    altitude: float = 0.0
    magnetic_field: Optional[float] = None
    solar_activity: Optional[float] = None
    electromagnetic_interference: Optional[float] = None
    vibration_level: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "humidity": self.humidity,
            "pressure": self.pressure,
            "altitude": self.altitude,
            "magnetic_field": self.magnetic_field,
            "solar_activity": self.solar_activity,
            "electromagnetic_interference": self.electromagnetic_interference,
            "vibration_level": self.vibration_level,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EnvironmentalContext":
        return cls(**(data or {}))


@dataclass(frozen=True)
class QualityFlags:
    """
    Quality flags attached to a measurement by its producer.

    Attributes:
        is_valid: False marks the reading as absent for fusion
        is_calibrated: Sensor was within its calibration period
        drift_detected: Producer detected calibration drift
        outlier_detected: Producer flagged the reading as an outlier
        communication_error: Reading arrived through a faulty link
        sensor_malfunction: Sensor self-test failed
        environmental_impact: Reading affected by the environment
        data_completeness: Fraction of expected data present (0-1)
    """
    is_valid: bool = True
    is_calibrated: bool = True
    drift_detected: bool = False
    outlier_detected: bool = False
    communication_error: bool = False
    sensor_malfunction: bool = False
    environmental_impact: bool = False
    data_completeness: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "is_calibrated": self.is_calibrated,
            "drift_detected": self.drift_detected,
            "outlier_detected": self.outlier_detected,
            "communication_error": self.communication_error,
            "sensor_malfunction": self.sensor_malfunction,
            "environmental_impact": self.environmental_impact,
            "data_completeness": self.data_completeness,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "QualityFlags":
        return cls(**(data or {}))


@dataclass(frozen=True)
class Measurement:
    """
    A single timestamped sensor reading.

    Attributes:
        timestamp: Seconds since the Unix epoch
        value: Typed measurement value
        sensor_id: Producing sensor
        uncertainty: Value standard deviation (>= 0)
        environment: Conditions at measurement time
        quality_flags: Producer quality flags
        temporal_uncertainty: Timestamp standard deviation after delay correction (s)
        alignment_uncertainty: Timestamp uncertainty introduced by warping (s)
    """
    timestamp: float
    value: MeasurementValue
    sensor_id: str
    uncertainty: float = 0.0
    environment: EnvironmentalContext = field(default_factory=EnvironmentalContext)
    quality_flags: QualityFlags = field(default_factory=QualityFlags)
    temporal_uncertainty: Optional[float] = None
    alignment_uncertainty: Optional[float] = None

    def __post_init__(self):
        if not math.isfinite(self.timestamp):
            raise ValueError(f"timestamp must be finite, got {self.timestamp}")
        if not self.uncertainty >= 0:
            raise ValueError(f"uncertainty must be >= 0, got {self.uncertainty}")

    @property
    def is_valid(self) -> bool:
        return self.quality_flags.is_valid

    def with_timestamp(self, timestamp: float, **changes) -> "Measurement":
        """Copy of this measurement at a new timestamp."""
        return replace(self, timestamp=timestamp, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "value": self.value.to_dict(),
            "sensor_id": self.sensor_id,
            "uncertainty": self.uncertainty,
            "environment": self.environment.to_dict(),
            "quality_flags": self.quality_flags.to_dict(),
            "temporal_uncertainty": self.temporal_uncertainty,
            "alignment_uncertainty": self.alignment_uncertainty,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], sensor_id: Optional[str] = None) -> "Measurement":
        return cls(
            timestamp=float(data["timestamp"]),
            value=MeasurementValue.from_dict(data["value"]),
            sensor_id=data.get("sensor_id", sensor_id),
            uncertainty=float(data.get("uncertainty", 0.0)),
            environment=EnvironmentalContext.from_dict(data.get("environment")),
            quality_flags=QualityFlags.from_dict(data.get("quality_flags")),
            temporal_uncertainty=data.get("temporal_uncertainty"),
            alignment_uncertainty=data.get("alignment_uncertainty"),
        )


@dataclass
class SensorStream:
    """
    Measurements from one sensor, in arrival order.

    Attributes:
        sensor_id: Sensor identifier
        sensor_type: Sensor family
        measurements: Readings; arrival order is not guaranteed temporal
    """
    sensor_id: str
    sensor_type: SensorType
    measurements: List[Measurement] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.measurements)

    def __iter__(self):
        return iter(self.measurements)

    @property
    def is_empty(self) -> bool:
        return not self.measurements

    def add(self, measurement: Measurement) -> None:
        if measurement.sensor_id != self.sensor_id:
            raise ValueError(
                f"Measurement from '{measurement.sensor_id}' added to stream '{self.sensor_id}'"
            )
        self.measurements.append(measurement)

    def _derive(self, measurements: List[Measurement]) -> "SensorStream":
        return SensorStream(self.sensor_id, self.sensor_type, measurements)

    def sorted(self) -> "SensorStream":
        """Stable sort by timestamp."""
        return self._derive(sorted(self.measurements, key=lambda m: m.timestamp))

    def valid(self) -> "SensorStream":
        """Drop measurements flagged invalid."""
        return self._derive([m for m in self.measurements if m.is_valid])

    def within(self, start: float, end: float) -> "SensorStream":
        return self._derive([m for m in self.measurements if start <= m.timestamp <= end])

    def timestamps(self) -> np.ndarray:
        return np.array([m.timestamp for m in self.measurements], dtype=float)

    def time_span(self) -> Optional[Tuple[float, float]]:
        if not self.measurements:
            return None
        ts = self.timestamps()
        return float(ts.min()), float(ts.max())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sensor_id": self.sensor_id,
            "sensor_type": self.sensor_type.value,
            "measurements": [
                {k: v for k, v in m.to_dict().items() if k != "sensor_id"}
                for m in self.measurements
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SensorStream":
        sensor_id = data["sensor_id"]
        return cls(
            sensor_id=sensor_id,
            sensor_type=SensorType(data["sensor_type"]),
            measurements=[
                Measurement.from_dict(m, sensor_id=sensor_id)
                for m in data.get("measurements", [])
            ],
        )


@dataclass
class SensorMeasurementBundle:
    """
    Grouped measurements from several sensors for one fusion call.

    Attributes:
        streams: Streams keyed by sensor id
        bundle_id: Unique bundle identifier
        temporal_window: Optional (start, end) in seconds; readings outside are ignored
        region: Opaque geographic region tag
        agricultural_context: Opaque context tag
        quality_metrics: Producer-reported quality metrics per sensor
    """
    streams: Dict[str, SensorStream] = field(default_factory=dict)
    bundle_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    temporal_window: Optional[Tuple[float, float]] = None
    region: Optional[str] = None
    agricultural_context: Optional[str] = None
    quality_metrics: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def __post_init__(self):
        if self.temporal_window is not None:
            start, end = self.temporal_window
            if end < start:
                raise ValueError(f"temporal_window end {end} precedes start {start}")
            self.temporal_window = (float(start), float(end))

    @property
    def sensor_ids(self) -> List[str]:
        return sorted(self.streams)

    @property
    def context_key(self) -> Optional[str]:
        """Opaque key used to look up priority overrides."""
        return self.agricultural_context or self.region

    def add_stream(self, stream: SensorStream) -> None:
        if stream.sensor_id in self.streams:
            raise ValueError(f"Duplicate stream for sensor '{stream.sensor_id}'")
        self.streams[stream.sensor_id] = stream

    def add_measurement(self, sensor_type: SensorType, measurement: Measurement) -> None:
        stream = self.streams.get(measurement.sensor_id)
        if stream is None:
            stream = SensorStream(measurement.sensor_id, sensor_type)
            self.streams[measurement.sensor_id] = stream
        stream.add(measurement)

    def valid_streams(self) -> Dict[str, SensorStream]:
        """
        Streams with invalid and out-of-window readings removed.

        Streams left empty are dropped.
        """
        result = {}
        for sensor_id, stream in self.streams.items():
            cleaned = stream.valid()
            if self.temporal_window is not None:
                cleaned = cleaned.within(*self.temporal_window)
            if cleaned.is_empty:
                logger.debug(f"Stream {sensor_id} has no valid measurements")
                continue
            result[sensor_id] = cleaned
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundle_id": self.bundle_id,
            "temporal_window": list(self.temporal_window) if self.temporal_window else None,
            "region": self.region,
            "agricultural_context": self.agricultural_context,
            "quality_metrics": self.quality_metrics,
            "streams": [self.streams[sid].to_dict() for sid in self.sensor_ids],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SensorMeasurementBundle":
        bundle = cls(
            bundle_id=data.get("bundle_id") or uuid.uuid4().hex,
            temporal_window=tuple(data["temporal_window"]) if data.get("temporal_window") else None,
            region=data.get("region"),
            agricultural_context=data.get("agricultural_context"),
            quality_metrics=data.get("quality_metrics", {}),
        )
        for stream_data in data.get("streams", []):
            bundle.add_stream(SensorStream.from_dict(stream_data))
        return bundle
