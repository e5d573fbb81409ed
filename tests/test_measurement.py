"""
Tests for the measurement data model.

Tests typed values, interpolation, validation of measurements and the
stream and bundle containers including their dictionary forms.
"""

import math

import numpy as np
import pytest

from chronofuse.measurement import (
    EnvironmentalContext,
    Measurement,
    MeasurementValue,
    QualityFlags,
    SensorMeasurementBundle,
    SensorStream,
    SensorType,
    ValueKind,
    convert_temperature,
)


# ============================================================================
# MeasurementValue
# ============================================================================

class TestMeasurementValue:
    """Test typed measurement values."""

    def test_scalar(self):
        value = MeasurementValue.scalar(3)
        assert value.kind == ValueKind.SCALAR
        assert value.components == (3.0,)
        assert value.dimension == 1

    def test_wind_direction_wraps(self):
        value = MeasurementValue.wind(5.0, 370.0, gust=8.0)
        assert value.components == (5.0, 10.0, 8.0)

    def test_wind_array_excludes_gust(self):
        value = MeasurementValue.wind(5.0, 90.0, gust=8.0)
        np.testing.assert_allclose(value.as_array(), [5.0, 90.0])

    def test_custom_labels_sorted(self):
        value = MeasurementValue.custom({"z": 1.0, "a": 2.0})
        assert value.labels == ("a", "z")
        assert value.components == (2.0, 1.0)

    def test_is_finite(self):
        assert MeasurementValue.vector([1.0, 2.0]).is_finite()
        assert not MeasurementValue.vector([1.0, math.nan]).is_finite()

    def test_compatible_with(self):
        a = MeasurementValue.vector([1.0, 2.0])
        assert a.compatible_with(MeasurementValue.vector([3.0, 4.0]))
        assert not a.compatible_with(MeasurementValue.vector([3.0]))
        assert not a.compatible_with(MeasurementValue.position(1.0, 2.0))

    def test_interpolate_linear(self):
        a = MeasurementValue.scalar(10.0)
        b = MeasurementValue.scalar(20.0)
        assert a.interpolate(b, 0.25).components == (12.5,)

    def test_interpolate_incompatible_returns_self(self):
        a = MeasurementValue.scalar(10.0)
        b = MeasurementValue.vector([1.0, 2.0])
        assert a.interpolate(b, 0.5) is a

    def test_interpolate_wind_shortest_arc(self):
        a = MeasurementValue.wind(4.0, 350.0)
        b = MeasurementValue.wind(6.0, 10.0)
        mid = a.interpolate(b, 0.5)
        assert mid.components[0] == pytest.approx(5.0)
        assert mid.components[1] % 360.0 == pytest.approx(0.0, abs=1e-9)

    def test_interpolate_temperature_across_scales(self):
        a = MeasurementValue.temperature(0.0, "celsius")
        b = MeasurementValue.temperature(212.0, "fahrenheit")
        mid = a.interpolate(b, 0.5)
        assert mid.unit == "celsius"
        assert mid.components[0] == pytest.approx(50.0)

    def test_from_dict_shorthands(self):
        assert MeasurementValue.from_dict(4.5) == MeasurementValue.scalar(4.5)
        assert MeasurementValue.from_dict([1, 2]) == MeasurementValue.vector([1.0, 2.0])
        pressure = MeasurementValue.from_dict({"kind": "pressure", "value": 101000, "unit": "pa"})
        assert pressure == MeasurementValue.pressure(101000)

    def test_dict_round_trip_keeps_labels(self):
        value = MeasurementValue.custom({"ndvi": 0.7, "evi": 0.4})
        assert MeasurementValue.from_dict(value.to_dict()) == value


class TestConvertTemperature:
    """Test temperature scale conversion."""

    def test_same_scale(self):
        assert convert_temperature(21.0, "celsius", "celsius") == 21.0

    def test_fahrenheit_to_celsius(self):
        assert convert_temperature(212.0, "fahrenheit", "celsius") == pytest.approx(100.0)

    def test_kelvin_to_fahrenheit(self):
        assert convert_temperature(273.15, "kelvin", "fahrenheit") == pytest.approx(32.0)


# ============================================================================
# Measurement
# ============================================================================

class TestMeasurement:
    """Test single measurements."""

    def test_rejects_non_finite_timestamp(self):
        with pytest.raises(ValueError):
            Measurement(math.inf, MeasurementValue.scalar(1.0), "s1")

    def test_rejects_negative_uncertainty(self):
        with pytest.raises(ValueError):
            Measurement(0.0, MeasurementValue.scalar(1.0), "s1", uncertainty=-1.0)

    def test_validity_from_flags(self):
        m = Measurement(0.0, MeasurementValue.scalar(1.0), "s1", quality_flags=QualityFlags(is_valid=False))
        assert not m.is_valid

    def test_with_timestamp_is_a_copy(self):
        m = Measurement(5.0, MeasurementValue.scalar(1.0), "s1")
        moved = m.with_timestamp(4.0, temporal_uncertainty=1e-9)
        assert moved.timestamp == 4.0
        assert moved.temporal_uncertainty == 1e-9
        assert m.timestamp == 5.0

    def test_dict_round_trip(self):
        m = Measurement(
            12.5,
            MeasurementValue.position(45.0, 7.0, 300.0),
            "gps-1",
            uncertainty=2.0,
            environment=EnvironmentalContext(temperature=30.0, altitude=300.0),
            quality_flags=QualityFlags(drift_detected=True),
        )
        assert Measurement.from_dict(m.to_dict()) == m


# ============================================================================
# SensorStream and SensorMeasurementBundle
# ============================================================================

class TestSensorStream:
    """Test per-sensor streams."""

    def test_add_rejects_foreign_measurement(self, make_measurement):
        stream = SensorStream("s1", SensorType.GPS)
        with pytest.raises(ValueError):
            stream.add(make_measurement("s2", 0.0, 1.0))

    def test_sorted_is_stable(self, make_measurement):
        stream = SensorStream("s1", SensorType.GPS, [
            make_measurement("s1", 2.0, 1.0),
            make_measurement("s1", 1.0, 2.0),
            make_measurement("s1", 1.0, 3.0),
        ])
        values = [m.value.components[0] for m in stream.sorted()]
        assert values == [2.0, 3.0, 1.0]

    def test_time_span(self, make_stream):
        stream = make_stream("s1", [3.0, 1.0, 2.0], 5.0)
        assert stream.time_span() == (1.0, 3.0)
        assert SensorStream("s2", SensorType.GPS).time_span() is None


class TestSensorMeasurementBundle:
    """Test multi-sensor bundles."""

    def test_duplicate_stream_rejected(self, make_stream):
        bundle = SensorMeasurementBundle()
        bundle.add_stream(make_stream("a", [0.0], 1.0))
        with pytest.raises(ValueError):
            bundle.add_stream(make_stream("a", [1.0], 1.0))

    def test_add_measurement_creates_stream(self, make_measurement):
        bundle = SensorMeasurementBundle()
        bundle.add_measurement(SensorType.SOIL_SENSOR, make_measurement("soil", 0.0, 0.3))
        bundle.add_measurement(SensorType.SOIL_SENSOR, make_measurement("soil", 1.0, 0.31))
        assert bundle.sensor_ids == ["soil"]
        assert len(bundle.streams["soil"]) == 2

    def test_valid_streams_drops_invalid_and_empty(self, make_stream, make_measurement):
        bundle = SensorMeasurementBundle()
        bundle.add_stream(make_stream("a", [0.0, 1.0], 1.0))
        bad = make_measurement("b", 0.0, 1.0, quality_flags=QualityFlags(is_valid=False))
        bundle.add_stream(SensorStream("b", SensorType.GPS, [bad]))
        streams = bundle.valid_streams()
        assert list(streams) == ["a"]

    def test_valid_streams_applies_window(self, make_stream):
        bundle = SensorMeasurementBundle(temporal_window=(1.0, 2.0))
        bundle.add_stream(make_stream("a", [0.0, 1.0, 2.0, 3.0], 1.0))
        assert len(bundle.valid_streams()["a"]) == 2

    def test_window_must_be_ordered(self):
        with pytest.raises(ValueError):
            SensorMeasurementBundle(temporal_window=(2.0, 1.0))

    def test_context_key(self):
        assert SensorMeasurementBundle(region="po-valley").context_key == "po-valley"
        bundle = SensorMeasurementBundle(region="po-valley", agricultural_context="rice")
        assert bundle.context_key == "rice"

    def test_dict_round_trip(self, make_stream):
        bundle = SensorMeasurementBundle(bundle_id="b1", region="r1")
        bundle.add_stream(make_stream("a", [0.0, 1.0], [1.0, 2.0]))
        restored = SensorMeasurementBundle.from_dict(bundle.to_dict())
        assert restored.bundle_id == "b1"
        assert restored.region == "r1"
        assert restored.streams["a"].measurements == bundle.streams["a"].measurements
