"""
Tests for physical delay models.

Tests the individual delay terms, their sum, the delay uncertainty and
timestamp correction of measurements and streams.
"""

import math

import pytest

from chronofuse.alignment.delay import (
    DelayCorrector,
    DelayModel,
    DelayProfile,
    SECONDS_PER_DAY,
)
from chronofuse.exceptions import MissingCalibrationError
from chronofuse.measurement import EnvironmentalContext, SensorType


# ============================================================================
# DelayProfile
# ============================================================================

class TestDelayProfile:
    """Test delay profile validation and defaults."""

    def test_rejects_non_finite_parameter(self):
        with pytest.raises(ValueError):
            DelayProfile("s1", cable_delay_ns=math.nan)

    def test_rejects_non_finite_drift(self):
        with pytest.raises(ValueError):
            DelayProfile("s1", drift_coefficients=[1.0, math.inf])

    def test_gps_defaults(self):
        profile = DelayProfile.for_sensor_type("gps-1", SensorType.GPS)
        assert profile.sensor_id == "gps-1"
        assert profile.cable_delay_ns == 5.0
        assert profile.processing_delay_ns == 20.0
        assert profile.temperature_coefficient == 0.1
        assert profile.aging_rate == 0.01

    def test_weather_station_defaults(self):
        profile = DelayProfile.for_sensor_type("ws-1", SensorType.WEATHER_STATION)
        assert profile.cable_delay_ns == 10.0
        assert profile.processing_delay_ns == 50.0

    def test_unknown_type_has_no_default(self):
        with pytest.raises(MissingCalibrationError) as exc_info:
            DelayProfile.for_sensor_type("soil-1", SensorType.SOIL_SENSOR)
        assert exc_info.value.sensor_id == "soil-1"

    def test_dict_round_trip(self):
        profile = DelayProfile("s1", cable_delay_ns=3.0, drift_coefficients=[0.1, 0.01])
        assert DelayProfile.from_dict(profile.to_dict()) == profile


# ============================================================================
# DelayModel
# ============================================================================

class TestDelayTerms:
    """Test each delay term in isolation."""

    def test_systematic(self):
        model = DelayModel(DelayProfile("s1", cable_delay_ns=5.0, processing_delay_ns=20.0))
        assert model.systematic_delay() == 25.0

    def test_temperature(self):
        model = DelayModel(DelayProfile("s1", temperature_coefficient=0.1))
        assert model.temperature_delay(35.0) == pytest.approx(1.0)
        assert model.temperature_delay(25.0) == 0.0

    def test_aging(self):
        model = DelayModel(DelayProfile("s1", aging_rate=0.01, calibration_epoch=0.0))
        assert model.aging_delay(10 * SECONDS_PER_DAY) == pytest.approx(0.1)

    def test_gravitational_zero_at_sea_level(self):
        assert DelayModel.gravitational_delay(0.0) == 0.0

    def test_gravitational_at_altitude(self):
        assert DelayModel.gravitational_delay(1000.0) == pytest.approx(1.0911e-4, rel=1e-3)

    def test_drift_polynomial(self):
        model = DelayModel(DelayProfile("s1", drift_coefficients=[1.0, 0.5, 0.25]))
        # 1 + 0.5*2 + 0.25*4
        assert model.drift_delay(2 * SECONDS_PER_DAY) == pytest.approx(3.0)

    def test_drift_without_coefficients(self):
        model = DelayModel(DelayProfile("s1"))
        assert model.drift_delay(5 * SECONDS_PER_DAY) == 0.0

    def test_environmental_optional_readings(self):
        profile = DelayProfile(
            "s1",
            pressure_coefficient=1e-3,
            humidity_coefficient=0.02,
            magnetic_coefficient=0.5,
            solar_coefficient=2.0,
        )
        model = DelayModel(profile)
        basic = EnvironmentalContext(pressure=101425.0, humidity=60.0)
        assert model.environmental_delay(basic) == pytest.approx(0.3)

        full = EnvironmentalContext(
            pressure=101425.0, humidity=60.0, magnetic_field=52.0, solar_activity=0.5
        )
        assert model.environmental_delay(full) == pytest.approx(2.3)


class TestDelayModel:
    """Test total delay, uncertainty and correction."""

    def test_predict_delay_sums_terms(self):
        profile = DelayProfile(
            "s1",
            cable_delay_ns=5.0,
            processing_delay_ns=20.0,
            temperature_coefficient=0.1,
            aging_rate=0.01,
            drift_coefficients=[0.5],
        )
        model = DelayModel(profile)
        environment = EnvironmentalContext(temperature=35.0)
        delay = model.predict_delay(10 * SECONDS_PER_DAY, environment)
        assert delay == pytest.approx(25.0 + 1.0 + 0.1 + 0.5)

    def test_standard_conditions_by_default(self):
        model = DelayModel(DelayProfile("s1", cable_delay_ns=7.0, temperature_coefficient=3.0))
        assert model.predict_delay(0.0) == pytest.approx(7.0)

    def test_uncertainty(self):
        model = DelayModel(DelayProfile("s1", temperature_coefficient=0.1, aging_rate=0.01))
        expected = math.sqrt(0.5 ** 2 + 0.01 ** 2 + 0.0001 ** 2)
        assert model.uncertainty() == pytest.approx(expected)

    def test_correct_shifts_timestamp(self, make_measurement):
        model = DelayModel(DelayProfile("s1", cable_delay_ns=1_000_000.0))
        corrected = model.correct(make_measurement("s1", 10.0, 1.0))
        assert corrected.timestamp == pytest.approx(9.999)
        assert corrected.temporal_uncertainty == pytest.approx(0.5e-9)
        assert corrected.value == make_measurement("s1", 10.0, 1.0).value

    def test_correct_combines_existing_uncertainty(self, make_measurement):
        model = DelayModel(DelayProfile("s1"))
        measurement = make_measurement("s1", 10.0, 1.0, temporal_uncertainty=1.2e-9)
        corrected = model.correct(measurement)
        assert corrected.temporal_uncertainty == pytest.approx(1.3e-9)


# ============================================================================
# DelayCorrector
# ============================================================================

class TestDelayCorrector:
    """Test per-sensor stream correction."""

    def test_missing_profile(self, make_stream):
        corrector = DelayCorrector()
        with pytest.raises(MissingCalibrationError):
            corrector.correct_stream(make_stream("s1", [0.0], 1.0))

    def test_correct_stream_preserves_arrival_order(self, make_stream):
        corrector = DelayCorrector({"s1": DelayProfile("s1", cable_delay_ns=1e9)})
        stream = make_stream("s1", [5.0, 3.0, 4.0], 1.0)
        corrected = corrector.correct_stream(stream)
        assert [m.timestamp for m in corrected] == pytest.approx([4.0, 2.0, 3.0])
        assert corrected.sensor_type == stream.sensor_type

    def test_recalibrate(self):
        corrector = DelayCorrector()
        corrector.register_profile(DelayProfile("s1", cable_delay_ns=5.0))
        profile = corrector.recalibrate("s1", cable_delay_ns=8.0, calibration_epoch=100.0)
        assert profile.cable_delay_ns == 8.0
        assert corrector.get_model("s1").profile.calibration_epoch == 100.0

    def test_recalibrate_unknown_sensor(self):
        with pytest.raises(MissingCalibrationError):
            DelayCorrector().recalibrate("nope", cable_delay_ns=1.0)

    def test_has_profile(self):
        corrector = DelayCorrector({"s1": DelayProfile("s1")})
        assert corrector.has_profile("s1")
        assert not corrector.has_profile("s2")
