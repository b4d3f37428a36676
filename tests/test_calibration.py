import pytest

from calibration import CalibrationState, Reading


def test_apply_without_offset():
    cal = CalibrationState()
    assert cal.apply(5.0) == Reading(raw=5.0, adjusted=5.0)
    assert cal.max_adjusted == 5.0


def test_tare_then_same_raw_reads_zero():
    cal = CalibrationState()
    cal.apply(3.7)
    cal.tare()
    assert cal.current == 0.0
    assert cal.apply(3.7).adjusted == pytest.approx(0.0, abs=1e-9)


def test_tare_accumulates_offset():
    cal = CalibrationState()
    cal.apply(2.0)
    cal.tare()
    cal.apply(5.0)
    cal.tare()
    assert cal.tare_offset == pytest.approx(5.0)
    assert cal.apply(5.0).adjusted == pytest.approx(0.0, abs=1e-9)


def test_double_tare_is_stable():
    cal = CalibrationState()
    cal.apply(4.0)
    cal.tare()
    cal.tare()
    assert cal.tare_offset == 4.0


def test_tare_keeps_max():
    cal = CalibrationState()
    cal.apply(9.0)
    cal.tare()
    assert cal.max_adjusted == 9.0


def test_reset_max_zeroes_max_and_live_reading():
    cal = CalibrationState()
    cal.apply(9.0)
    cal.apply(6.0)
    cal.reset_max()
    assert cal.max_adjusted == 0.0
    assert cal.current == 0.0
    assert cal.apply(6.0).adjusted == pytest.approx(0.0, abs=1e-9)
    assert cal.max_adjusted == 0.0


def test_max_is_monotonic():
    cal = CalibrationState()
    seen = []
    for raw in [1.0, 4.0, 2.0, -3.0, 4.5, 0.0]:
        cal.apply(raw)
        seen.append(cal.max_adjusted)
    assert seen == sorted(seen)
    assert cal.max_adjusted == 4.5


def test_negative_adjusted_does_not_raise_max():
    cal = CalibrationState(tare_offset=2.0, max_adjusted=1.0)
    reading = cal.apply(0.0)
    assert reading.adjusted == -2.0
    assert cal.max_adjusted == 1.0


def test_connect_and_disconnect_reset():
    cal = CalibrationState(tare_offset=2.0, max_adjusted=7.0, current=1.0)
    cal.on_connect()
    assert (cal.tare_offset, cal.max_adjusted, cal.current) == (0.0, 0.0, 0.0)
    cal.apply(3.0)
    cal.tare()
    cal.on_disconnect()
    assert (cal.tare_offset, cal.max_adjusted) == (0.0, 0.0)
