"""
Distance estimation for iBeacon advertisements.

Converts a received signal strength and the beacon's calibrated 1 m power
into a rough distance using the log-distance curve published for iBeacon
ranging. No per-hardware calibration is attempted.
"""

from __future__ import annotations

# Returned when the distance cannot be computed (no signal reading, or a
# beacon advertising a zero calibration power).
UNKNOWN_DISTANCE = -1.0

# Typical iBeacon calibrated power at 1 m when none is advertised.
DEFAULT_TX_POWER = -59

_CURVE_COEFFICIENT = 0.89976
_CURVE_EXPONENT = 7.7095
_CURVE_OFFSET = 0.111


def estimate_distance(rssi: float, tx_power: float = DEFAULT_TX_POWER) -> float:
    """
    Estimate the distance in meters to a beacon.

    Args:
        rssi: Received signal strength (dBm).
        tx_power: Calibrated signal strength at 1 m (dBm).

    Returns:
        Distance in meters, or UNKNOWN_DISTANCE when ``rssi`` is 0 or
        ``tx_power`` is 0.
    """
    if rssi == 0 or tx_power == 0:
        return UNKNOWN_DISTANCE

    ratio = rssi * 1.0 / tx_power
    if ratio < 1.0:
        return ratio**10
    return _CURVE_COEFFICIENT * ratio**_CURVE_EXPONENT + _CURVE_OFFSET
