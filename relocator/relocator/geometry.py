import numpy as np

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = 2.0 * np.pi * EARTH_RADIUS_KM / 360.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate great circle distance in km using haversine formula."""
    lat1_rad = np.radians(lat1)
    lat2_rad = np.radians(lat2)
    dlat = np.radians(lat2 - lat1)
    dlon = np.radians(lon2 - lon1)
    a = (
        np.sin(dlat / 2) ** 2
        + np.cos(lat1_rad) * np.cos(lat2_rad) * np.sin(dlon / 2) ** 2
    )
    c = 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))
    return float(EARTH_RADIUS_KM * c)


def azimuth(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate azimuth from point 1 to point 2 in degrees (0-360)."""
    lat1_rad = np.radians(lat1)
    lat2_rad = np.radians(lat2)
    dlon = np.radians(lon2 - lon1)
    x = np.sin(dlon) * np.cos(lat2_rad)
    y = np.cos(lat1_rad) * np.sin(lat2_rad) - np.sin(lat1_rad) * np.cos(
        lat2_rad
    ) * np.cos(dlon)
    az = np.degrees(np.arctan2(x, y))
    return normalize_azimuth(float(az))


def delazi(lat1: float, lon1: float, lat2: float, lon2: float) -> tuple[float, float]:
    """Return (distance in degrees, azimuth) from point 1 to point 2."""
    distance_deg = km_to_degrees(haversine_distance(lat1, lon1, lat2, lon2))
    return distance_deg, azimuth(lat1, lon1, lat2, lon2)


def km_to_degrees(distance_km: float) -> float:
    return distance_km / KM_PER_DEGREE


def normalize_longitude(lon: float) -> float:
    """Map a longitude into [-180, 180)."""
    return ((lon + 180.0) % 360.0) - 180.0


def normalize_azimuth(az: float) -> float:
    """Map an azimuth into [0, 360)."""
    out = az % 360.0
    # -1e-17 % 360 rounds to 360.0
    return 0.0 if out >= 360.0 else out


def azimuthal_gaps(station_azimuths: list[float]) -> tuple[float, float]:
    """Calculate primary and secondary azimuthal gap.

    The azimuths are sorted and the first two are appended again shifted by
    360 degrees to close the circle. The primary gap is the largest step
    between neighbours, the secondary gap the largest step skipping one
    station. With fewer than two azimuths both gaps are 360.
    """
    if len(station_azimuths) < 2:
        return 360.0, 360.0
    sorted_az = sorted(station_azimuths)
    count = len(sorted_az)
    sorted_az.append(sorted_az[0] + 360.0)
    sorted_az.append(sorted_az[1] + 360.0)
    primary = 0.0
    secondary = 0.0
    for i in range(count):
        primary = max(primary, sorted_az[i + 1] - sorted_az[i])
        secondary = max(secondary, sorted_az[i + 2] - sorted_az[i])
    return primary, secondary
