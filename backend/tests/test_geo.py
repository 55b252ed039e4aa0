import json

import pytest

from geoquiz.errors import Invalid
from geoquiz.geo import (
    haversine_km,
    pixel_distance_km,
    point_in_region,
    region_distance,
    validate_lat_lng,
    validate_pixel,
)

SQUARE = json.dumps(
    {"type": "Polygon", "coordinates": [[[0.0, 0.0], [10.0, 0.0], [10.0, 10.0], [0.0, 10.0], [0.0, 0.0]]]}
)


def test_haversine_is_zero_for_identical_points():
    assert haversine_km(47.3769, 8.5417, 47.3769, 8.5417) == 0.0


def test_haversine_is_symmetric():
    points = [(47.3769, 8.5417), (-33.9249, 18.4241), (64.1466, -21.9426), (0.0, 179.9), (0.0, -179.9)]
    for lat1, lng1 in points:
        for lat2, lng2 in points:
            assert haversine_km(lat1, lng1, lat2, lng2) == pytest.approx(haversine_km(lat2, lng2, lat1, lng1))


def test_haversine_known_distance_zurich_bern():
    distance = haversine_km(47.3769, 8.5417, 46.9480, 7.4474)
    assert 94 < distance < 97


def test_haversine_crosses_antimeridian_the_short_way():
    assert haversine_km(0.0, 179.5, 0.0, -179.5) < 120


def test_pixel_distance_uses_92_pixels_per_10_meters():
    assert pixel_distance_km(0, 0, 92, 0) == pytest.approx(0.01)
    assert pixel_distance_km(10, 10, 10 + 276, 10 + 368) == pytest.approx(0.05)


def test_point_in_region_counts_boundary_as_inside():
    assert point_in_region(5.0, 5.0, SQUARE) is True
    assert point_in_region(0.0, 5.0, SQUARE) is True
    assert point_in_region(20.0, 5.0, SQUARE) is False


def test_region_distance_inside_is_exactly_zero_and_correct():
    result = region_distance(3.0, 7.0, SQUARE, 5.0, 5.0)
    assert result.distance_km == 0.0
    assert result.is_correct is True


def test_region_distance_outside_falls_back_to_center():
    result = region_distance(20.0, 5.0, SQUARE, 5.0, 5.0)
    assert result.is_correct is False
    assert result.distance_km == pytest.approx(haversine_km(20.0, 5.0, 5.0, 5.0))


def test_region_accepts_feature_wrapped_geometry():
    feature = json.dumps({"type": "Feature", "properties": {}, "geometry": json.loads(SQUARE)})
    assert point_in_region(5.0, 5.0, feature) is True


def test_region_rejects_non_polygon_geometry():
    with pytest.raises(ValueError):
        point_in_region(0.0, 0.0, json.dumps({"type": "Point", "coordinates": [0.0, 0.0]}))


@pytest.mark.parametrize(
    "lat,lng",
    [(90.1, 0.0), (-91.0, 0.0), (0.0, 180.5), (0.0, -181.0), (float("nan"), 0.0)],
)
def test_validate_lat_lng_rejects_out_of_range(lat, lng):
    with pytest.raises(Invalid) as exc:
        validate_lat_lng(lat, lng)
    assert exc.value.status_code == 422


def test_validate_pixel_rejects_negative_coordinates():
    validate_pixel(0.0, 0.0)
    with pytest.raises(Invalid):
        validate_pixel(-1.0, 5.0)
