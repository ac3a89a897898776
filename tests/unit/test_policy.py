# tests/unit/test_policy.py

import json

import pytest

from zonalspatial.zonal import OverlayPolicy, PointInterpolation, EdgeFallback

def test_default_policy():
    policy = OverlayPolicy()
    assert policy.centroid_only
    assert policy.small_polygon_fallback
    assert not policy.area_weighted
    assert not policy.normalize_weights
    assert policy.point_buffer_radius is None
    assert policy.point_interpolation == PointInterpolation.NEAREST
    assert policy.edge_fallback == EdgeFallback.NEAREST

def test_enum_fields_accept_strings():
    policy = OverlayPolicy(point_interpolation="bilinear", edge_fallback="missing")
    assert policy.point_interpolation == PointInterpolation.BILINEAR
    assert policy.edge_fallback == EdgeFallback.MISSING

def test_invalid_options():
    with pytest.raises(ValueError):
        OverlayPolicy(point_buffer_radius=-1)
    with pytest.raises(ValueError):
        OverlayPolicy(centroid_only=False, area_weighted=False)
    with pytest.raises(ValueError):
        OverlayPolicy(point_interpolation="cubic")

def test_policy_is_frozen():
    with pytest.raises(Exception):
        OverlayPolicy().area_weighted = True

def test_from_dict_rejects_unknown_keys():
    with pytest.raises(ValueError, match="Unknown overlay policy options"):
        OverlayPolicy.from_dict({"area_weigthed": True})

def test_json_round_trip(tmp_path):
    policy = OverlayPolicy(area_weighted=True, point_buffer_radius=2, point_interpolation="bilinear")
    path = tmp_path / "policy.json"
    path.write_text(json.dumps(policy.to_dict()))

    loaded = OverlayPolicy.from_json(path)
    assert loaded == policy
    assert loaded.point_buffer_radius == 2.0

def test_missing_policy_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        OverlayPolicy.from_json(tmp_path / "nope.json")

def test_replace():
    policy = OverlayPolicy().replace(normalize_weights=True)
    assert policy.normalize_weights
    assert policy.centroid_only
