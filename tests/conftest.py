# tests/conftest.py

import pytest
import numpy as np
import geopandas as gpd
from shapely.geometry import Point, Polygon, box
import rasterio
from rasterio.transform import Affine
from rasterio.crs import CRS

from zonalspatial.raster import Grid

@pytest.fixture
def example_grid():
    """
    The 4x4 reference grid: values 1..16 row-major from the top-left cell,
    unit cells, extent (0, 0) - (4, 4).
    """
    values = np.arange(1, 17, dtype="float64").reshape(4, 4)
    transform = Affine.translation(0, 4) * Affine.scale(1, -1)
    return Grid(values, transform, crs="EPSG:32619")

@pytest.fixture
def two_layer_grid(example_grid):
    """Two layers on the example georeference: layer 2 is layer 1 times ten."""
    values = np.stack([example_grid.values[0], example_grid.values[0] * 10])
    return Grid(values, example_grid.transform, crs=example_grid.crs, band_names={"red": 1, "nir": 2})

@pytest.fixture
def nodata_grid(example_grid):
    """Example grid with cell (0, 1) set to the -9999 sentinel."""
    values = example_grid.values.copy()
    values[0, 0, 1] = -9999
    return Grid(values, example_grid.transform, crs=example_grid.crs, nodata=-9999)

@pytest.fixture
def fractional_grid():
    """
    200x200 grid with 0.1 cells anchored at (0.3, 20.7), where edge and
    centre coordinates are not exactly representable.
    """
    values = np.arange(1, 200 * 200 + 1, dtype="float64").reshape(200, 200)
    transform = Affine.translation(0.3, 20.7) * Affine.scale(0.1, -0.1)
    return Grid(values, transform, crs="EPSG:32619")

@pytest.fixture
def mock_raster_factory(tmp_path):
    """
    Fixture: Writes small GeoTIFFs into tmp_path.

    Band b holds (row * width + col + 1) * b, so every cell value is predictable.
    """
    def _create(
        name="test.tif",
        width=10,
        height=10,
        count=1,
        crs="EPSG:32619",
        res=1.0,
        origin=(0.0, 10.0),
        dtype="float32",
        nodata=None,
        descriptions=None
    ):
        path = tmp_path / name
        transform = Affine.translation(*origin) * Affine.scale(res, -res)
        base = np.arange(1, width * height + 1, dtype="float64").reshape(height, width)
        data = np.stack([base * (b + 1) for b in range(count)]).astype(dtype)

        profile = {
            'driver': 'GTiff',
            'height': height,
            'width': width,
            'count': count,
            'dtype': dtype,
            'crs': CRS.from_user_input(crs) if crs else None,
            'transform': transform,
            'nodata': nodata
        }
        with rasterio.open(path, 'w', **profile) as dst:
            dst.write(data)
            if descriptions:
                for i, desc in enumerate(descriptions, start=1):
                    dst.set_band_description(i, desc)
        return path

    return _create

@pytest.fixture
def mock_vector_factory(tmp_path):
    """Fixture: Writes a GeoDataFrame to tmp_path and returns the path."""
    def _create(name, geometries, attributes=None, crs="EPSG:32619"):
        data = dict(attributes or {})
        data['geometry'] = geometries
        gdf = gpd.GeoDataFrame(data, crs=crs)
        path = tmp_path / name
        gdf.to_file(path)
        return path

    return _create

@pytest.fixture
def top_rows_poly():
    """Returns a simple square polygon covering the top two rows of the example grid."""
    return box(0, 2, 4, 4)

@pytest.fixture
def bowtie_poly():
    """Returns a self-intersecting 'bowtie' polygon."""
    # (0,0) -> (4,4) -> (0,4) -> (4,0) crosses itself
    return Polygon([(0, 0), (4, 4), (0, 4), (4, 0)])

@pytest.fixture
def zones_gdf(top_rows_poly):
    """Polygons over the example grid: one inside, one sliver, one far outside."""
    sliver = box(1.1, 1.1, 1.3, 1.3)
    far = box(100, 100, 102, 102)
    return gpd.GeoDataFrame(
        {'zone_id': [11, 12, 13], 'landcover': ['forest', 'wetland', 'urban'],
         'geometry': [top_rows_poly, sliver, far]},
        crs="EPSG:32619"
    )

@pytest.fixture
def points_gdf():
    """Points over the example grid, one of them outside the extent."""
    return gpd.GeoDataFrame(
        {'plot': ['a', 'b', 'c'],
         'geometry': [Point(0.5, 3.5), Point(2.5, 1.5), Point(10, 10)]},
        crs="EPSG:32619"
    )

@pytest.fixture
def source_envi_path(tmp_path):
    """
    Fixture: Creates a synthetic 3-band ENVI file (.hdr + binary) in a temp dir.
    Returns the .hdr path so the header/binary redirection is exercised.
    """
    p = tmp_path / "synthetic_raw"

    width, height = 100, 100
    transform = Affine.translation(0, 1) * Affine.scale(0.01, -0.01)
    crs = CRS.from_epsg(4326)

    data = np.zeros((3, height, width), dtype='float32')
    data[0] = np.linspace(0, 1, width * height).reshape(height, width) # Gradient
    data[1] = np.random.default_rng(0).random((height, width)) # Noise
    data[2].fill(0.5)

    profile = {
        'driver': 'ENVI',
        'height': height,
        'width': width,
        'count': 3,
        'dtype': 'float32',
        'crs': crs,
        'transform': transform
    }

    with rasterio.open(p, 'w', **profile) as dst:
        dst.write(data)

    return p.with_suffix(".hdr")
