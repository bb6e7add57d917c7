import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import box

from goodfire.config import DEFICIT_DATASET, LANDSAT_DATASETS, LAND_MASK_DATASET
from goodfire.indices.index_utils import OLI_BANDS, QA_BAND
from goodfire.raster.raster_utils import ImageCollection, RasterImage
from goodfire.raster.store import DatasetStore
from goodfire.severity.burn_metrics import RdnbrStrategy
from goodfire.severity.severity_process import (
    SeasonRegion, SeverityContext, build_season_regions, build_severity_context,
    read_severity_stack, severity_for_event, severity_for_year, severity_for_years,
    write_severity_stack,
)

FIRE_YEAR = 2015


@pytest.fixture
def landsat(index_image):
    return ImageCollection([
        index_image("2014-07-01", {"nbr": 0.45}),
        index_image("2016-07-01", {"nbr": 0.10}),
    ])


@pytest.fixture
def ctx(grid, landsat, stub_model):
    land = np.ones(grid.shape, bool)
    land[3, 3] = False
    return SeverityContext(
        grid=grid,
        landsat=landsat,
        deficit=RasterImage({"def": np.full(grid.shape, 350.0)}, grid),
        model=stub_model,
        land_mask=land,
    )


@pytest.fixture
def regions(grid):
    return [SeasonRegion("normal_season", grid.footprint, 152, 258)]


def test_severity_for_year_end_to_end(ctx, regions):
    severity = severity_for_year(ctx, regions, FIRE_YEAR)
    assert severity.properties["year"] == FIRE_YEAR
    assert severity.band_names[:2] == ["cbi_bc", "cbi"]
    assert severity.band("dnbr")[0, 0] == 350
    assert severity.band("cbi")[0, 0] == pytest.approx(1.2)
    assert np.ma.getmaskarray(severity.band("cbi_bc"))[3, 3]
    assert np.ma.getmaskarray(severity.band("cbi_bc")).sum() == 1


def test_fire_perimeters_mask_the_year(ctx, regions):
    severity = severity_for_year(ctx, regions, FIRE_YEAR, fire_geometries=[box(0, 0, 60, 120)])
    mask = np.ma.getmaskarray(severity.band("cbi_bc"))
    assert not mask[:, :2].any()
    assert mask[:, 2:].all()


def test_missing_imagery_gives_masked_surface(ctx, regions):
    severity = severity_for_year(ctx, regions, 2005)
    assert np.ma.getmaskarray(severity.band("cbi_bc")).all()


def test_later_region_drawn_on_top(ctx, grid, index_image):
    # April scenes only match the early season
    april = ImageCollection([index_image("2014-04-15", {"nbr": 0.60}),
                             index_image("2016-04-15", {"nbr": 0.10})])
    both = ImageCollection(list(ctx.landsat) + list(april))
    ctx = SeverityContext(grid=grid, landsat=both, deficit=ctx.deficit, model=ctx.model)
    regions = [
        SeasonRegion("normal_season", grid.footprint, 152, 258),
        SeasonRegion("special_season", box(0, 0, 60, 120), 91, 181),
    ]
    severity = severity_for_year(ctx, regions, FIRE_YEAR)
    assert severity.band("dnbr")[0, 0] == 500
    assert severity.band("dnbr")[0, 3] == 350


def test_severity_for_event_uses_perimeter(ctx, regions):
    severity = severity_for_event(ctx, box(0, 60, 60, 120), FIRE_YEAR, regions)
    mask = np.ma.getmaskarray(severity.band("cbi_bc"))
    assert (~mask).sum() == 4
    assert severity.properties["year"] == FIRE_YEAR


def test_severity_for_years_with_fires(ctx, regions, grid):
    fires = gpd.GeoDataFrame({"Fire_Year": [2015, 2016]},
                             geometry=[box(0, 0, 30, 30), box(0, 0, 120, 120)], crs=grid.crs)
    out = severity_for_years(ctx, regions, [2015, 2016], fires)
    assert list(out) == [2015, 2016]
    assert (~np.ma.getmaskarray(out[2015].band("cbi_bc"))).sum() == 1


def test_build_season_regions(grid):
    states = gpd.GeoDataFrame({"NAME": ["California", "Arizona", "Texas"]},
                              geometry=[box(0, 60, 120, 120), box(0, 0, 120, 60), box(500, 500, 600, 600)],
                              crs=grid.crs)
    regions = build_season_regions(states)
    assert [r.name for r in regions] == ["normal_season", "special_season"]
    assert (regions[1].start_day, regions[1].end_day) == (91, 181)
    assert regions[0].geometry.equals(box(0, 60, 120, 120))


def test_build_severity_context_from_store(grid, stub_model):
    raw = RasterImage({**{b: np.full(grid.shape, 20000) for b in OLI_BANDS.values()},
                       QA_BAND: np.zeros(grid.shape, dtype="uint16")},
                      grid, {"time_start": "2014-07-01"})
    datamask = np.ones(grid.shape)
    datamask[0, 0] = 2      # water
    store = (DatasetStore()
             .add_to_collection(LANDSAT_DATASETS["LC08"], raw)
             .register_image(DEFICIT_DATASET, RasterImage({"def": np.zeros(grid.shape)}, grid))
             .register_image(LAND_MASK_DATASET, RasterImage({"datamask": datamask}, grid)))
    ctx = build_severity_context(store, grid, stub_model, rdnbr_strategy="flat_offset")
    assert ctx.landsat.size() == 1
    assert ctx.landsat.first().properties["sensor"] == "LC08"
    assert ctx.rdnbr_strategy is RdnbrStrategy.FLAT_OFFSET
    assert not ctx.land_mask[0, 0]
    assert ctx.land_mask.sum() == 15


def test_severity_stack_round_trip(ctx, regions, tmp_path):
    severities = {FIRE_YEAR: severity_for_year(ctx, regions, FIRE_YEAR),
                  FIRE_YEAR + 1: severity_for_year(ctx, regions, FIRE_YEAR + 1)}
    path = write_severity_stack(severities, str(tmp_path / "stack.tif"))
    back = read_severity_stack(path)
    assert list(back) == [FIRE_YEAR, FIRE_YEAR + 1]
    assert back[FIRE_YEAR].band_names == ["cbi_bc"]
    assert back[FIRE_YEAR].band("cbi_bc")[0, 0] == pytest.approx(
        float(severities[FIRE_YEAR].band("cbi_bc")[0, 0]), abs=1e-6)
    assert np.ma.getmaskarray(back[FIRE_YEAR + 1].band("cbi_bc")).all()
