"""
# store.py
# ---------------------------------------------------------
# Image / feature store consumed by the pipeline.
#
# The pipeline only needs three queries:
#   image_collection(dataset_id) -> ImageCollection
#   image(dataset_id)            -> RasterImage
#   features(dataset_id)         -> GeoDataFrame
#
# DatasetStore keeps them in memory. DatasetStore.from_manifest() fills it
# from a CSV manifest of local GeoTIFFs and vector files, reprojecting every
# raster onto the analysis grid on load.
"""

import logging
import os

import geopandas as gpd
import pandas as pd

from goodfire.raster.raster_utils import ImageCollection, RasterImage, read_geotiff

logger = logging.getLogger(__name__)

MANIFEST_COLUMNS = {"dataset", "kind", "path"}
RESERVED_COLUMNS = {"dataset", "kind", "path", "bands", "date"}


class DatasetStore:
    """In-memory registry of image collections, single images and vector layers."""

    def __init__(self):
        self._collections = {}
        self._images = {}
        self._features = {}

    def __repr__(self):
        return (f"DatasetStore(collections={sorted(self._collections)}, "
                f"images={sorted(self._images)}, features={sorted(self._features)})")

    # ---- registration ----
    def register_collection(self, dataset_id, collection):
        if not isinstance(collection, ImageCollection):
            collection = ImageCollection(collection)
        self._collections[dataset_id] = collection
        return self

    def add_to_collection(self, dataset_id, image):
        self._collections.setdefault(dataset_id, ImageCollection())
        self._collections[dataset_id].images.append(image)
        return self

    def register_image(self, dataset_id, image):
        if not isinstance(image, RasterImage):
            raise TypeError(f"{dataset_id}: expected RasterImage, got {type(image).__name__}")
        self._images[dataset_id] = image
        return self

    def register_features(self, dataset_id, gdf):
        self._features[dataset_id] = gdf
        return self

    # ---- queries ----
    def has(self, dataset_id):
        return (dataset_id in self._collections or dataset_id in self._images
                or dataset_id in self._features)

    def image_collection(self, dataset_id):
        if dataset_id not in self._collections:
            raise KeyError(f"Image collection '{dataset_id}' is not in the store")
        return ImageCollection(self._collections[dataset_id].images)

    def image(self, dataset_id):
        if dataset_id not in self._images:
            raise KeyError(f"Image '{dataset_id}' is not in the store")
        return self._images[dataset_id]

    def features(self, dataset_id):
        if dataset_id not in self._features:
            raise KeyError(f"Feature collection '{dataset_id}' is not in the store")
        return self._features[dataset_id].copy()

    # ---- manifest loading ----
    @classmethod
    def from_manifest(cls, manifest_path, grid):
        """
        Build a store from a CSV manifest.

        Parameters
        ----------
        manifest_path : str
            CSV with columns:
              dataset : dataset id (e.g. LANDSAT/LC08/C02/T1_L2)
              kind    : 'collection', 'image' or 'features'
              path    : file path, relative to the manifest directory
              bands   : optional ';'-separated band names
              date    : optional acquisition date (YYYY-MM-DD) for collection members
            Any other column (sensor, study_area, year, ...) becomes an image property.
        grid : GridSpec
            Analysis grid; rasters are reprojected onto it.

        Returns
        -------
        DatasetStore
        """
        if not os.path.exists(manifest_path):
            raise FileNotFoundError(f"Manifest not found: {manifest_path}")

        manifest = pd.read_csv(manifest_path)
        missing = MANIFEST_COLUMNS - set(manifest.columns)
        if missing:
            raise ValueError(f"Manifest {manifest_path} is missing columns: {sorted(missing)}")

        base = os.path.dirname(os.path.abspath(manifest_path))
        store = cls()
        for row in manifest.to_dict("records"):
            fp = row["path"] if os.path.isabs(row["path"]) else os.path.join(base, row["path"])
            kind = str(row["kind"]).strip().lower()

            if kind == "features":
                gdf = gpd.read_file(fp)
                if not gdf.is_valid.all():
                    gdf["geometry"] = gdf.buffer(0)
                store.register_features(row["dataset"], gdf.to_crs(grid.crs))
                continue

            band_names = None
            if isinstance(row.get("bands"), str) and row["bands"].strip():
                band_names = [b.strip() for b in row["bands"].split(";")]

            properties = {
                k: v for k, v in row.items()
                if k not in RESERVED_COLUMNS and not pd.isna(v)
            }
            if isinstance(row.get("date"), str) and row["date"].strip():
                properties["time_start"] = pd.to_datetime(row["date"]).date()
                properties.setdefault("year", properties["time_start"].year)
            if "year" in properties:
                properties["year"] = int(properties["year"])

            image = read_geotiff(fp, grid=grid, band_names=band_names, properties=properties)
            if kind == "collection":
                store.add_to_collection(row["dataset"], image)
            elif kind == "image":
                store.register_image(row["dataset"], image)
            else:
                raise ValueError(f"Unknown manifest kind '{row['kind']}' for {fp}")

        logger.info("Loaded store from %s: %s", manifest_path, store)
        return store
