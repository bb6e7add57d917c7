"""
==============================================================================
GOOD FIRE PIPELINE — CONFIGURATION
==============================================================================

Module-level constants used across the pipeline, plus `RunConfig`, which lets a
YAML file override the run-specific values (years, dataset ids, paths, tuning).

Constants follow Parks et al. (2019) and the LANDFIRE / LCMS / LCMAP products:
- growing-season windows (day of year) for the western US
- random forest hyper-parameters and bias-correction calibration
- severity thresholds on bias-corrected CBI
- export projection and resolution

==============================================================================
"""
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from goodfire.errors import ConfigError

# ==========================================================
# 1. Spatial reference
# ==========================================================
EXPORT_CRS = "EPSG:5070"       # CONUS Albers equal area
GEOGRAPHIC_CRS = "EPSG:4326"
SCALE = 30                     # [m] reduction / export resolution

# ==========================================================
# 2. Growing season windows (julian day, inclusive)
# ==========================================================
# Arizona and New Mexico green up earlier than the rest of the west.
NORMAL_SEASON = (152, 258)
SPECIAL_SEASON = (91, 181)

NORMAL_SEASON_STATES = [
    "Washington", "Oregon", "California", "Idaho", "Montana",
    "Nevada", "Colorado", "Wyoming", "Utah",
]
SPECIAL_SEASON_STATES = ["New Mexico", "Arizona"]
WESTERN_STATES = NORMAL_SEASON_STATES + SPECIAL_SEASON_STATES

# ==========================================================
# 3. Severity model
# ==========================================================
RF_N_ESTIMATORS = 500
RF_SEED = 123
PREDICT_CHUNK_SIZE = 250_000   # pixels per model.predict call

# ==========================================================
# 4. Severity tiers on CBI_bc
# ==========================================================
UNBURNED_MAX = 0.1
HIGH_SEVERITY_MIN = 2.25

# ==========================================================
# 5. Zonal reduction
# ==========================================================
TILE_SCALE = 16
MAX_PIXELS = 1e11
AREA_UNITS = "m^2"

# ==========================================================
# 6. Dataset ids in the image / feature store
# ==========================================================
LANDSAT_DATASETS = {
    "LC09": "LANDSAT/LC09/C02/T1_L2",
    "LC08": "LANDSAT/LC08/C02/T1_L2",
    "LE07": "LANDSAT/LE07/C02/T1_L2",
    "LT05": "LANDSAT/LT05/C02/T1_L2",
    "LT04": "LANDSAT/LT04/C02/T1_L2",
}
DEFICIT_DATASET = "CBI_predictions/def"
LAND_MASK_DATASET = "UMD/hansen/global_forest_change_2015"
LCMS_DATASET = "USFS/GTAC/LCMS/v2022-8"
LCMAP_DATASET = "LCMAP/LCPRI"
FRG_DATASET = "LANDFIRE/Fire/FRG/v1_2_0"
STATES_DATASET = "TIGER/2018/States"
LCMS_STUDY_AREA = "CONUS"


@dataclass
class RunConfig:
    """
    Run-specific settings. Every field has a default so a YAML file only needs
    the values that differ.

    Paths are resolved relative to the YAML file's directory.
    """
    start_year: int = 2010
    end_year: int = 2020
    manifest_path: str = "data/manifest.csv"
    grid_template: str = "data/grid_template.tif"
    model_path: str = "models/cbi_rf.joblib"
    fires_dataset: str = "fires"
    fire_id_column: str = "Event_ID"
    fire_year_column: str = "Fire_Year"
    summary_dataset: str = STATES_DATASET
    summary_name_column: str = "NAME"
    summary_names: list = field(default_factory=lambda: list(WESTERN_STATES))
    summarize_name: str = "states"
    output_dir: str = "output"
    severity_stack: Optional[str] = None
    rdnbr_strategy: str = "floored_sqrt"
    tile_scale: int = TILE_SCALE
    max_pixels: float = MAX_PIXELS
    chunk_size: int = PREDICT_CHUNK_SIZE
    mask_to_fires: bool = True
    viz_aoi_names: list = field(default_factory=lambda: ["California"])

    def validate(self):
        if self.start_year > self.end_year:
            raise ConfigError(
                f"start_year ({self.start_year}) is after end_year ({self.end_year})")
        if self.tile_scale < 1:
            raise ConfigError(f"tile_scale must be >= 1, got {self.tile_scale}")
        if self.chunk_size < 1:
            raise ConfigError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.rdnbr_strategy not in ("floored_sqrt", "flat_offset"):
            raise ConfigError(f"Unknown rdnbr_strategy: {self.rdnbr_strategy}")
        return self

    @property
    def years(self):
        return list(range(self.start_year, self.end_year + 1))

    def resolve(self, base_dir):
        """Make relative paths absolute against `base_dir`."""
        for name in ("manifest_path", "grid_template", "model_path", "output_dir", "severity_stack"):
            value = getattr(self, name)
            if value and not os.path.isabs(value):
                setattr(self, name, os.path.join(base_dir, value))
        return self


def load_run_config(path):
    """
    Load a RunConfig from YAML.

    Parameters
    ----------
    path : str or Path
        YAML file. Unknown keys raise ConfigError.

    Returns
    -------
    RunConfig
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping, got {type(raw).__name__}")

    known = {f.name for f in fields(RunConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {unknown}")

    cfg = RunConfig(**raw)
    return cfg.resolve(str(path.parent.resolve())).validate()
