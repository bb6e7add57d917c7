"""Exceptions raised by the good fire pipeline."""


class GoodFireError(Exception):
    """Base class for pipeline errors."""


class ConfigError(GoodFireError):
    """Raised when a run configuration value is missing or invalid."""


class MissingYearError(GoodFireError, KeyError):
    """Raised when a year has no matching layer (severity, forest or classification)."""

    def __init__(self, year, what="classification layers"):
        self.year = year
        self.what = what
        super().__init__(f"No {what} for year {year}")

    def __str__(self):
        return f"No {self.what} for year {self.year}"


class ResourceLimitError(GoodFireError):
    """Raised when a single zonal reduction would touch more pixels than allowed."""


class ReductionError(GoodFireError):
    """Raised when a zonal reduction still fails after the coarser-subdivision retry."""
