"""Configuration module for the watershed pipeline.

Centralizes tunable constants and the per-run configuration object.

Stream-initiation threshold and pour-point snap distance are deliberately
absent: they are empirical, study-area specific choices and must be passed
explicitly on every run.
"""
import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

# Depression resolution
DEFAULT_RESOLVE_METHOD = "breach"
DEFAULT_MAX_BREACH_DEPTH = 50.0  # elevation units per cell
DEFAULT_MAX_BREACH_LENGTH = 100  # cells
DEFAULT_EPSILON = 1e-4  # elevation units per cell of imposed gradient
DEFAULT_MAX_ITERATIONS = 10

# Terrain indices
# tan(slope) is clamped to this value on flats before dividing in the
# wetness index. Smaller values push flat-cell TWI higher.
TAN_SLOPE_EPSILON = 1e-3

# Logging
DEFAULT_LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s: %(message)s"

RESOLVE_METHODS = ("breach", "fill")


@dataclass
class WatershedConfig:
    """Tunable parameters for a pipeline run."""

    resolve_method: str = DEFAULT_RESOLVE_METHOD
    """'breach' (breach then fill residual depressions) or 'fill' (fill only)."""

    max_breach_depth: float = DEFAULT_MAX_BREACH_DEPTH
    """Maximum elevation removed from any single cell on a breach path, beyond the
    ``epsilon`` per step that keeps the carved profile falling."""

    max_breach_length: int = DEFAULT_MAX_BREACH_LENGTH
    """Maximum breach path length in cells."""

    epsilon: float = DEFAULT_EPSILON
    """Gradient imposed on breach paths and filled areas."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    """Breach/fill passes allowed before UnresolvableDepression is raised."""

    tan_slope_epsilon: float = TAN_SLOPE_EPSILON
    """Lower clamp on tan(slope) in the wetness index."""

    require_conditioned: bool = True
    """Fail routing if interior cells have no downslope neighbour."""

    def __post_init__(self):
        if self.resolve_method not in RESOLVE_METHODS:
            raise ValueError(
                f"resolve_method must be one of {RESOLVE_METHODS}, got {self.resolve_method!r}"
            )
        if self.max_breach_depth < 0:
            raise ValueError("max_breach_depth must be >= 0")
        if self.max_breach_length < 1:
            raise ValueError("max_breach_length must be >= 1")
        if self.epsilon <= 0:
            raise ValueError("epsilon must be > 0")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.tan_slope_epsilon <= 0:
            raise ValueError("tan_slope_epsilon must be > 0")

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "WatershedConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**values)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "WatershedConfig":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def configure_logging(
    level: Union[str, int] = DEFAULT_LOG_LEVEL, log_file: Optional[Path] = None
) -> None:
    """Send package logs to the console and, optionally, a file."""
    handlers = [logging.StreamHandler()]
    if log_file is not None:
        file_handler = logging.FileHandler(log_file, mode="w")
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
