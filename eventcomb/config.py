"""
Configuration management for eventcomb.

This module provides utilities for loading, validating, and managing
configuration from YAML files, plus the typed parameter records consumed
by the reconstruction pipeline.

Sections of a configuration file:
    filter:       comb filter grid and delays (fixed for a pipeline's lifetime)
    calibration:  leaky event counters and contrast threshold rebalancing
    display:      dynamic range tracking constants
    options:      runtime options that may be swapped mid-stream

Example:
    >>> from eventcomb.config import load_config, get_filter_params
    >>>
    >>> # Load from default location
    >>> config = load_config()
    >>>
    >>> # Load with overrides
    >>> config = load_config(overrides={"options": {"publish_framerate": 50.0}})
    >>> params = get_filter_params(config)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml


# =============================================================================
# EXCEPTIONS
# =============================================================================


class ConfigError(Exception):
    """Base exception for configuration errors."""
    pass


class ConfigFileNotFoundError(ConfigError):
    """Raised when a configuration file is not found."""
    pass


class ConfigValidationError(ConfigError):
    """Raised when configuration validation fails."""
    pass


# =============================================================================
# PATH UTILITIES
# =============================================================================


def get_config_dir() -> Path:
    """
    Get the configuration directory.

    The directory ships inside the package, so the defaults are found
    from a source checkout and from an installed wheel alike.

    Returns:
        Path to eventcomb/configs/ directory.
    """
    return Path(__file__).resolve().parent / "configs"


def get_default_config_path() -> Path:
    """
    Get the default configuration file path.

    Returns:
        Path to eventcomb/configs/default.yaml
    """
    return get_config_dir() / "default.yaml"


# =============================================================================
# CONFIG LOADING
# =============================================================================


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a YAML file.

    Args:
        path: Path to YAML file.

    Returns:
        Dictionary of configuration values.

    Raises:
        ConfigFileNotFoundError: If file doesn't exist.
        ConfigError: If YAML parsing fails.
    """
    path = Path(path)

    if not path.exists():
        raise ConfigFileNotFoundError(f"Config file not found: {path}")

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f)
            return config if config is not None else {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML file {path}: {e}") from e


def save_yaml(config: Dict[str, Any], path: Union[str, Path]) -> None:
    """
    Save configuration to a YAML file.

    Args:
        config: Configuration dictionary.
        path: Output path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w') as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)


def merge_configs(
    base: Dict[str, Any],
    override: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Deep merge two configuration dictionaries.

    Override values take precedence over base values.

    Args:
        base: Base configuration.
        override: Override configuration.

    Returns:
        Merged configuration.
    """
    result = base.copy()

    for key, value in override.items():
        if (
            key in result and
            isinstance(result[key], dict) and
            isinstance(value, dict)
        ):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Load configuration from YAML file with optional overrides.

    Args:
        path: Path to config file. If None, uses default config.
        overrides: Dictionary of values to override.

    Returns:
        Complete configuration dictionary.

    Example:
        >>> config = load_config()  # Load default
        >>> config = load_config("configs/davis346.yaml")
        >>> config = load_config(overrides={"filter": {"tick": 2e-5}})
    """
    if path is None:
        path = get_default_config_path()

    config = load_yaml(path)

    if overrides:
        config = merge_configs(config, overrides)

    return config


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def _require_number(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigValidationError(f"{name} must be a number, got {type(value).__name__}")


def _require_positive(value: Any, name: str) -> None:
    _require_number(value, name)
    if value <= 0:
        raise ConfigValidationError(f"{name} must be positive, got {value}")


def _require_non_negative(value: Any, name: str) -> None:
    _require_number(value, name)
    if value < 0:
        raise ConfigValidationError(f"{name} must be non-negative, got {value}")


# =============================================================================
# CONFIG DATACLASSES
# =============================================================================


@dataclass
class FilterParams:
    """
    Comb filter parameters.

    The filter runs on a uniform grid of period ``tick`` seconds and taps the
    integrated log intensity at delays ``d1``, ``d2`` and ``d1 + d2``.
    """
    tick: float = 1e-5   # Δ, minimum time resolution (s)
    d1: float = 0.01     # long delay (s)
    d2: float = 0.001    # short delay (s)
    rho1: float = 0.99   # feedback gain, distortion reduction
    rho2: float = 0.999  # feedforward gain, compensation

    def __post_init__(self):
        _require_positive(self.tick, "tick")
        _require_non_negative(self.d1, "d1")
        _require_non_negative(self.d2, "d2")
        _require_number(self.rho1, "rho1")
        _require_number(self.rho2, "rho2")

    @property
    def d12(self) -> float:
        """Longest delay d1 + d2 (s)."""
        return self.d1 + self.d2

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FilterParams":
        """Create from dictionary."""
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class CalibrationParams:
    """Adaptive contrast threshold calibration parameters."""
    retention_duration: float = 30.0        # s for leaky counters to reach 95%
    recalibration_frequency: float = 20.0   # Hz
    event_density_min: float = 5e6          # summed counter mass before rebalancing
    contrast_threshold_on: float = 0.1      # θ⁺_a, fixed by convention
    epsilon: float = 1e-10

    def __post_init__(self):
        _require_positive(self.retention_duration, "retention_duration")
        _require_positive(self.recalibration_frequency, "recalibration_frequency")
        _require_non_negative(self.event_density_min, "event_density_min")
        _require_positive(self.contrast_threshold_on, "contrast_threshold_on")
        _require_non_negative(self.epsilon, "epsilon")

    @property
    def decay_rate(self) -> float:
        """λ in 1/s, reaching 95% of a constant signal in retention_duration."""
        return -math.log(1 - 0.95) / self.retention_duration

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CalibrationParams":
        """Create from dictionary."""
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class DisplayParams:
    """Display mapping constants."""
    percentage_pixels_to_discard: float = 0.5
    fade_duration: float = 2.0                 # s for bounds to take effect
    log_intensity_offset: float = math.log(1.5)  # APS frames range over [1, 2]
    range_epsilon: float = 1e-9
    # Low-passed, clamped adaptive bounds instead of raw robust min/max.
    low_pass_adaptive_bounds: bool = False
    expected_mean: float = 0.5
    extend_range: float = 0.05

    def __post_init__(self):
        _require_number(self.percentage_pixels_to_discard, "percentage_pixels_to_discard")
        if not 0 <= self.percentage_pixels_to_discard < 100:
            raise ConfigValidationError(
                f"percentage_pixels_to_discard must be in [0, 100), "
                f"got {self.percentage_pixels_to_discard}"
            )
        _require_positive(self.fade_duration, "fade_duration")
        _require_non_negative(self.range_epsilon, "range_epsilon")

    @property
    def alpha(self) -> float:
        """Low-pass rate of the display bounds (1/s)."""
        return -math.log(1 - 0.95) / self.fade_duration

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DisplayParams":
        """Create from dictionary."""
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


# Reconfigure-style names accepted by ReconstructionOptions.from_dict
OPTION_ALIASES = {
    "Contrast_threshold_ON": "contrast_threshold_on",
    "Contrast_threshold_OFF": "contrast_threshold_off",
    "Auto_detect_contrast_thresholds": "auto_detect_contrast_thresholds",
    "Intensity_min": "intensity_min",
    "Intensity_max": "intensity_max",
    "Auto_adjust_dynamic_range": "auto_adjust_dynamic_range",
    "Spatial_filter_sigma": "spatial_filter_sigma",
    "Bilateral_filter": "bilateral_filter",
    "Color_display": "color_display",
}


@dataclass(frozen=True)
class ReconstructionOptions:
    """
    Runtime options of the reconstruction pipeline.

    Instances are immutable; the pipeline swaps the whole record when it is
    reconfigured so no event ever sees a half-updated set of values.

    Attributes:
        publish_framerate: Display rate in Hz. ``<= 0`` disables publishing.
        contrast_threshold_on: User-defined ON threshold θ⁺_u.
        contrast_threshold_off: User-defined OFF threshold θ⁻_u (negative).
        auto_detect_contrast_thresholds: Use adaptive instead of user thresholds.
        intensity_min: Lower display bound target for fixed range.
        intensity_max: Upper display bound target for fixed range.
        auto_adjust_dynamic_range: Track the robust image range instead.
        spatial_filter_sigma: Smoothing sigma. ``<= 0`` disables smoothing.
        bilateral_filter: Bilateral instead of Gaussian smoothing.
        color_display: Demosaic the Bayer pattern before smoothing.
        save_dir: Sub-directory for the PNG sequence. Empty disables saving.
        working_dir: Base directory ``save_dir`` is resolved against.
    """
    publish_framerate: float = 20.0
    contrast_threshold_on: float = 0.1
    contrast_threshold_off: float = -0.1
    auto_detect_contrast_thresholds: bool = False
    intensity_min: float = 0.0
    intensity_max: float = 1.0
    auto_adjust_dynamic_range: bool = False
    spatial_filter_sigma: float = 0.0
    bilateral_filter: bool = False
    color_display: bool = False
    save_dir: str = ""
    working_dir: str = ""

    def __post_init__(self):
        _require_number(self.publish_framerate, "publish_framerate")
        _require_number(self.contrast_threshold_on, "contrast_threshold_on")
        _require_number(self.contrast_threshold_off, "contrast_threshold_off")
        _require_number(self.intensity_min, "intensity_min")
        _require_number(self.intensity_max, "intensity_max")
        _require_number(self.spatial_filter_sigma, "spatial_filter_sigma")

    @property
    def publish_period(self) -> Optional[float]:
        """Publish period in seconds, or None when publishing is disabled."""
        if self.publish_framerate <= 0:
            return None
        return 1.0 / self.publish_framerate

    def replace(self, **changes: Any) -> "ReconstructionOptions":
        """Return a copy with ``changes`` applied (aliases accepted)."""
        merged = {f.name: getattr(self, f.name) for f in fields(self)}
        merged.update(_canonical_option_keys(changes))
        return ReconstructionOptions(**merged)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReconstructionOptions":
        """Create from dictionary. Reconfigure-style names are accepted."""
        d = _canonical_option_keys(d)
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


def _canonical_option_keys(d: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in d.items():
        key = OPTION_ALIASES.get(key, key)
        if key == "bilateral_filter":
            # 0 = Gaussian, 1 = bilateral
            value = bool(int(value))
        out[key] = value
    return out


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


def get_filter_params(config: Optional[Dict[str, Any]] = None) -> FilterParams:
    """
    Get comb filter parameters from config.

    Args:
        config: Config dict. If None, loads default.

    Returns:
        FilterParams instance.
    """
    if config is None:
        config = load_config()
    return FilterParams.from_dict(config.get("filter", {}) or {})


def get_calibration_params(config: Optional[Dict[str, Any]] = None) -> CalibrationParams:
    """
    Get calibration parameters from config.

    Args:
        config: Config dict. If None, loads default.

    Returns:
        CalibrationParams instance.
    """
    if config is None:
        config = load_config()
    return CalibrationParams.from_dict(config.get("calibration", {}) or {})


def get_display_params(config: Optional[Dict[str, Any]] = None) -> DisplayParams:
    if config is None:
        config = load_config()
    return DisplayParams.from_dict(config.get("display", {}) or {})


def get_reconstruction_options(config: Optional[Dict[str, Any]] = None) -> ReconstructionOptions:
    if config is None:
        config = load_config()
    return ReconstructionOptions.from_dict(config.get("options", {}) or {})


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    # Exceptions
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigValidationError",
    # Path utilities
    "get_default_config_path",
    "get_config_dir",
    # Loading/saving
    "load_yaml",
    "save_yaml",
    "merge_configs",
    "load_config",
    # Dataclasses
    "FilterParams",
    "CalibrationParams",
    "DisplayParams",
    "ReconstructionOptions",
    "OPTION_ALIASES",
    # Convenience
    "get_filter_params",
    "get_calibration_params",
    "get_display_params",
    "get_reconstruction_options",
]
