"""
Classification model for NR configuration recommendations.

Owns every numeric constant that affects the recommended configuration:
the density calibration divisor, the speed/density thresholds, and the
three output tiers.  Orchestration and HTTP concerns live elsewhere.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.

The thresholds and the density divisor are placeholder calibration
values, not validated radio-planning constants.  Bump
``ClassifierModel.version`` on every change that alters outputs.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sized, Tuple

# Residential features per density point.
DEFAULT_DENSITY_DIVISOR = 5.0


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class NetworkConfig:
    """One recommended 5G NR configuration tier."""
    key: str                     # stable identifier, e.g. "mmWave-28GHz"
    band: str                    # human-readable band, e.g. "mmWave (28 GHz)"
    subcarrier_spacing_khz: int
    cyclic_prefix: str           # "normal" | "extended"

    @property
    def label(self) -> str:
        return (
            f"{self.subcarrier_spacing_khz} kHz Subcarrier | {self.band} | "
            f"{self.cyclic_prefix.capitalize()} Cyclic Prefix"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "band": self.band,
            "subcarrier_spacing_khz": self.subcarrier_spacing_khz,
            "cyclic_prefix": self.cyclic_prefix,
            "label": self.label,
        }


@dataclass(frozen=True)
class ClassifierRule:
    """Recommends ``config`` when both inputs strictly exceed the minimums."""
    min_speed_kmh: float
    min_density: float
    config: NetworkConfig

    def matches(self, speed: float, density: float) -> bool:
        return speed > self.min_speed_kmh and density > self.min_density


@dataclass(frozen=True)
class ClassifierModel:
    """Ordered rules plus a fallback tier.

    Rules overlap (anything matching the first also matches the second),
    so evaluation order is part of the model.
    """
    version: str
    rules: Tuple[ClassifierRule, ...]
    fallback: NetworkConfig


@dataclass(frozen=True)
class DensityEstimator:
    """Turns a residential land-use feature count into a density score."""
    divisor: float = DEFAULT_DENSITY_DIVISOR

    def __post_init__(self):
        if not self.divisor > 0:
            raise ValueError(f"density divisor must be positive, got {self.divisor!r}")

    def estimate(self, residential: Sized) -> float:
        return len(residential) / self.divisor


# =============================================================================
# Pure classification
# =============================================================================

def classify(
    speed: float,
    density: float,
    model: Optional[ClassifierModel] = None,
) -> NetworkConfig:
    """Return the first matching tier for (speed km/h, density score).

    Total: any input that matches no rule (including NaN) gets the
    fallback tier.
    """
    if model is None:
        model = CLASSIFIER_MODEL
    for rule in model.rules:
        if rule.matches(speed, density):
            return rule.config
    return model.fallback


# =============================================================================
# CLASSIFIER_MODEL: current production values
# =============================================================================

MMWAVE_MIN_SPEED_KMH = 70
MMWAVE_MIN_DENSITY = 50
CBAND_MIN_SPEED_KMH = 50
CBAND_MIN_DENSITY = 30

MMWAVE_28GHZ = NetworkConfig(
    key="mmWave-28GHz",
    band="mmWave (28 GHz)",
    subcarrier_spacing_khz=120,
    cyclic_prefix="extended",
)
CBAND_3_5GHZ = NetworkConfig(
    key="Cband-3.5GHz",
    band="C-band (3.5 GHz)",
    subcarrier_spacing_khz=60,
    cyclic_prefix="normal",
)
LOWBAND_700MHZ = NetworkConfig(
    key="LowBand-700MHz",
    band="Low-band (700 MHz)",
    subcarrier_spacing_khz=30,
    cyclic_prefix="normal",
)

ALL_CONFIGS = (MMWAVE_28GHZ, CBAND_3_5GHZ, LOWBAND_700MHZ)

CLASSIFIER_MODEL = ClassifierModel(
    version="1.0",
    rules=(
        ClassifierRule(MMWAVE_MIN_SPEED_KMH, MMWAVE_MIN_DENSITY, MMWAVE_28GHZ),
        ClassifierRule(CBAND_MIN_SPEED_KMH, CBAND_MIN_DENSITY, CBAND_3_5GHZ),
    ),
    fallback=LOWBAND_700MHZ,
)
