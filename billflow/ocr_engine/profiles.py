"""
OCR quality/speed profiles.

Each profile maps to backend parameters (Tesseract page segmentation and
engine modes, upscaling) and to an accuracy weight used when passes
disagree. The embedded PDF text layer is modeled as its own profile with
the highest weight.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Union

from config import get_config


class OcrProfile(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    HIGH_ACCURACY = "high_accuracy"
    TEXT_LAYER = "text_layer"


@dataclass(frozen=True)
class ProfileSettings:
    """
    Attributes:
        profile: Profile this entry configures
        psm: Tesseract page segmentation mode
        oem: Tesseract engine mode
        scale: Upscaling applied to the crop before recognition
        weight: Accuracy weight used to resolve disagreements
    """
    profile: OcrProfile
    psm: int
    oem: int
    scale: float
    weight: float


_DEFAULTS = {
    OcrProfile.FAST: dict(psm=6, oem=1, scale=1.0, weight=0.8),
    OcrProfile.BALANCED: dict(psm=6, oem=3, scale=1.5, weight=1.0),
    OcrProfile.HIGH_ACCURACY: dict(psm=4, oem=3, scale=2.0, weight=1.2),
    OcrProfile.TEXT_LAYER: dict(psm=0, oem=0, scale=1.0, weight=1.3),
}


def profile_settings(profile: Union[OcrProfile, str]) -> ProfileSettings:
    """Settings for a profile, config values overriding the defaults."""
    profile = OcrProfile(profile)
    values = dict(_DEFAULTS[profile])
    values.update(get_config(f"ocr.profiles.{profile.value}", {}) or {})
    return ProfileSettings(
        profile=profile,
        psm=int(values['psm']),
        oem=int(values['oem']),
        scale=float(values['scale']),
        weight=float(values['weight']),
    )


def profile_weight(profile: Union[OcrProfile, str]) -> float:
    return profile_settings(profile).weight


def default_profiles() -> List[OcrProfile]:
    return [OcrProfile(p) for p in get_config("ocr.default_profiles", ["balanced"])]


def parse_profiles(values: Iterable[Union[OcrProfile, str]]) -> List[OcrProfile]:
    return [OcrProfile(v) for v in values]


def weights_by_name() -> Dict[str, float]:
    return {p.value: profile_weight(p) for p in OcrProfile}
