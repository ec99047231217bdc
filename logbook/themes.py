"""Colour theme presets and per-profile palette resolution."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

DEFAULT_PRESET = "vibrant"

# "H S% L%" with hue 0-360 and saturation/lightness 0-100.
_HSL_RE = re.compile(
    r"^\s*(360|3[0-5]\d|[12]?\d?\d)\s+(100|[1-9]?\d)%\s+(100|[1-9]?\d)%\s*$"
)


@dataclass(frozen=True)
class ThemePreset:
    id: str
    name: str
    primary: str
    secondary: str
    accent: str

    def as_payload(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "primary": self.primary,
            "secondary": self.secondary,
            "accent": self.accent,
        }


THEME_PRESETS: Dict[str, ThemePreset] = {
    preset.id: preset
    for preset in (
        ThemePreset("vibrant", "Vibrant", "220 90% 56%", "262 83% 58%", "280 65% 60%"),
        ThemePreset("ocean", "Ocean", "199 89% 48%", "187 71% 50%", "193 82% 31%"),
        ThemePreset("sunset", "Sunset", "14 90% 53%", "340 82% 52%", "280 70% 55%"),
        ThemePreset("forest", "Forest", "142 71% 45%", "158 64% 52%", "120 50% 40%"),
        ThemePreset("royal", "Royal", "262 83% 58%", "280 65% 60%", "270 70% 50%"),
        ThemePreset("medical", "Medical", "210 100% 56%", "200 90% 48%", "215 85% 50%"),
        ThemePreset("monochrome", "Monochrome", "240 5% 34%", "240 5% 26%", "240 5% 41%"),
        ThemePreset("pastel", "Pastel", "200 80% 70%", "280 60% 75%", "160 50% 70%"),
    )
}


class ThemeError(ValueError):
    """Raised for an unknown preset or a malformed HSL string."""


def list_presets() -> List[Dict[str, str]]:
    return [preset.as_payload() for preset in THEME_PRESETS.values()]


def normalise_hsl(value: Optional[str]) -> Optional[str]:
    """Return *value* as ``"H S% L%"`` or ``None`` when blank.

    Raises :class:`ThemeError` when the string is not a valid HSL triple.
    """

    if value is None or not value.strip():
        return None
    match = _HSL_RE.match(value)
    if not match:
        raise ThemeError(f"Invalid HSL colour {value!r}")
    hue, sat, light = match.groups()
    return f"{int(hue)} {int(sat)}% {int(light)}%"


def validate_preset(preset_id: Optional[str]) -> str:
    if not preset_id:
        return DEFAULT_PRESET
    if preset_id not in THEME_PRESETS:
        raise ThemeError(f"Unknown theme preset {preset_id!r}")
    return preset_id


def resolve_palette(
    preset_id: Optional[str],
    primary: Optional[str] = None,
    secondary: Optional[str] = None,
    accent: Optional[str] = None,
) -> Dict[str, object]:
    """Combine a preset with any custom colours stored on a profile."""

    preset = THEME_PRESETS.get(preset_id or DEFAULT_PRESET, THEME_PRESETS[DEFAULT_PRESET])
    custom = {"primary": primary, "secondary": secondary, "accent": accent}
    return {
        "preset": preset.id,
        "primary": primary or preset.primary,
        "secondary": secondary or preset.secondary,
        "accent": accent or preset.accent,
        "custom": {k: v for k, v in custom.items() if v},
    }


__all__ = [
    "DEFAULT_PRESET",
    "THEME_PRESETS",
    "ThemeError",
    "ThemePreset",
    "list_presets",
    "normalise_hsl",
    "resolve_palette",
    "validate_preset",
]
