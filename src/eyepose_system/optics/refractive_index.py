"""
Refractive indices of ocular and optical materials.

Visible (VIS) values are at 589.29 nm (sodium line); near infra-red (NIR)
values are at 950 nm, the LED wavelength of most active IR eye cameras.
"""
from __future__ import annotations

# material -> (VIS, NIR)
_INDICES: dict[str, tuple[float, float]] = {
    "vacuum": (1.000, 1.000),
    "air": (1.000, 1.000),
    "water": (1.333, 1.347),
    "vitreous": (1.357, 1.345),
    "aqueous": (1.348, 1.337),
    # No NIR measurement of the cornea exists; the visible value is used for both.
    "cornea": (1.376, 1.376),
    "hydrogel": (1.430, 1.420),
    "optorez": (1.5089, 1.5004),
    "cr-39": (1.51, 1.50),
    "polycarbonate": (1.5852, 1.5614),
}

_DOMAINS = {
    "vis": 0, "visible": 0,
    "nir": 1, "near infrared": 1, "near infra-red": 1,
}


def refractive_index(material: str, spectral_domain: str = "nir") -> float:
    """
    Index of refraction of `material` in `spectral_domain` ('VIS' or 'NIR', any case).

    Raises:
        ValueError: for an unknown material or spectral domain.
    """
    try:
        ns = _INDICES[material.lower()]
    except KeyError:
        raise ValueError(f"No index of refraction known for material '{material}'") from None
    try:
        idx = _DOMAINS[spectral_domain.lower()]
    except KeyError:
        raise ValueError(f"No index values for spectral domain '{spectral_domain}'") from None
    return ns[idx]


def known_materials() -> list[str]:
    return sorted(_INDICES)
