import colorsys
import math
from dataclasses import dataclass, field

import numpy as np
from PIL import Image

from stream_reader import UnsupportedPaletteError

CMYK_TERMS = ("Cyn", "Mgnt", "Ylw", "Blck")
RGB_TERMS = ("Rd", "Grn", "Bl")
HSB_TERMS = ("H", "Strt", "Brgh")
COLOR_TERMS = frozenset(CMYK_TERMS + RGB_TERMS + HSB_TERMS)


def _round(value):
    # half away from zero; Python's round() is banker's rounding
    return int(math.floor(value + 0.5))


# ==============================================================================
# 1. Data model
# ==============================================================================

@dataclass
class RawGradient:
    """Stop field sets collected for one ``Grad`` container while parsing."""

    name: str = None
    color_fields: list = field(default_factory=list)
    opacity_fields: list = field(default_factory=list)

    def is_empty(self):
        return self.name is None and not self.color_fields and not self.opacity_fields


@dataclass(frozen=True)
class ColorStop:
    location: float
    rgb: tuple


@dataclass(frozen=True)
class OpacityStop:
    location: float
    opacity: float


@dataclass
class GradientDefinition:
    name: str
    color_stops: list = field(default_factory=list)
    opacity_stops: list = field(default_factory=list)


@dataclass(frozen=True)
class GradientPoint:
    location: float
    rgb: tuple
    opacity: float


@dataclass
class GradientMap:
    """A named gradient as one ordered list of color+opacity points."""

    name: str
    points: list = field(default_factory=list)

    def render(self, width=256, height=1):
        """Sample the gradient into a ``height x width x 4`` uint8 RGBA array."""
        strip = np.zeros((width, 4), dtype=np.float64)
        if self.points:
            xs = np.linspace(0.0, 1.0, width)
            locations = np.array([p.location for p in self.points])
            for channel in range(3):
                strip[:, channel] = np.interp(xs, locations, [p.rgb[channel] for p in self.points])
            strip[:, 3] = np.interp(xs, locations, [p.opacity for p in self.points]) * 255.0
        strip = np.clip(np.floor(strip + 0.5), 0, 255).astype(np.uint8)
        return np.tile(strip[np.newaxis, :, :], (height, 1, 1))

    def to_image(self, width=256, height=32):
        return Image.fromarray(self.render(width, height))

    def to_dict(self):
        return {
            'name': self.name,
            'points': [
                {'location': p.location, 'color': list(p.rgb), 'opacity': p.opacity}
                for p in self.points
            ],
        }

    def to_css(self, angle=90):
        stops = ", ".join(
            f"rgba({p.rgb[0]}, {p.rgb[1]}, {p.rgb[2]}, {p.opacity:g}) {p.location * 100:g}%"
            for p in self.points
        )
        return f"linear-gradient({angle}deg, {stops})"


# ==============================================================================
# 2. Color conversion
# ==============================================================================

def cmyk_to_rgb(cyan, magenta, yellow, black):
    """CMYK percentages (0-100) to an RGB triple, black added to each ink."""
    c, m, y, k = (v / 100.0 for v in (cyan, magenta, yellow, black))
    return tuple(_round(255 * (1.0 - min(1.0, ink + k))) for ink in (c, m, y))


def hsl_to_rgb(hue, saturation, lightness):
    """Hue in degrees, saturation and lightness as 0-1 fractions."""
    r, g, b = colorsys.hls_to_rgb((hue / 360.0) % 1.0, lightness, saturation)
    return tuple(_round(v * 255) for v in (r, g, b))


def convert_color(fields):
    palette = fields.get('palette')
    if palette == 'CMYC':
        return cmyk_to_rgb(*(_round(fields.get(k, 0.0)) for k in CMYK_TERMS))
    if palette == 'RGBC':
        return tuple(_round(fields.get(k, 0.0)) for k in RGB_TERMS)
    if palette == 'HSBC':
        return hsl_to_rgb(fields.get('H', 0.0), fields.get('Strt', 0.0) / 100.0, fields.get('Brgh', 0.0) / 100.0)
    raise UnsupportedPaletteError(palette)


# ==============================================================================
# 3. Assembly
# ==============================================================================

def normalize_locations(raw_locations):
    """Map raw locations linearly onto [0, 1], rounded to 3 places.

    When every location is equal there is no range to scale by and all
    stops collapse onto 0.0.
    """
    if not raw_locations:
        return []
    low, high = min(raw_locations), max(raw_locations)
    if high == low:
        return [0.0] * len(raw_locations)
    span = float(high - low)
    return [_round((loc - low) / span * 1000) / 1000 for loc in raw_locations]


def _values_at(location, stop_locations, values):
    """Values of the stops sitting at ``location``, else one interpolated value."""
    exact = [v for x, v in zip(stop_locations, values) if x == location]
    if exact:
        return exact
    samples = np.asarray(values, dtype=np.float64)
    if samples.ndim == 1:
        return [float(np.interp(location, stop_locations, samples))]
    return [tuple(float(np.interp(location, stop_locations, samples[:, c])) for c in range(samples.shape[1]))]


def merge_stops(color_stops, opacity_stops):
    """Merge two independently sampled stop lists into combined points.

    Every location of either list gets a point; the other list is linearly
    interpolated there and held at its nearest endpoint outside its own
    range. Several stops of one list at the same location form a hard edge
    and each keeps its own point, in source order.
    """
    if not color_stops:
        return []
    color_stops = sorted(color_stops, key=lambda s: s.location)
    opacity_stops = sorted(opacity_stops, key=lambda s: s.location) or [OpacityStop(0.0, 1.0)]

    color_x = [s.location for s in color_stops]
    opacity_x = [s.location for s in opacity_stops]
    colors = [s.rgb for s in color_stops]
    opacities = [s.opacity for s in opacity_stops]

    points = []
    for x in sorted(set(color_x) | set(opacity_x)):
        rgbs = _values_at(x, color_x, colors)
        alphas = _values_at(x, opacity_x, opacities)
        for i in range(max(len(rgbs), len(alphas))):
            rgb = rgbs[min(i, len(rgbs) - 1)]
            points.append(GradientPoint(
                location=float(x),
                rgb=tuple(_round(float(c)) for c in rgb),
                opacity=float(alphas[min(i, len(alphas) - 1)]),
            ))
    return points


class GradientAssembler:
    """Turns raw per-gradient field sets into named :class:`GradientMap` objects."""

    def definition(self, raw, name):
        color_locations = normalize_locations([f.get('Lctn', 0.0) for f in raw.color_fields])
        opacity_locations = normalize_locations([f.get('Lctn', 0.0) for f in raw.opacity_fields])
        color_stops = [
            ColorStop(loc, convert_color(f)) for loc, f in zip(color_locations, raw.color_fields)
        ]
        opacity_stops = [
            OpacityStop(loc, f.get('Opct', 1.0)) for loc, f in zip(opacity_locations, raw.opacity_fields)
        ]
        return GradientDefinition(name, color_stops, opacity_stops)

    def assemble(self, raw_gradients):
        definitions = []
        used = set()
        for idx, raw in enumerate(raw_gradients):
            base = raw.name or f"Gradient {idx + 1}"
            name, n = base, 1
            while name in used:
                n += 1
                name = f"{base} ({n})"
            used.add(name)
            definitions.append(self.definition(raw, name))
        return definitions

    def build_maps(self, definitions):
        return {
            d.name: GradientMap(d.name, merge_stops(d.color_stops, d.opacity_stops))
            for d in definitions
        }
