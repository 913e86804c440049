"""Output geometry for the render pipeline.

Resolves the output canvas for a source video track:
- Orientation detection from the track transform (exact coefficient match)
- Canvas sizing (portrait sources swap the requested width/height)
- Aspect-fill scaling and centering
- Horizontal mirroring

Transforms follow the row-vector convention used by video containers:
a point (x, y) maps to (a*x + c*y + tx, b*x + d*y + ty), and
``t1.concatenating(t2)`` applies ``t1`` first, then ``t2``.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple

from kaption.exceptions import UnsupportedOrientationError

logger = logging.getLogger(__name__)


class Size(NamedTuple):
    """Width/height pair in pixels."""

    width: float
    height: float


class Point(NamedTuple):
    """Point in pixels."""

    x: float
    y: float


@dataclass(frozen=True)
class AffineTransform:
    """2x2 linear part plus translation."""

    a: float = 1.0
    b: float = 0.0
    c: float = 0.0
    d: float = 1.0
    tx: float = 0.0
    ty: float = 0.0

    @classmethod
    def identity(cls) -> "AffineTransform":
        return cls()

    @classmethod
    def scale(cls, sx: float, sy: float) -> "AffineTransform":
        return cls(a=sx, d=sy)

    @classmethod
    def translation(cls, tx: float, ty: float) -> "AffineTransform":
        return cls(tx=tx, ty=ty)

    @classmethod
    def rotation(cls, angle: float) -> "AffineTransform":
        """Rotation by ``angle`` radians.

        Quarter turns are snapped to exact coefficients so that the result can
        be classified by :func:`detect_orientation`.
        """
        cos_a = round(math.cos(angle), 12)
        sin_a = round(math.sin(angle), 12)
        return cls(a=cos_a + 0.0, b=sin_a + 0.0, c=-sin_a + 0.0, d=cos_a + 0.0)

    @property
    def matrix(self) -> tuple[float, float, float, float]:
        return (self.a, self.b, self.c, self.d)

    def concatenating(self, other: "AffineTransform") -> "AffineTransform":
        """Return the transform that applies ``self`` and then ``other``."""
        return AffineTransform(
            a=self.a * other.a + self.b * other.c,
            b=self.a * other.b + self.b * other.d,
            c=self.c * other.a + self.d * other.c,
            d=self.c * other.b + self.d * other.d,
            tx=self.tx * other.a + self.ty * other.c + other.tx,
            ty=self.tx * other.b + self.ty * other.d + other.ty,
        )

    def translated_by(self, tx: float, ty: float) -> "AffineTransform":
        """Prepend a translation (translate first, then apply ``self``)."""
        return AffineTransform.translation(tx, ty).concatenating(self)

    def apply(self, x: float, y: float) -> Point:
        return Point(
            self.a * x + self.c * y + self.tx,
            self.b * x + self.d * y + self.ty,
        )


class Orientation(Enum):
    """Display orientation of a video track."""

    UP = "up"
    RIGHT = "right"
    LEFT = "left"
    DOWN = "down"

    @property
    def is_portrait(self) -> bool:
        return self in (Orientation.RIGHT, Orientation.LEFT)


_CANONICAL_ORIENTATIONS: dict[tuple[float, float, float, float], Orientation] = {
    (1.0, 0.0, 0.0, 1.0): Orientation.UP,
    (0.0, 1.0, -1.0, 0.0): Orientation.RIGHT,
    (0.0, -1.0, 1.0, 0.0): Orientation.LEFT,
    (-1.0, 0.0, 0.0, -1.0): Orientation.DOWN,
}


@dataclass(frozen=True)
class Canvas:
    """Resolved output canvas and the transform placing the source in it."""

    width: float
    height: float
    transform: AffineTransform
    orientation: Orientation
    mirrored: bool = False
    fill_ratio: float = 1.0

    @property
    def size(self) -> Size:
        return Size(self.width, self.height)


def detect_orientation(transform: AffineTransform) -> Orientation:
    """Classify a track transform against the four canonical rotations.

    Raises:
        UnsupportedOrientationError: If the linear part is not an exact match
    """
    orientation = _CANONICAL_ORIENTATIONS.get(transform.matrix)
    if orientation is None:
        raise UnsupportedOrientationError(transform.matrix)
    return orientation


def canvas_size_for(target_size: Size, orientation: Orientation) -> Size:
    """Canvas size for a target given as the upright request."""
    if orientation.is_portrait:
        return Size(target_size.height, target_size.width)
    return Size(target_size.width, target_size.height)


def resolve(
    natural_size: Size,
    source_transform: AffineTransform,
    target_size: Size,
    mirror: bool = False,
) -> Canvas:
    """Resolve the output canvas and the layer transform for a video track.

    Args:
        natural_size: Encoded (unrotated) size of the source track
        source_transform: Track transform as stored in the container
        target_size: Requested output size
        mirror: Flip the output horizontally

    Returns:
        Canvas with size and source-to-canvas transform

    Raises:
        UnsupportedOrientationError: If the track transform is not canonical
    """
    natural_size = Size(*natural_size)
    target_size = Size(*target_size)
    if natural_size.width <= 0 or natural_size.height <= 0:
        raise ValueError(f"Natural size must be positive: {natural_size}")

    orientation = detect_orientation(source_transform)
    canvas = canvas_size_for(target_size, orientation)

    if orientation.is_portrait:
        # Displayed axes are swapped relative to the encoded frame
        ratio = max(canvas.width / natural_size.height, canvas.height / natural_size.width)
        pos_x = canvas.width / 2 - (natural_size.height * ratio) / 2
        pos_y = canvas.height / 2 - (natural_size.width * ratio) / 2
        transform = (
            source_transform
            .concatenating(AffineTransform.scale(ratio, ratio))
            .concatenating(AffineTransform.translation(pos_x, pos_y))
        )
    else:
        ratio = max(canvas.width / natural_size.width, canvas.height / natural_size.height)
        pos_x = canvas.width / 2 - (natural_size.width * ratio) / 2
        pos_y = canvas.height / 2 - (natural_size.height * ratio) / 2
        base = source_transform
        if orientation == Orientation.DOWN:
            base = AffineTransform.rotation(math.pi)
        transform = (
            base
            .concatenating(AffineTransform.scale(ratio, ratio))
            .concatenating(AffineTransform.translation(pos_x, pos_y))
        )

    if mirror:
        if orientation != Orientation.UP:
            logger.warning(
                f"[LAYOUT] Mirror requested for {orientation.value} source; "
                f"mirror transform replaces orientation transform"
            )
        transform = AffineTransform.scale(-1.0, 1.0).translated_by(-canvas.width, 0.0)

    logger.info(
        f"[LAYOUT] natural={natural_size.width:g}x{natural_size.height:g} "
        f"orientation={orientation.value} canvas={canvas.width:g}x{canvas.height:g} "
        f"ratio={ratio:.4f} mirror={mirror}"
    )
    return Canvas(
        width=canvas.width,
        height=canvas.height,
        transform=transform,
        orientation=orientation,
        mirrored=mirror,
        fill_ratio=ratio,
    )


def convert_offset(
    offset: tuple[float, float],
    from_size: Size,
    to_size: Size,
) -> tuple[Point, float]:
    """Map an editor-space offset from center to an absolute canvas point.

    Args:
        offset: (x, y) offset from the editor frame center, y pointing up
        from_size: Editor frame size the offset was authored in
        to_size: Canvas size

    Returns:
        Tuple of (absolute center point on canvas, scale ratio)
    """
    ratio = max(to_size.width / from_size.width, to_size.height / from_size.height)
    off_x, off_y = offset
    if off_x == 0 and off_y == 0:
        return Point(to_size.width / 2, to_size.height / 2), ratio
    return Point(to_size.width / 2 + off_x * ratio, to_size.height / 2 - off_y * ratio), ratio
