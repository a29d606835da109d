from __future__ import annotations

from dataclasses import dataclass

DESIGN_W = 800
DESIGN_H = 1120

# A4 in PDF points.
A4_WIDTH_PT = 595.28
A4_HEIGHT_PT = 841.89


@dataclass(frozen=True)
class CoordinateMapper:
    """Maps design-space units (800x1120 canvas) onto an output page."""

    width: float
    height: float

    @property
    def factor_x(self) -> float:
        return self.width / DESIGN_W

    @property
    def factor_y(self) -> float:
        return self.height / DESIGN_H

    @property
    def factor_radial(self) -> float:
        return (self.factor_x + self.factor_y) / 2

    def scale_x(self, value: float) -> float:
        return value * self.factor_x

    def scale_y(self, value: float) -> float:
        return value * self.factor_y

    def scale_radial(self, value: float) -> float:
        return value * self.factor_radial

    def rect(self, x: float, y: float, width: float, height: float) -> tuple[float, float, float, float]:
        return (
            self.scale_x(x),
            self.scale_y(y),
            self.scale_x(width),
            self.scale_y(height),
        )


def design_mapper() -> CoordinateMapper:
    return CoordinateMapper(DESIGN_W, DESIGN_H)


def a4_mapper() -> CoordinateMapper:
    return CoordinateMapper(A4_WIDTH_PT, A4_HEIGHT_PT)
