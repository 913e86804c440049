"""Interpolation utilities for overlay property curves.

Provides curve evaluation at an arbitrary time and the equivalent FFmpeg
expression, so the overlay tree and the encoder agree on every value.

Curve semantics:
    - Before the first curve begins, the layer's initial value applies
    - A curve interpolates linearly from ``from_value`` to ``to_value`` over
      [begin_time, begin_time + duration]
    - After a curve ends its ``to_value`` holds until a later curve begins

Usage:
    from kaption.utils.interpolation import evaluate_curves, curves_to_expression

    opacity = evaluate_curves(layer.curves_for("opacity"), t, initial=layer.opacity)
    expr = curves_to_expression(layer.curves_for("opacity"), initial=layer.opacity)
"""

from typing import TYPE_CHECKING, Callable, Iterable

if TYPE_CHECKING:
    from kaption.render.overlay_renderer import PropertyCurve


def linear(t: float) -> float:
    """Linear easing (no easing)."""
    return t


def interpolate(
    value: float,
    input_range: list[float],
    output_range: list[float],
    *,
    easing: Callable[[float], float] = linear,
) -> float:
    """Interpolate a value based on input/output ranges, clamped at both ends.

    Args:
        value: Current time value
        input_range: Input range [start, end] or multi-point [a, b, c, ...]
        output_range: Output range matching input_range length
        easing: Easing function (default: linear)

    Returns:
        Interpolated output value

    Examples:
        interpolate(0.5, [0, 1], [0, 10])  # -> 5.0
        interpolate(0.75, [0, 0.5, 1], [0, 1, 0])  # -> 0.5
    """
    if len(input_range) != len(output_range):
        raise ValueError("input_range and output_range must have the same length")
    if len(input_range) < 2:
        raise ValueError("input_range must have at least 2 values")

    for i in range(1, len(input_range)):
        if input_range[i] < input_range[i - 1]:
            raise ValueError("input_range must be non-decreasing")

    if value <= input_range[0]:
        return output_range[0]
    if value >= input_range[-1]:
        return output_range[-1]

    segment_idx = len(input_range) - 2
    for i in range(1, len(input_range)):
        if value <= input_range[i]:
            segment_idx = i - 1
            break

    seg_start = input_range[segment_idx]
    seg_range = input_range[segment_idx + 1] - seg_start
    t = 0.0 if seg_range == 0 else (value - seg_start) / seg_range

    out_start = output_range[segment_idx]
    out_end = output_range[segment_idx + 1]
    return out_start + (out_end - out_start) * easing(t)


def evaluate_curves(
    curves: Iterable["PropertyCurve"],
    time: float,
    *,
    initial: float,
) -> float:
    """Value of a property at ``time`` given its curves and initial value."""
    value = initial
    for curve in sorted(curves, key=lambda c: c.begin_time):
        if time < curve.begin_time:
            break
        if curve.duration <= 0:
            value = curve.to_value
            continue
        value = interpolate(
            time,
            [curve.begin_time, curve.begin_time + curve.duration],
            [curve.from_value, curve.to_value],
        )
    return value


def format_number(value: float) -> str:
    """Compact decimal for FFmpeg expressions (at most 4 places)."""
    return f"{value:.4f}".rstrip("0").rstrip(".") or "0"


def curves_to_expression(
    curves: Iterable["PropertyCurve"],
    *,
    initial: float,
    time_var: str = "t",
) -> str:
    """Build an FFmpeg expression evaluating the curves over ``time_var``.

    Each later curve wraps the expression built so far, so the result mirrors
    :func:`evaluate_curves` exactly.

    Example:
        >>> curves_to_expression([PropertyCurve("opacity", 0, 1, 2.0, 0.05)], initial=0)
        'if(lt(t,2),0,if(lt(t,2.05),0+(1)*(t-2)/0.05,1))'
    """
    expr = format_number(initial)
    for curve in sorted(curves, key=lambda c: c.begin_time):
        begin = format_number(curve.begin_time)
        to_value = format_number(curve.to_value)
        if curve.duration <= 0:
            expr = f"if(lt({time_var},{begin}),{expr},{to_value})"
            continue
        end = format_number(curve.begin_time + curve.duration)
        delta = format_number(curve.to_value - curve.from_value)
        ramp = (
            f"{format_number(curve.from_value)}+({delta})*({time_var}-{begin})/{format_number(curve.duration)}"
        )
        expr = f"if(lt({time_var},{begin}),{expr},if(lt({time_var},{end}),{ramp},{to_value}))"
    return expr
