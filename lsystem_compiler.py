#!/usr/bin/env python3
"""lsystem_compiler.py

Compiles an L-system (axiom + production rules) into a 2D turtle path without
materialising the expanded string, and renders it to SVG.

Key features:
- Rule text parsing with digit-suffixed symbols (F1, F2, X7 ...).
- Draw-segment estimation by symbol multiplicities, used as an admission gate.
- Bottom-up memoised path composition: one local path per rule symbol and
  iteration depth, embedded into its parents through rigid-body transforms.
- Direct stack expansion kept as a reference strategy.
- Fit-to-surface and pan/zoom presentation transforms, SVG output.
- Background renderer with a coalescing single-slot inbox.
- Preset library and a random config generator for experimentation.

Run:
  python lsystem_compiler.py render config.json output.svg
  python lsystem_compiler.py estimate config.json
  python lsystem_compiler.py presets --write-dir example/
  python lsystem_compiler.py --help
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import random
import re
import sys
import threading
import time
from collections import Counter
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, NamedTuple, cast

logger = logging.getLogger(__name__)

Point = tuple[float, float]
Symbol = str

DRAW = "F"
MOVE = "f"
TURN_LEFT = "+"
TURN_RIGHT = "-"
PUSH = "["
POP = "]"

# Heading 0 points along +x; -90 points up on a y-down surface.
REFERENCE_HEADING = -90.0

MAX_SEGMENTS = 1_000_000
DEFAULT_PADDING = 20.0
MIN_ZOOM = 0.1
MAX_ZOOM = 1e6


# -------------------------
# Errors / Validation
# -------------------------


class ConfigError(ValueError):
    pass


class MalformedRule(ConfigError):
    pass


class GenerationRefused(ConfigError):
    """A generation request was refused before any path work began."""

    def __init__(self, reason: str, estimated_segments: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.estimated_segments = estimated_segments


class InvalidIterationCount(GenerationRefused):
    pass


class PathTooLarge(GenerationRefused):
    pass


class EmptyOrUnparsableGrammar(GenerationRefused):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigError(msg)


def _as_float(x: Any, path: str) -> float:
    _require(
        isinstance(x, (int, float)) and not isinstance(x, bool),
        f"{path} must be a number",
    )
    return float(x)


def _as_int(x: Any, path: str) -> int:
    _require(
        isinstance(x, int) and not isinstance(x, bool), f"{path} must be an integer"
    )
    return int(x)


def _as_str(x: Any, path: str) -> str:
    _require(isinstance(x, str), f"{path} must be a string")
    return cast(str, x)


def _as_bool(x: Any, path: str) -> bool:
    _require(isinstance(x, bool), f"{path} must be a boolean")
    return cast(bool, x)


def _as_dict(x: Any, path: str) -> dict[str, Any]:
    _require(isinstance(x, dict), f"{path} must be an object")
    return cast(dict[str, Any], x)


# -------------------------
# Grammar
# -------------------------

# One non-digit character followed by its digit suffix is a single symbol.
_SYMBOL_RE = re.compile(r"[^\d\s]\d*")
_RULE_SEPARATOR_RE = re.compile(r"[;\n]")


def tokenize(text: str) -> tuple[Symbol, ...]:
    """Split text into symbols: ``"F1+F2X"`` -> ``("F1", "+", "F2", "X")``.

    Whitespace is ignored, as are digits with no leading symbol character.
    """
    return tuple(_SYMBOL_RE.findall(text))


@dataclass(frozen=True)
class Grammar:
    axiom: tuple[Symbol, ...]
    rules: dict[Symbol, tuple[Symbol, ...]]
    # Rule lines that were ignored while parsing; not part of equality.
    dropped: tuple[str, ...] = field(default=(), compare=False)


def parse_grammar(axiom_text: str, rules_text: str, *, strict: bool = False) -> Grammar:
    """Parse an axiom and ``LHS=RHS`` rule pairs separated by ``;`` or newlines.

    A pair without ``=``, with an empty side, or whose left-hand side is not
    exactly one symbol is dropped (and logged). With ``strict=True`` it raises
    ``MalformedRule`` instead. Text after a second ``=`` is ignored. A later
    pair for the same symbol replaces an earlier one.
    """
    rules: dict[Symbol, tuple[Symbol, ...]] = {}
    dropped: list[str] = []

    for pair in _RULE_SEPARATOR_RE.split(rules_text):
        if not pair.strip():
            continue
        fields = pair.split("=")
        key = fields[0].strip()
        value = fields[1].strip() if len(fields) > 1 else ""
        lhs = tokenize(key)
        if len(lhs) != 1 or lhs[0] != key or not value:
            if strict:
                raise MalformedRule(f"malformed rule {pair.strip()!r}")
            logger.warning("Dropping malformed rule %r", pair.strip())
            dropped.append(pair.strip())
            continue
        rules[lhs[0]] = tokenize(value)

    return Grammar(axiom=tokenize(axiom_text), rules=rules, dropped=tuple(dropped))


# -------------------------
# Size estimation
# -------------------------


def symbol_counts(grammar: Grammar, iterations: int) -> Counter[Symbol]:
    """Multiplicity of every symbol in the expansion after ``iterations`` rounds.

    Works on counts only, so the cost is O(iterations * distinct symbols)
    whatever the length of the expanded string. Stops early once no symbol
    left has a production.
    """
    expansions = {sym: Counter(repl) for sym, repl in grammar.rules.items()}
    counts: Counter[Symbol] = Counter(grammar.axiom)
    for _ in range(iterations):
        if not any(sym in expansions for sym in counts):
            break
        nxt: Counter[Symbol] = Counter()
        for sym, n in counts.items():
            expansion = expansions.get(sym)
            if expansion is None:
                nxt[sym] += n
                continue
            for child, k in expansion.items():
                nxt[child] += n * k
        counts = nxt
    return counts


def estimate_draw_segments(grammar: Grammar, iterations: int) -> int:
    counts = symbol_counts(grammar, iterations)
    return sum(n for sym, n in counts.items() if sym[0] == DRAW)


def estimate_move_segments(grammar: Grammar, iterations: int) -> int:
    counts = symbol_counts(grammar, iterations)
    return sum(n for sym, n in counts.items() if sym[0] == MOVE)


# -------------------------
# Geometry
# -------------------------


@dataclass(frozen=True)
class Pose:
    x: float
    y: float
    heading: float


ORIGIN = Pose(0.0, 0.0, REFERENCE_HEADING)


@dataclass(frozen=True)
class BoundingBox:
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @classmethod
    def around(cls, points: Iterable[Point]) -> BoundingBox:
        xs, ys = zip(*points)
        return cls(min(xs), min(ys), max(xs), max(ys))

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y


def _cross(o: Point, a: Point, b: Point) -> float:
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def convex_hull(points: Iterable[Point]) -> tuple[Point, ...]:
    """Vertices of the convex hull, counter-clockwise (monotone chain).

    Collinear points are dropped. Every extreme coordinate of the input is
    attained at a hull vertex, so the hull of a path rotates into the exact
    bounding box of the rotated path.
    """
    pts = sorted(set(points))
    if len(pts) <= 2:
        return tuple(pts)

    lower: list[Point] = []
    for p in pts:
        while len(lower) >= 2 and _cross(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)
    upper: list[Point] = []
    for p in reversed(pts):
        while len(upper) >= 2 and _cross(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)
    return tuple(lower[:-1] + upper[:-1])


@dataclass(frozen=True)
class Transform:
    """Rotation about the origin by ``rotation`` degrees, then translation."""

    rotation: float = 0.0
    dx: float = 0.0
    dy: float = 0.0
    cos: float = field(init=False, repr=False, compare=False)
    sin: float = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        rad = math.radians(self.rotation)
        object.__setattr__(self, "cos", math.cos(rad))
        object.__setattr__(self, "sin", math.sin(rad))

    @classmethod
    def from_pose(cls, pose: Pose) -> Transform:
        """Map a local frame (origin, reference heading) onto ``pose``."""
        return cls(pose.heading - REFERENCE_HEADING, pose.x, pose.y)

    def apply(self, x: float, y: float) -> Point:
        return (
            x * self.cos - y * self.sin + self.dx,
            x * self.sin + y * self.cos + self.dy,
        )

    def apply_pose(self, pose: Pose) -> Pose:
        x, y = self.apply(pose.x, pose.y)
        return Pose(x, y, pose.heading + self.rotation)

    def then(self, outer: Transform) -> Transform:
        """The transform equivalent to applying ``self`` and then ``outer``."""
        dx, dy = outer.apply(self.dx, self.dy)
        return Transform(self.rotation + outer.rotation, dx, dy)


# -------------------------
# Path buffer
# -------------------------

MOVE_TO = "M"
LINE_TO = "L"


class PathCommand(NamedTuple):
    op: str
    x: float
    y: float


class _Embedded(NamedTuple):
    buffer: PathBuffer
    transform: Transform


class PathBuffer:
    """Ordered move/line commands in the buffer's own frame.

    Child buffers are embedded by reference together with the transform that
    places them, so embedding costs O(1) however long the child is.
    ``commands()`` flattens the tree into absolute coordinates.
    """

    def __init__(self) -> None:
        self._items: list[PathCommand | _Embedded] = []
        self.line_count = 0
        self.command_count = 0

    def __len__(self) -> int:
        return self.command_count

    def move_to(self, x: float, y: float) -> None:
        self._items.append(PathCommand(MOVE_TO, x, y))
        self.command_count += 1

    def line_to(self, x: float, y: float) -> None:
        self._items.append(PathCommand(LINE_TO, x, y))
        self.command_count += 1
        self.line_count += 1

    def embed(self, child: PathBuffer, transform: Transform) -> None:
        if not child.command_count:
            return
        self._items.append(_Embedded(child, transform))
        self.command_count += child.command_count
        self.line_count += child.line_count

    def commands(self) -> Iterator[PathCommand]:
        # Frame: (item iterator, transform into this buffer's frame or None)
        stack: list[tuple[Iterator[PathCommand | _Embedded], Transform | None]]
        stack = [(iter(self._items), None)]
        while stack:
            items, transform = stack[-1]
            item = next(items, None)
            if item is None:
                stack.pop()
                continue
            if isinstance(item, _Embedded):
                inner = item.transform if transform is None else item.transform.then(transform)
                stack.append((iter(item.buffer._items), inner))
            elif transform is None:
                yield item
            else:
                x, y = transform.apply(item.x, item.y)
                yield PathCommand(item.op, x, y)

    def points(self) -> Iterator[Point]:
        for cmd in self.commands():
            yield (cmd.x, cmd.y)

    def bounds(self) -> BoundingBox | None:
        """Exact bounds of every vertex, or None for an empty buffer."""
        if not self.command_count:
            return None
        return BoundingBox.around(self.points())


# -------------------------
# Turtle
# -------------------------


class TurtleState:
    """Request-scoped turtle: pose, branch stack and running bounds."""

    def __init__(self, start: Pose = ORIGIN) -> None:
        self.x = start.x
        self.y = start.y
        self.heading = start.heading
        self.stack: list[Pose] = []
        self.min_x = self.max_x = start.x
        self.min_y = self.max_y = start.y

    @property
    def pose(self) -> Pose:
        return Pose(self.x, self.y, self.heading)

    @property
    def bounds(self) -> BoundingBox:
        return BoundingBox(self.min_x, self.min_y, self.max_x, self.max_y)

    def visit(self, x: float, y: float) -> None:
        if x < self.min_x:
            self.min_x = x
        if x > self.max_x:
            self.max_x = x
        if y < self.min_y:
            self.min_y = y
        if y > self.max_y:
            self.max_y = y

    def place(self, pose: Pose) -> None:
        self.x, self.y, self.heading = pose.x, pose.y, pose.heading

    def forward(self, length: float = 1.0) -> Point:
        rad = math.radians(self.heading)
        self.x += length * math.cos(rad)
        self.y += length * math.sin(rad)
        self.visit(self.x, self.y)
        return (self.x, self.y)

    def rotate(self, degrees: float) -> None:
        self.heading += degrees

    def push(self) -> None:
        self.stack.append(self.pose)

    def pop(self) -> bool:
        """Restore the last pushed pose; False (and no change) if none."""
        if not self.stack:
            return False
        self.place(self.stack.pop())
        return True


def _apply_terminal(
    symbol: Symbol, turtle: TurtleState, buffer: PathBuffer, angle_deg: float
) -> bool:
    """Interpret one terminal symbol by its first character.

    Returns False only for a pop that found the stack empty.
    """
    op = symbol[0]
    if op == DRAW:
        buffer.line_to(*turtle.forward())
    elif op == MOVE:
        buffer.move_to(*turtle.forward())
    elif op == TURN_LEFT:
        turtle.rotate(angle_deg)
    elif op == TURN_RIGHT:
        turtle.rotate(-angle_deg)
    elif op == PUSH:
        turtle.push()
    elif op == POP:
        if not turtle.pop():
            return False
        buffer.move_to(turtle.x, turtle.y)
    return True


@dataclass(frozen=True)
class CompiledPath:
    path: PathBuffer
    bounds: BoundingBox
    end: Pose
    # Poses pushed but never popped, outermost first.
    open_branches: tuple[Pose, ...] = ()

    @property
    def draw_segments(self) -> int:
        return self.path.line_count


# -------------------------
# Strategy A: direct stack expansion
# -------------------------


def expand_path(grammar: Grammar, iterations: int, angle_deg: float) -> CompiledPath:
    """Interpret the full expansion symbol by symbol.

    Uses an explicit stack of (symbols, remaining iterations) frames, pushed
    in reverse so that pops run left to right. Visits every symbol of the
    expansion, so it is only practical below the segment ceiling.
    """
    turtle = TurtleState()
    buffer = PathBuffer()
    buffer.move_to(turtle.x, turtle.y)

    stack: list[tuple[tuple[Symbol, ...], int]] = [(grammar.axiom, iterations)]
    while stack:
        symbols, remaining = stack.pop()
        if remaining == 0:
            for sym in symbols:
                _apply_terminal(sym, turtle, buffer, angle_deg)
            continue
        for sym in reversed(symbols):
            replacement = grammar.rules.get(sym)
            if replacement is None:
                stack.append(((sym,), 0))
            else:
                stack.append((replacement, remaining - 1))

    return CompiledPath(buffer, turtle.bounds, turtle.pose, tuple(turtle.stack))


# -------------------------
# Strategy B: memoised composition
# -------------------------


@dataclass(frozen=True)
class PathSection:
    buffer: PathBuffer
    end: Pose
    bounds: BoundingBox
    # Convex hull of every vertex, including the section's start.
    hull: tuple[Point, ...]


@dataclass(frozen=True)
class RulePath:
    """Local path of one rule symbol at one depth.

    A pop that finds the local stack empty belongs to an enclosing branch, so
    it closes the current section; every section after the first starts with
    a pop performed by whoever embeds this path. Each section is expressed in
    its own frame. ``pushes`` are poses left on the stack, in the frame of
    the last section.
    """

    sections: tuple[PathSection, ...]
    pushes: tuple[Pose, ...] = ()

    @property
    def end(self) -> Pose:
        return self.sections[-1].end


class _Tracer:
    def __init__(self, angle_deg: float, *, root: bool) -> None:
        self.angle_deg = angle_deg
        self.root = root
        self.sections: list[PathSection] = []
        self._begin_section()
        if root:
            self.buffer.move_to(self.turtle.x, self.turtle.y)

    def _begin_section(self) -> None:
        self.turtle = TurtleState()
        self.buffer = PathBuffer()
        self.vertices: list[Point] = [(self.turtle.x, self.turtle.y)]

    def _close_section(self) -> None:
        self.sections.append(
            PathSection(
                self.buffer,
                self.turtle.pose,
                self.turtle.bounds,
                convex_hull(self.vertices),
            )
        )

    def _unmatched_pop(self) -> None:
        # At the top level an empty-stack pop is a no-op.
        if not self.root:
            self._close_section()
            self._begin_section()

    def pop(self) -> None:
        if self.turtle.pop():
            self.buffer.move_to(self.turtle.x, self.turtle.y)
        else:
            self._unmatched_pop()

    def compose(self, child: RulePath) -> None:
        transform = Transform()
        for index, section in enumerate(child.sections):
            if index:
                self.pop()
            transform = Transform.from_pose(self.turtle.pose)
            self.buffer.embed(section.buffer, transform)
            for x, y in section.hull:
                point = transform.apply(x, y)
                self.turtle.visit(*point)
                self.vertices.append(point)
            self.turtle.place(transform.apply_pose(section.end))
        self.turtle.stack.extend(transform.apply_pose(p) for p in child.pushes)

    def trace(self, symbols: Iterable[Symbol], cache: dict[Symbol, RulePath]) -> None:
        for sym in symbols:
            child = cache.get(sym)
            if child is not None:
                self.compose(child)
            elif not _apply_terminal(sym, self.turtle, self.buffer, self.angle_deg):
                self._unmatched_pop()
            elif sym[0] in (DRAW, MOVE):
                self.vertices.append((self.turtle.x, self.turtle.y))

    def finish(self) -> RulePath:
        self._close_section()
        return RulePath(tuple(self.sections), tuple(self.turtle.stack))


def symbol_levels(grammar: Grammar, iterations: int) -> list[set[Symbol]]:
    """Rule symbols occurring at each depth ``0..iterations-1`` of the expansion.

    Trailing empty levels are left off.
    """
    levels: list[set[Symbol]] = []
    current = {sym for sym in grammar.axiom if sym in grammar.rules}
    for _ in range(iterations):
        if not current:
            break
        levels.append(current)
        current = {
            child
            for sym in current
            for child in grammar.rules[sym]
            if child in grammar.rules
        }
    return levels


def compile_rule_paths(
    grammar: Grammar, iterations: int, angle_deg: float
) -> dict[Symbol, RulePath]:
    """Build the depth-0 rule path cache, deepest level first.

    Each level only reads the level below it, which is dropped once the
    current level is built.
    """
    levels = symbol_levels(grammar, iterations)
    cache: dict[Symbol, RulePath] = {}
    for depth in range(len(levels) - 1, -1, -1):
        deeper = cache
        cache = {}
        for sym in sorted(levels[depth]):
            tracer = _Tracer(angle_deg, root=False)
            tracer.trace(grammar.rules[sym], deeper)
            cache[sym] = tracer.finish()
        logger.debug("depth %d: %d rule paths", depth, len(cache))
    return cache


def compose_path(grammar: Grammar, iterations: int, angle_deg: float) -> CompiledPath:
    cache = compile_rule_paths(grammar, iterations, angle_deg)
    tracer = _Tracer(angle_deg, root=True)
    tracer.trace(grammar.axiom, cache)
    result = tracer.finish()
    section = result.sections[0]
    return CompiledPath(section.buffer, section.bounds, section.end, result.pushes)


STRATEGIES: dict[str, Callable[[Grammar, int, float], CompiledPath]] = {
    "compose": compose_path,
    "expand": expand_path,
}


# -------------------------
# Generation requests
# -------------------------


@dataclass(frozen=True)
class GenerationRequest:
    axiom: str
    rules: str
    iterations: Any
    angle: float


@dataclass(frozen=True)
class GenerationResult:
    path: PathBuffer
    bounds: BoundingBox
    draw_segments: int
    elapsed_ms: float
    end: Pose
    open_branches: tuple[Pose, ...] = ()


@dataclass(frozen=True)
class Refusal:
    reason: str
    estimated_segments: int | None = None


def admit(
    request: GenerationRequest,
    *,
    max_segments: int = MAX_SEGMENTS,
    strict: bool = False,
) -> tuple[Grammar, int]:
    """Validate a request and check its size; return the grammar and estimate."""
    iterations = _iteration_count(request.iterations)

    grammar = parse_grammar(request.axiom, request.rules, strict=strict)
    if not grammar.axiom:
        raise EmptyOrUnparsableGrammar("Axiom contains no symbols")

    estimate = estimate_draw_segments(grammar, iterations)
    if estimate > max_segments:
        raise PathTooLarge(f"Curve too long: {estimate} steps", estimate)
    moves = estimate_move_segments(grammar, iterations)
    if moves > max_segments:
        raise PathTooLarge(f"Curve too long: {moves} moves", moves)
    return grammar, estimate


def _iteration_count(value: Any) -> int:
    """A positive whole number; integral floats such as 3.0 are accepted."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidIterationCount("Iteration count is invalid")
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidIterationCount("Iteration count is invalid")
        value = int(value)
    if value < 1:
        raise InvalidIterationCount("Iteration count is invalid")
    return value


def generate(
    request: GenerationRequest,
    *,
    max_segments: int = MAX_SEGMENTS,
    strategy: str = "compose",
    strict: bool = False,
) -> GenerationResult:
    compile_fn = STRATEGIES.get(strategy)
    if compile_fn is None:
        raise ConfigError(f"unknown strategy {strategy!r}")

    start = time.perf_counter()
    grammar, estimate = admit(request, max_segments=max_segments, strict=strict)
    compiled = compile_fn(grammar, _iteration_count(request.iterations), request.angle)
    elapsed_ms = (time.perf_counter() - start) * 1000.0

    logger.info(
        "Generated %d segments (estimated %d) in %.1f ms using %s",
        compiled.draw_segments,
        estimate,
        elapsed_ms,
        strategy,
    )
    return GenerationResult(
        path=compiled.path,
        bounds=compiled.bounds,
        draw_segments=compiled.draw_segments,
        elapsed_ms=elapsed_ms,
        end=compiled.end,
        open_branches=compiled.open_branches,
    )


# -------------------------
# Presentation transforms
# -------------------------


@dataclass(frozen=True)
class FitTransform:
    scale: float
    dx: float
    dy: float

    def apply(self, x: float, y: float) -> Point:
        return (x * self.scale + self.dx, y * self.scale + self.dy)


def fit_transform(
    bounds: BoundingBox,
    width: float,
    height: float,
    padding: float = DEFAULT_PADDING,
) -> FitTransform:
    """Uniform scale and centring translation placing ``bounds`` on the surface.

    A zero-width or zero-height box is treated as one unit wide/high.
    """
    extent_x = bounds.width if bounds.width > 0 else 1.0
    extent_y = bounds.height if bounds.height > 0 else 1.0
    scale = min((width - 2 * padding) / extent_x, (height - 2 * padding) / extent_y)
    dx = width / 2 - (bounds.min_x + bounds.max_x) / 2 * scale
    dy = height / 2 - (bounds.min_y + bounds.max_y) / 2 * scale
    return FitTransform(scale, dx, dy)


@dataclass
class ViewState:
    pan_x: float = 0.0
    pan_y: float = 0.0
    zoom: float = 1.0

    def reset(self) -> None:
        self.pan_x = 0.0
        self.pan_y = 0.0
        self.zoom = 1.0

    def pan(self, dx: float, dy: float) -> None:
        self.pan_x += dx
        self.pan_y += dy

    def zoom_at(self, cx: float, cy: float, factor: float) -> bool:
        """Zoom by ``factor`` keeping surface point (cx, cy) fixed.

        Returns False, leaving the view unchanged, if the new zoom would leave
        [MIN_ZOOM, MAX_ZOOM].
        """
        new_zoom = self.zoom * factor
        if not MIN_ZOOM <= new_zoom <= MAX_ZOOM:
            return False
        ox = (cx - self.pan_x) / self.zoom
        oy = (cy - self.pan_y) / self.zoom
        self.zoom = new_zoom
        self.pan_x = cx - ox * new_zoom
        self.pan_y = cy - oy * new_zoom
        return True

    def apply(self, x: float, y: float) -> Point:
        return (x * self.zoom + self.pan_x, y * self.zoom + self.pan_y)


# -------------------------
# SVG writing
# -------------------------


@dataclass(frozen=True)
class SvgStyle:
    stroke: str = "#2c3e50"
    stroke_width: float = 1.0
    stroke_linecap: str = "round"
    stroke_linejoin: str = "round"


def _ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)


def _fmt(x: float, precision: int) -> str:
    # Normalise -0.0 so it never produces "-0" in SVG output.
    if not x:
        x = 0.0
    s = f"{x:.{precision}f}"
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    if s == "-0":
        s = "0"
    return s or "0"


def path_data(
    path: PathBuffer,
    to_surface: Callable[[float, float], Point],
    precision: int,
) -> str:
    parts: list[str] = []
    for op, x, y in path.commands():
        sx, sy = to_surface(x, y)
        parts.append(f"{op}{_fmt(sx, precision)} {_fmt(sy, precision)}")
    return " ".join(parts)


def render_svg(
    path: PathBuffer,
    bounds: BoundingBox,
    *,
    width: float,
    height: float,
    padding: float = DEFAULT_PADDING,
    view: ViewState | None = None,
    precision: int = 3,
    style: SvgStyle | None = None,
    background: str | None = None,
    title: str | None = None,
) -> str:
    """Render a compiled path onto a ``width`` x ``height`` surface.

    The fit transform and then the view's pan/zoom are applied to every
    vertex, so the stroke width stays in surface units at any zoom.
    """
    style = style or SvgStyle()
    fit = fit_transform(bounds, width, height, padding)

    def to_surface(x: float, y: float) -> Point:
        p = fit.apply(x, y)
        return p if view is None else view.apply(*p)

    w = _fmt(width, precision)
    h = _fmt(height, precision)
    lines: list[str] = []
    lines.append('<?xml version="1.0" encoding="UTF-8"?>')
    lines.append(
        '<svg xmlns="http://www.w3.org/2000/svg" version="1.1" '
        f'viewBox="0 0 {w} {h}" width="{w}" height="{h}">'
    )

    if title:
        safe_title = (
            title.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        )
        lines.append(f"  <title>{safe_title}</title>")

    if background and background.lower() != "none":
        lines.append(f'  <rect x="0" y="0" width="{w}" height="{h}" fill="{background}" />')

    lines.append(
        f'  <path d="{path_data(path, to_surface, precision)}" fill="none" '
        f'stroke="{style.stroke}" stroke-width="{_fmt(style.stroke_width, precision)}" '
        f'stroke-linecap="{style.stroke_linecap}" '
        f'stroke-linejoin="{style.stroke_linejoin}" />'
    )
    lines.append("</svg>")
    return "\n".join(lines) + "\n"


def write_svg(svg: str, out_path: str) -> None:
    _ensure_parent_dir(out_path)
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(svg)


# -------------------------
# Background rendering
# -------------------------

Outcome = GenerationResult | Refusal


class BackgroundRenderer:
    """Runs generation requests on a worker thread.

    The inbox holds at most one request: submitting while a request is still
    pending replaces it, so only the most recent parameters are compiled.
    Successful results are kept in ``last_result``; refusals leave it alone.
    """

    def __init__(
        self,
        on_result: Callable[[Outcome], None] | None = None,
        *,
        max_segments: int = MAX_SEGMENTS,
        strategy: str = "compose",
        strict: bool = False,
    ) -> None:
        self._on_result = on_result
        self._max_segments = max_segments
        self._strategy = strategy
        self._strict = strict
        self._cond = threading.Condition()
        self._pending: GenerationRequest | None = None
        self._last: GenerationResult | None = None
        self._closed = False
        self._thread: threading.Thread | None = None
        self.superseded = 0

    def __enter__(self) -> BackgroundRenderer:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def last_result(self) -> GenerationResult | None:
        with self._cond:
            return self._last

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name="lsystem-renderer", daemon=True
        )
        self._thread.start()

    def close(self, timeout: float | None = None) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def submit(self, request: GenerationRequest) -> None:
        with self._cond:
            if self._pending is not None:
                self.superseded += 1
                logger.debug("Superseding pending request %r", self._pending)
            self._pending = request
            self._cond.notify()

    def process_pending(self) -> Outcome | None:
        """Compile the pending request, if any, on the calling thread."""
        with self._cond:
            request = self._pending
            self._pending = None
        if request is None:
            return None

        outcome: Outcome
        try:
            result = generate(
                request,
                max_segments=self._max_segments,
                strategy=self._strategy,
                strict=self._strict,
            )
        except GenerationRefused as e:
            logger.warning("Refused: %s", e.reason)
            outcome = Refusal(e.reason, e.estimated_segments)
        except ConfigError as e:
            logger.warning("Refused: %s", e)
            outcome = Refusal(str(e))
        else:
            with self._cond:
                self._last = result
            outcome = result

        if self._on_result is not None:
            self._on_result(outcome)
        return outcome

    def update_view(self, view: ViewState, **render: Any) -> str | None:
        """Re-render the last completed path with ``view``.

        Never waits for an in-flight compilation; returns None when no
        generation has completed yet. ``render`` is passed to ``render_svg``.
        """
        last = self.last_result
        if last is None:
            return None
        return render_svg(last.path, last.bounds, view=view, **render)

    def _run(self) -> None:
        while True:
            with self._cond:
                while self._pending is None and not self._closed:
                    self._cond.wait()
                if self._closed:
                    return
            try:
                self.process_pending()
            except Exception:
                logger.exception("Background render failed")


# -------------------------
# Presets
# -------------------------

# Examples from "The Algorithmic Beauty of Plants" (Prusinkiewicz and
# Lindenmayer) and Wikipedia.
PRESETS: dict[str, dict[str, Any]] = {
    "hilbert": {
        "name": "Hilbert Curve",
        "src": "https://en.wikipedia.org/wiki/Hilbert_curve#Representation_as_Lindenmayer_system",
        "axiom": "A",
        "rules": "A=+BF-AFA-FB+\nB=-AF+BFB+FA-",
        "iterations": 4,
        "angle": 90,
    },
    "koch_snowflake": {
        "name": "Koch Snowflake",
        "src": "https://en.wikipedia.org/wiki/Koch_snowflake#Representation_as_Lindenmayer_system",
        "axiom": "F--F--F",
        "rules": "F=F+F--F+F",
        "iterations": 4,
        "angle": 60,
    },
    "koch": {
        "name": "Koch Curve",
        "src": "https://en.wikipedia.org/wiki/Koch_snowflake#Representation_as_Lindenmayer_system",
        # Rotated so the curve lies horizontally.
        "axiom": "---F",
        "rules": "F=F++F----F++F",
        "iterations": 4,
        "angle": 30,
    },
    "sierpinski": {
        "name": "Sierpinski Triangle",
        "src": "https://en.wikipedia.org/wiki/L-system#Example_5:_Sierpinski_triangle",
        "axiom": "F1-F2-F2",
        "rules": "F1=F1-F2+F1+F2-F1\nF2=F2F2",
        "iterations": 5,
        "angle": 120,
    },
    "sierpinski_2": {
        "name": "Sierpinski Triangle 2",
        "src": "ABOP Figure 1.10b",
        "axiom": "F2",
        "rules": "F1=F2+F1+F2\nF2=F1-F2-F1",
        "iterations": 6,
        "angle": 60,
    },
    "dragon": {
        "name": "Dragon Curve",
        "src": "ABOP Figure 1.10b",
        "axiom": "F1",
        "rules": "F1=F1+F2+\nF2=-F1-F2",
        "iterations": 10,
        "angle": 90,
    },
    "bush": {
        "name": "Bush",
        "src": "ABOP Figure 1.24c",
        "axiom": "F",
        "rules": "F=FF-[-F+F+F]+[+F-F-F]",
        "iterations": 5,
        "angle": 22.5,
    },
    "plant": {
        "name": "Plant",
        "src": "https://en.wikipedia.org/wiki/L-system#Example_7:_fractal_plant",
        "axiom": "-X",
        "rules": "X=F+[[X]-X]-F[-FX]+X\nF=FF",
        "iterations": 6,
        "angle": 25,
    },
    "islands_and_lakes": {
        "name": "Islands and Lakes",
        "src": "ABOP Figure 1.8",
        "axiom": "F+F+F+F",
        "rules": "F=F+f-FF+F+FF+Ff+FF-f+FF-F-FF-Ff-FFF\nf=ffffff",
        "iterations": 3,
        "angle": 90,
    },
    "crystal": {
        "name": "Crystal",
        "src": "ABOP Figure 1.9d",
        "axiom": "F-F-F-F",
        "rules": "F=FF-F--F-F",
        "iterations": 6,
        "angle": 90,
    },
    "bracelet": {
        "name": "Bracelet",
        "src": "ABOP Figure 1.9a",
        "axiom": "F-F-F-F",
        "rules": "F=FF-F-F-F-F-F+F",
        "iterations": 5,
        "angle": 90,
    },
    "gosper": {
        "name": "Gosper Curve",
        "src": "ABOP Figure 1.11a",
        "axiom": "F1",
        "rules": "F1=F1+F2++F2-F1--F1F1-F2+\nF2=-F1+F2F2++F2+F1--F1-F2",
        "iterations": 4,
        "angle": 60,
    },
}


def find_matching_preset(grammar: Grammar, angle: float) -> str:
    """Key of the preset with an equal grammar and angle, else ``"custom"``."""
    for key, preset in PRESETS.items():
        if preset["angle"] != angle:
            continue
        if parse_grammar(preset["axiom"], preset["rules"]) == grammar:
            return key
    return "custom"


def preset_config(key: str) -> dict[str, Any]:
    _require(key in PRESETS, f"unknown preset {key!r}")
    preset = PRESETS[key]
    return {
        "name": preset["name"],
        "axiom": preset["axiom"],
        "rules": preset["rules"],
        "iterations": preset["iterations"],
        "angle": preset["angle"],
    }


# -------------------------
# Config parsing
# -------------------------


@dataclass(frozen=True)
class RenderConfig:
    name: str
    axiom: str
    rules: str
    # Range checks happen at admission, not here.
    iterations: int | float
    angle_deg: float
    max_segments: int
    strict_rules: bool

    # svg
    width: float
    height: float
    padding: float
    precision: int
    style: SvgStyle
    background: str | None

    def request(self, iterations: int | None = None) -> GenerationRequest:
        return GenerationRequest(
            axiom=self.axiom,
            rules=self.rules,
            iterations=self.iterations if iterations is None else iterations,
            angle=self.angle_deg,
        )


def _rules_text(x: Any) -> str:
    if isinstance(x, str):
        return x
    rules_obj = _as_dict(x, "rules")
    return "\n".join(
        f"{k}={_as_str(v, f'rules[{k!r}]')}" for k, v in rules_obj.items()
    )


def parse_config(obj: dict[str, Any]) -> RenderConfig:
    obj = _as_dict(obj, "root")

    name = _as_str(obj.get("name", "L-System"), "name")
    axiom = _as_str(obj.get("axiom", ""), "axiom")
    _require(len(axiom.strip()) > 0, "axiom must be non-empty")

    rules = _rules_text(obj.get("rules", ""))

    iterations = obj.get("iterations", 1)
    _require(
        isinstance(iterations, (int, float)) and not isinstance(iterations, bool),
        "iterations must be a number",
    )

    angle_deg = _as_float(obj.get("angle", 90), "angle")
    max_segments = _as_int(obj.get("max_segments", MAX_SEGMENTS), "max_segments")
    _require(max_segments > 0, "max_segments must be > 0")
    strict_rules = _as_bool(obj.get("strict_rules", False), "strict_rules")

    svg = _as_dict(obj.get("svg", {}), "svg")
    width = _as_float(svg.get("width", 800), "svg.width")
    height = _as_float(svg.get("height", 800), "svg.height")
    padding = _as_float(svg.get("padding", DEFAULT_PADDING), "svg.padding")
    _require(padding >= 0, "svg.padding must be >= 0")
    _require(
        width > 2 * padding and height > 2 * padding,
        "svg.width and svg.height must exceed twice svg.padding",
    )
    precision = _as_int(svg.get("precision", 3), "svg.precision")
    _require(0 <= precision <= 10, "svg.precision must be between 0 and 10")

    style_obj = _as_dict(svg.get("style", {}), "svg.style")
    style = SvgStyle(
        stroke=_as_str(style_obj.get("stroke", "#2c3e50"), "svg.style.stroke"),
        stroke_width=_as_float(
            style_obj.get("stroke_width", 1.0), "svg.style.stroke_width"
        ),
        stroke_linecap=_as_str(
            style_obj.get("stroke_linecap", "round"), "svg.style.stroke_linecap"
        ),
        stroke_linejoin=_as_str(
            style_obj.get("stroke_linejoin", "round"), "svg.style.stroke_linejoin"
        ),
    )

    background = svg.get("background")
    if background is not None:
        background = _as_str(background, "svg.background")

    return RenderConfig(
        name=name,
        axiom=axiom,
        rules=rules,
        iterations=iterations,
        angle_deg=angle_deg,
        max_segments=max_segments,
        strict_rules=strict_rules,
        width=width,
        height=height,
        padding=padding,
        precision=precision,
        style=style,
        background=background,
    )


def load_json(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        try:
            return cast(dict[str, Any], json.load(f))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e


def dump_json(obj: dict[str, Any], path: str) -> None:
    _ensure_parent_dir(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)
        f.write("\n")


# -------------------------
# Random config generator
# -------------------------


def _random_balanced_word(
    rng: random.Random, length: int, *, p_branch: float = 0.20
) -> str:
    """Generate a random replacement word with balanced brackets.

    Produces symbols from: F, +, -, [, ]
    """
    word: list[str] = []
    depth = 0

    for _ in range(length):
        r = rng.random()
        if r < p_branch and depth < 3:
            word.append(PUSH)
            depth += 1
            continue
        if r < p_branch * 2 and depth > 0:
            word.append(POP)
            depth -= 1
            continue

        t = rng.random()
        if t < 0.55:
            word.append(DRAW)
        elif t < 0.775:
            word.append(TURN_LEFT)
        else:
            word.append(TURN_RIGHT)

    word.extend(POP * depth)

    if DRAW not in word:
        word.append(DRAW)

    return "".join(word)


def generate_random_config(seed: int | None = None) -> dict[str, Any]:
    rng = random.Random(seed)

    angle = rng.choice([15, 20, 22.5, 25, 30, 36, 45, 60, 90])
    iterations = rng.randint(3, 6)

    if rng.random() < 0.5:
        axiom = "X"
        x_parts = []
        for _ in range(rng.randint(3, 6)):
            roll = rng.random()
            if roll < 0.45:
                x_parts.append("F")
            elif roll < 0.65:
                x_parts.append("X")
            elif roll < 0.80:
                x_parts.append("+")
            elif roll < 0.95:
                x_parts.append("-")
            else:
                x_parts.append("[X]")
        rules = f"F={_random_balanced_word(rng, rng.randint(4, 10))}\nX={''.join(x_parts)}"
    else:
        # Two interleaved draw symbols, as in the dragon and Gosper curves.
        axiom = "F1"
        words = [
            "".join(
                rng.choice(["F1", "F2"]) if ch == DRAW else ch
                for ch in _random_balanced_word(rng, rng.randint(4, 12))
            )
            for _ in range(2)
        ]
        rules = f"F1={words[0]}\nF2={words[1]}"

    # Keep the generated config under the ceiling.
    grammar = parse_grammar(axiom, rules)
    while iterations > 1 and estimate_draw_segments(grammar, iterations) > MAX_SEGMENTS:
        iterations -= 1

    cfg = {
        "name": "Random L-System",
        "axiom": axiom,
        "rules": rules,
        "iterations": iterations,
        "angle": angle,
        "svg": {"width": 800, "height": 800, "padding": 20, "precision": 3},
    }

    # Internal sanity check: generated config must always parse cleanly.
    parse_config(cfg)
    return cfg


# -------------------------
# CLI / Help
# -------------------------

HELP_EPILOG = r"""
INPUT JSON SYNTAX

  name: string (optional)
      Title written into the SVG <title>.

  axiom: string (required)
      The initial word. One non-digit character plus any digits that follow
      it is one symbol, so "F1", "F2" and "F" are three different symbols.

  rules: string or object (optional)
      Either rule text, pairs "LHS=RHS" separated by ";" or newlines, e.g.
          "F1=F1+F2+;F2=-F1-F2"
      or an object {"F1": "F1+F2+", "F2": "-F1-F2"}.
      Malformed pairs are dropped unless strict_rules is true.

  iterations: integer >= 1 (default 1)
  angle: number, degrees (default 90)
  max_segments: integer (default 1000000)
      Requests whose estimated segment count exceeds this are refused.
  strict_rules: boolean (default false)

Turtle symbols (by first character)

  F...  draw forward one unit        f...  move forward one unit
  +...  turn by +angle               -...  turn by -angle
  [     push pose                    ]     pop pose (no-op when empty)
  anything else is ignored when not rewritten.

  svg: object (optional)
    svg.width / svg.height: number (default 800)
    svg.padding: number (default 20)
    svg.precision: integer 0..10 (default 3)
    svg.background: string color (optional)
    svg.style: {stroke, stroke_width, stroke_linecap, stroke_linejoin}

Example (dragon curve):

    {
      "axiom": "F1",
      "rules": "F1=F1+F2+\nF2=-F1-F2",
      "iterations": 10,
      "angle": 90
    }
"""


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="lsystem_compiler.py",
        description="Compile L-systems to turtle paths and render them as SVG.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    p.add_argument(
        "--log-level",
        default=os.getenv("LSYSTEM_LOG_LEVEL", "WARNING"),
        help="Logging level (default: $LSYSTEM_LOG_LEVEL or WARNING).",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    pr = sub.add_parser("render", help="Render a JSON config to an SVG file.")
    pr.add_argument("config", help="Path to the input JSON config.")
    pr.add_argument("output", help="Path to write the SVG output.")
    pr.add_argument(
        "--strategy",
        choices=sorted(STRATEGIES),
        default="compose",
        help="compose: memoised rule paths (default); expand: direct expansion.",
    )
    pr.add_argument("--iterations", type=int, default=None, help="Override iterations.")
    pr.add_argument("--width", type=float, default=None, help="Override svg.width.")
    pr.add_argument("--height", type=float, default=None, help="Override svg.height.")

    pe = sub.add_parser("estimate", help="Print the estimated draw-segment count.")
    pe.add_argument("config", help="Path to the input JSON config.")
    pe.add_argument("--iterations", type=int, default=None, help="Override iterations.")

    pv = sub.add_parser("validate", help="Validate a JSON config and print a summary.")
    pv.add_argument("config", help="Path to the input JSON config.")

    pp = sub.add_parser("presets", help="List presets or write them as configs.")
    pp.add_argument(
        "--write-dir", default=None, help="Write one JSON config per preset here."
    )

    pg = sub.add_parser("random", help="Generate a random JSON config.")
    pg.add_argument("output", help="Where to write the generated JSON file.")
    pg.add_argument(
        "--seed", type=int, default=None, help="Seed for repeatable randomness."
    )

    return p


# -------------------------
# Commands
# -------------------------


def cmd_render(
    config_path: str,
    output_path: str,
    *,
    strategy: str,
    iterations: int | None,
    width: float | None,
    height: float | None,
) -> None:
    cfg = parse_config(load_json(config_path))

    result = generate(
        cfg.request(iterations),
        max_segments=cfg.max_segments,
        strategy=strategy,
        strict=cfg.strict_rules,
    )
    svg = render_svg(
        result.path,
        result.bounds,
        width=width or cfg.width,
        height=height or cfg.height,
        padding=cfg.padding,
        precision=cfg.precision,
        style=cfg.style,
        background=cfg.background,
        title=cfg.name,
    )
    write_svg(svg, output_path)
    print(f"Rendered {result.draw_segments} segments in {result.elapsed_ms:.0f} ms")


def cmd_estimate(config_path: str, iterations: int | None) -> None:
    cfg = parse_config(load_json(config_path))
    request = cfg.request(iterations)
    try:
        _, estimate = admit(
            request, max_segments=cfg.max_segments, strict=cfg.strict_rules
        )
    except PathTooLarge as e:
        print(f"estimated segments: {e.estimated_segments} (exceeds {cfg.max_segments})")
        raise
    print(f"estimated segments: {estimate} (limit {cfg.max_segments})")


def cmd_validate(config_path: str) -> None:
    cfg = parse_config(load_json(config_path))
    grammar = parse_grammar(cfg.axiom, cfg.rules, strict=cfg.strict_rules)

    print(f"name: {cfg.name}")
    print(f"axiom symbols: {len(grammar.axiom)}")
    print(f"iterations: {cfg.iterations}")
    print(f"rules: {len(grammar.rules)}")
    for line in grammar.dropped:
        print(f"dropped rule: {line!r}")
    print(f"angle: {cfg.angle_deg}")
    print(f"preset: {find_matching_preset(grammar, cfg.angle_deg)}")
    print(f"svg: {cfg.width}x{cfg.height} padding={cfg.padding}")

    _, estimate = admit(
        cfg.request(), max_segments=cfg.max_segments, strict=cfg.strict_rules
    )
    print(f"estimated segments: {estimate}")
    if not estimate:
        raise ConfigError("Config produces no drawable geometry")


def cmd_presets(write_dir: str | None) -> None:
    for key, preset in PRESETS.items():
        if write_dir is None:
            print(f"{key}: {preset['name']} ({preset['src']})")
        else:
            dump_json(preset_config(key), os.path.join(write_dir, f"{key}.json"))


def cmd_random(output_path: str, seed: int | None) -> None:
    dump_json(generate_random_config(seed), output_path)


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.WARNING)
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def main(argv: list[str] | None = None) -> int:
    ap = build_argparser()
    args = ap.parse_args(argv)
    _configure_logging(args.log_level)

    try:
        if args.cmd == "render":
            cmd_render(
                args.config,
                args.output,
                strategy=args.strategy,
                iterations=args.iterations,
                width=args.width,
                height=args.height,
            )
        elif args.cmd == "estimate":
            cmd_estimate(args.config, args.iterations)
        elif args.cmd == "validate":
            cmd_validate(args.config)
        elif args.cmd == "presets":
            cmd_presets(args.write_dir)
        elif args.cmd == "random":
            cmd_random(args.output, args.seed)
        else:
            raise AssertionError("unreachable")
    except GenerationRefused as e:
        print(f"Refused: {e.reason}", file=sys.stderr)
        return 2
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"File error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
