"""
Convoy CLI - output helpers built on Click.

    success(), error(), warning(), info(), dim()
    section()   - section divider with title
    kv()        - aligned key-value pair
    badge()     - inline status badge for unit states
    bullet()    - bulleted list item
    table()     - minimal aligned table

click.style handles NO_COLOR / TERM=dumb.
"""

from __future__ import annotations

import shutil
from typing import Optional, Sequence

import click

_TERM_WIDTH: Optional[int] = None

_L_H = "─"        # ─
_BULLET = "•"     # •
_CHECK = "✓"      # ✓
_CROSS = "✗"      # ✗
_CIRCLE = "○"     # ○
_DOT = "·"        # ·


def _tw() -> int:
    """Terminal width, cached and clamped."""
    global _TERM_WIDTH
    if _TERM_WIDTH is None:
        _TERM_WIDTH = max(40, min(shutil.get_terminal_size((80, 24)).columns, 120))
    return _TERM_WIDTH


def success(message: str) -> None:
    click.echo(click.style(message, fg="green"))


def error(message: str) -> None:
    click.echo(click.style(message, fg="red"), err=True)


def warning(message: str) -> None:
    click.echo(click.style(message, fg="yellow"))


def info(message: str) -> None:
    click.echo(click.style(message, fg="cyan"))


def dim(message: str) -> None:
    click.echo(click.style(message, dim=True))


def section(title: str, *, width: Optional[int] = None, fg: str = "cyan") -> None:
    """
    Print a section header with a ruled line.

        ── Start order ─────────────────────────────
    """
    w = width or _tw()
    dashes = max(4, w - len(title) - 6)
    click.echo(click.style(f"{_L_H}{_L_H} {title} {_L_H * dashes}", fg=fg, bold=True))


def kv(key: str, value: str, *, key_width: int = 16, indent: int = 2) -> None:
    """
    Print an aligned key-value pair.

        Units:          7
        Store:          ./deployments
    """
    padding = " " * max(1, key_width - len(key) - 1)
    click.echo(f"{' ' * indent}{key}:{padding}{click.style(str(value), fg='cyan')}")


_STATE_STYLES = {
    "succeeded": ("green", _CHECK),
    "running": ("green", _DOT),
    "failed": ("red", _CROSS),
    "stopped": ("yellow", _CIRCLE),
    "waiting": ("cyan", _CIRCLE),
    "pending": ("white", _CIRCLE),
}


def badge(state: str) -> str:
    """Inline badge for a unit state (not echoed)."""
    fg, icon = _STATE_STYLES.get(state, ("white", _DOT))
    return click.style(f"[{icon} {state}]", fg=fg)


def bullet(text: str, *, indent: int = 2, fg: str = "white") -> None:
    click.echo(f"{' ' * indent}{click.style(_BULLET, fg='cyan')} {click.style(text, fg=fg)}")


def table(
    headers: Sequence[str],
    rows: Sequence[Sequence[str]],
    *,
    indent: int = 2,
    header_fg: str = "cyan",
) -> None:
    """
    Print a minimal aligned table.

        Unit                State       Attempts
        ─────────────────── ─────────── ────────
        starknet            running     1
    """
    prefix = " " * indent
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row[: len(headers)]):
            widths[i] = max(widths[i], len(str(cell)))
    widths = [w + 2 for w in widths]

    click.echo(prefix + click.style("".join(h.ljust(widths[i]) for i, h in enumerate(headers)), fg=header_fg, bold=True))
    click.echo(prefix + click.style("".join(_L_H * w for w in widths), dim=True))
    for row in rows:
        click.echo(prefix + "".join(str(cell).ljust(widths[i]) for i, cell in enumerate(row)))
