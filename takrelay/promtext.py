"""Minimal parser for the Prometheus text exposition format."""

from __future__ import annotations


def _parse_float(text: str) -> float | None:
    if "_" in text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def parse_text(body: str) -> dict[str, float]:
    """Map each metric name to the last numeric value seen for it.

    Comment lines (``# HELP`` / ``# TYPE``) and blank lines are skipped.
    A ``{...}`` label block is stripped from the sample line; a line with
    an unterminated label block is ignored.  Composite types collapse to
    whichever of their lines came last.
    """
    out: dict[str, float] = {}
    for raw in body.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        brace = line.find("{")
        if brace != -1:
            end = line.find("}", brace)
            if end == -1:
                continue
            line = line[:brace] + line[end + 1 :]
        parts = line.split()
        if len(parts) < 2:
            continue
        value = _parse_float(parts[1])
        if value is None:
            continue
        out[parts[0]] = value
    return out