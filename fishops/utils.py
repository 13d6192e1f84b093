from __future__ import annotations

from datetime import datetime, date, timezone


def iso_today() -> str:
    return date.today().isoformat()


def iso_now() -> str:
    # Use UTC ISO timestamps for consistency.
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def safe_div(n: float, d: float) -> float:
    return float(n) / float(d) if d else 0.0


def kg_to_grams(kg: float) -> int:
    return int(round(float(kg) * 1000))


def grams_to_kg(grams: int) -> float:
    # Presentation boundary only; arithmetic stays in grams.
    return int(grams) / 1000.0
