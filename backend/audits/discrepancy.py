"""
Discrepancy classification — submitted vs collected garment counts.

Pure functions, no I/O. The explanation text is deterministic for a given
(submitted, collected) pair so audit reports can be regenerated and compared.

Explanation rules, evaluated in order:
  1. Nothing collected of either type while something was submitted
     → "No garments collected at all" (nothing else is reported)
  2. Otherwise, for each mismatched garment type (dark, then light):
     none collected / exceeds submitted / fewer than submitted
"""

from __future__ import annotations

from dataclasses import dataclass

from core.errors import ValidationError

NO_GARMENTS_COLLECTED = "No garments collected at all"


@dataclass(frozen=True)
class GarmentCounts:
    dark: int
    light: int

    @property
    def total(self) -> int:
        return self.dark + self.light


@dataclass(frozen=True)
class DiscrepancyResult:
    submitted: GarmentCounts
    collected: GarmentCounts
    dark_delta: int
    light_delta: int
    explanation: str | None

    @property
    def has_discrepancy(self) -> bool:
        return self.dark_delta != 0 or self.light_delta != 0


def validate_counts(dark: int, light: int, label: str = "collected") -> GarmentCounts:
    for name, value in (("dark", dark), ("light", light)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{label} {name} garment count must be an integer", details={"value": value})
        if value < 0:
            raise ValidationError(f"{label} {name} garment count cannot be negative", details={"value": value})
    return GarmentCounts(dark=dark, light=light)


def _describe_type(label: str, submitted: int, collected: int) -> str | None:
    if collected == submitted:
        return None
    if collected == 0:
        return f"{label} garments: none collected (submitted {submitted})"
    if collected > submitted:
        return f"{label} garments: collected {collected} exceeds submitted {submitted}"
    return f"{label} garments: collected {collected} fewer than submitted {submitted}"


def explain(submitted: GarmentCounts, collected: GarmentCounts) -> str | None:
    """Human-readable explanation, or None when the counts match."""
    if submitted == collected:
        return None
    if collected.total == 0 and submitted.total > 0:
        return NO_GARMENTS_COLLECTED

    parts = [
        part
        for part in (
            _describe_type("Dark", submitted.dark, collected.dark),
            _describe_type("Light", submitted.light, collected.light),
        )
        if part
    ]
    return "; ".join(parts)


def classify(submitted: GarmentCounts, collected: GarmentCounts) -> DiscrepancyResult:
    return DiscrepancyResult(
        submitted=submitted,
        collected=collected,
        dark_delta=collected.dark - submitted.dark,
        light_delta=collected.light - submitted.light,
        explanation=explain(submitted, collected),
    )


def compose_notes(explanation: str | None, auditor_notes: str | None) -> str | None:
    """Generated explanation first; the auditor's note is appended, never substituted."""
    note = (auditor_notes or "").strip()
    if explanation and note:
        return f"{explanation} | Auditor notes: {note}"
    return explanation or note or None
