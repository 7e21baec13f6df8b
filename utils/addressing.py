"""Address normalization helpers."""

from __future__ import annotations


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for comparisons and dedup."""
    return str(value or "").strip().lower()


def same_address(left: str | None, right: str | None) -> bool:
    a = normalize_address(left)
    return bool(a) and a == normalize_address(right)


def short_address(value: str | None) -> str:
    raw = str(value or "").strip()
    if len(raw) <= 12:
        return raw
    return f"{raw[:6]}...{raw[-4:]}"
