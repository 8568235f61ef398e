"""Recipient normalization.

One normalizer per recipient kind.  Each takes a raw string and returns
the canonical stored form, or ``None`` when the value is not a usable
recipient of that kind::

    def normalize_x(raw: str) -> str | None:
        ...
"""
