"""
Optional inference backends for yoloseg_kit.

Backends are kept in a separate module so core functionality (parsing, NMS,
mask decoding, remapping) stays lightweight and can be used without
installing inference runtimes.
"""

from __future__ import annotations

__all__ = []
