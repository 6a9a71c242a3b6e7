"""Outcome draws from process-internal entropy.

Each draw hashes fresh CSPRNG bytes with a nanosecond timestamp. Nothing
supplied by a caller (address, username, stake) enters the seed, so a player
cannot steer or predict outcomes. The digest is returned for audit logging.
"""

from __future__ import annotations

import hashlib
import secrets
import time
from dataclasses import dataclass

_SCALE = 2 ** 53


@dataclass(frozen=True)
class Draw:
    value: float
    digest: str

    def hit(self, probability: float) -> bool:
        """True when the draw lands under ``probability``."""
        return self.value < probability


class SecureDraw:
    """Uniform draws over [0, 1)."""

    def draw(self) -> Draw:
        seed = secrets.token_bytes(32) + time.time_ns().to_bytes(8, "big")
        digest = hashlib.sha256(seed).digest()
        value = (int.from_bytes(digest[:8], "big") >> 11) / _SCALE
        return Draw(value=value, digest=digest.hex())
