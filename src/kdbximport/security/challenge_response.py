"""Challenge-response protocol for hardware-token key factors.

A hardware token (YubiKey HMAC-SHA1 slot, FIDO2 hmac-secret, ...) never
hands out its secret. It answers a challenge instead, and the answer is what
enters the composite key. The challenge is the database's KDF salt, so the
same token yields a different contribution for every database.

Anything with a matching ``challenge_response`` method satisfies the
protocol; kdbximport.testing provides software stand-ins for tests.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .memory import SecureBytes


@runtime_checkable
class ChallengeResponseProvider(Protocol):
    """Protocol for challenge-response authentication providers."""

    def challenge_response(self, challenge: bytes) -> SecureBytes:
        """Compute the response for the given challenge.

        Args:
            challenge: Challenge bytes (the 32-byte KDF salt)

        Returns:
            Response bytes wrapped in SecureBytes
        """
        ...
