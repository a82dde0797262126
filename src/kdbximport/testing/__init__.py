"""Test utilities for kdbximport.

WARNING: The providers in this module are software stand-ins for hardware
tokens, for TESTING ONLY. Anyone who can read the secret can compute every
response, so a soft token protects no better than a key file.
"""

from __future__ import annotations

import hashlib
import hmac

from kdbximport.security.memory import SecureBytes


class MockProvider:
    """Challenge-response provider that answers with HMAC-SHA1 in software.

    Every challenge it answers is recorded in ``challenges``, so tests can
    check what the database asked.

    Example:
        >>> provider = MockProvider(secret=b"my-test-secret")
        >>> len(provider.challenge_response(b"challenge").data)
        20
    """

    digest = hashlib.sha1

    def __init__(self, secret: bytes) -> None:
        if not secret:
            raise ValueError("Secret must not be empty")
        self._secret = secret
        self.challenges: list[bytes] = []

    def challenge_response(self, challenge: bytes) -> SecureBytes:
        if not challenge:
            raise ValueError("Challenge must not be empty")
        self.challenges.append(challenge)
        return SecureBytes(hmac.new(self._secret, challenge, self.digest).digest())

    def __repr__(self) -> str:
        return f"{type(self).__name__}(<{len(self._secret)} byte secret>)"


class MockYubiKey(MockProvider):
    """A YubiKey HMAC-SHA1 slot, in software.

    Class attributes provide standard test secrets:
        ZERO_SECRET: 20 zero bytes
        TEST_SECRET: "12345678901234567890"
    """

    ZERO_SECRET = b"\x00" * 20
    TEST_SECRET = b"12345678901234567890"

    @classmethod
    def with_zero_secret(cls) -> MockYubiKey:
        return cls(cls.ZERO_SECRET)

    @classmethod
    def with_test_secret(cls) -> MockYubiKey:
        return cls(cls.TEST_SECRET)


__all__ = [
    "MockProvider",
    "MockYubiKey",
]
