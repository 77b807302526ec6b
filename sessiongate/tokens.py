from __future__ import annotations

import hashlib
import secrets
from abc import ABC, abstractmethod


class TokenGenerator(ABC):
    @abstractmethod
    def generate(self, size: int) -> bytes:
        raise NotImplementedError


class TokenHasher(ABC):
    @abstractmethod
    def hash(self, data: bytes) -> str:
        raise NotImplementedError


class DefaultTokenGenerator(TokenGenerator):
    def generate(self, size: int) -> bytes:
        return secrets.token_bytes(size)


class DefaultTokenHasher(TokenHasher):
    """SHA-256 hex digest; 64 url-safe characters usable as a store key."""

    def hash(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()


def new_token_id(generator: TokenGenerator, hasher: TokenHasher, size: int) -> str:
    return hasher.hash(generator.generate(size))
