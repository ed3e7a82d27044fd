"""
SecretChain - Error Classes

Every failure raised by the core is a SecretChainError subclass, so the CLI
can catch one type at the top and still tell the user which kind of problem
it was.

    IntegrityError              chain does not validate, bad genesis, empty file
    SealingError                signing/encryption/decryption problem
    ChainStructureError         caller asked for something the chain forbids
    ConcurrentModificationError file changed on disk since it was loaded
    ConfigError                 bad environment configuration
    RecoveryError               recovery kit cannot be made as asked
    ClipboardError              no usable clipboard

A secret that does not exist is NOT an error: resolve() returns None.
"""

from enum import Enum


class SecretChainError(Exception):
    """Base class for all SecretChain errors."""


class IntegrityError(SecretChainError):
    """The chain failed validation and must not be used."""


class ChainStructureError(SecretChainError):
    """Programming-contract violation (e.g. a second genesis block)."""


class ConcurrentModificationError(SecretChainError):
    """The chain file was rewritten by someone else after we loaded it."""


class ConfigError(SecretChainError):
    """Invalid configuration value."""


class RecoveryError(SecretChainError):
    """Bad share threshold or share count."""


class ClipboardError(SecretChainError):
    """The clipboard could not be read or written."""


class SealingFailure(Enum):
    """What the sealing service complained about."""

    INVALID_SIGNER = "invalid signing key"
    INVALID_RECIPIENT = "invalid encryption recipient"
    EXPIRED_KEY = "key has expired"
    REVOKED_KEY = "key has been revoked"
    BAD_SIGNATURE = "signature verification failed"
    NO_SIGNATURE = "data is not signed"
    BAD_PASSPHRASE = "bad passphrase"
    MISSING_PASSPHRASE = "no passphrase given"
    NO_SECRET_KEY = "secret key not available"
    MALFORMED = "malformed or missing ciphertext"
    UNAVAILABLE = "sealing service unavailable"


class SealingError(SecretChainError):
    """
    Sealing or unsealing failed. Never retried automatically.

    Attributes:
        kind: SealingFailure classification
        detail: Human-readable extra information (may be empty)
    """

    def __init__(self, kind: SealingFailure, detail: str = ""):
        self.kind = kind
        self.detail = detail
        message = kind.value
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
