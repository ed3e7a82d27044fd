"""
SecretChain - Configuration

All settings come from environment variables, with defaults suitable for a
single user on one machine.

    SECRETCHAIN_FILE               Chain file path (default ~/.secretchain/chain)
    SECRETCHAIN_SEALER             "gpg" or "passphrase"
    SECRETCHAIN_GPG                GnuPG binary (default "gpg")
    SECRETCHAIN_DIFFICULTY         Required digest prefix (default "00" = 8 bits)
    SECRETCHAIN_CLIPBOARD_TIMEOUT  Seconds before the clipboard is cleared
    SECRETCHAIN_PASSPHRASE         Passphrase for the passphrase sealer (optional)
    SECRETCHAIN_LOG_LEVEL          Logging level (default INFO)
"""

import os
import string
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigError


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_CHAIN_PATH = os.path.join(os.path.expanduser("~"), ".secretchain", "chain")
DEFAULT_SEALER = "gpg"
DEFAULT_GPG_BINARY = "gpg"

# Proof-of-work target: every block digest must start with this.
# Two hex characters = 8 bits, ~256 attempts per block.
DIFFICULTY_PREFIX = "00"

CLIPBOARD_TIMEOUT = 45
LOG_LEVEL = "INFO"

HEX_LOWER = string.digits + "abcdef"
SEALERS = ("gpg", "passphrase")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def check_difficulty(prefix: str) -> str:
    """Difficulty prefix must be non-empty lowercase hex (digests are lowercase)."""
    if not prefix:
        raise ConfigError("difficulty prefix cannot be empty")
    if not all(c in HEX_LOWER for c in prefix):
        raise ConfigError(f"difficulty prefix must be lowercase hex, got {prefix!r}")
    if len(prefix) > 16:
        raise ConfigError("difficulty prefix longer than 16 characters is not minable")
    return prefix


@dataclass
class Settings:
    chain_path: str = DEFAULT_CHAIN_PATH
    sealer: str = DEFAULT_SEALER
    gpg_binary: str = DEFAULT_GPG_BINARY
    difficulty: str = DIFFICULTY_PREFIX
    clipboard_timeout: int = CLIPBOARD_TIMEOUT
    passphrase: Optional[str] = None
    log_level: str = LOG_LEVEL

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Raises:
            ConfigError: If a value is present but invalid
        """
        env = os.environ if env is None else env

        sealer = env.get("SECRETCHAIN_SEALER", DEFAULT_SEALER).strip().lower()
        if sealer not in SEALERS:
            raise ConfigError(f"SECRETCHAIN_SEALER must be one of {', '.join(SEALERS)}")

        timeout_raw = env.get("SECRETCHAIN_CLIPBOARD_TIMEOUT", str(CLIPBOARD_TIMEOUT))
        try:
            timeout = int(timeout_raw)
        except ValueError:
            raise ConfigError(f"SECRETCHAIN_CLIPBOARD_TIMEOUT is not an integer: {timeout_raw!r}")
        if timeout < 1:
            raise ConfigError("SECRETCHAIN_CLIPBOARD_TIMEOUT must be at least 1 second")

        level = env.get("SECRETCHAIN_LOG_LEVEL", LOG_LEVEL).strip().upper()
        if level not in LOG_LEVELS:
            raise ConfigError(f"SECRETCHAIN_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

        return cls(
            chain_path=os.path.expanduser(env.get("SECRETCHAIN_FILE", DEFAULT_CHAIN_PATH)),
            sealer=sealer,
            gpg_binary=env.get("SECRETCHAIN_GPG", DEFAULT_GPG_BINARY),
            difficulty=check_difficulty(env.get("SECRETCHAIN_DIFFICULTY", DIFFICULTY_PREFIX)),
            clipboard_timeout=timeout,
            passphrase=env.get("SECRETCHAIN_PASSPHRASE") or None,
            log_level=level,
        )
