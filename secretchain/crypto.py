"""
SecretChain - Cryptography Module

Everything that touches a hash, a random number or a cipher lives here:
- SHA-256 digests for the hash chain
- Random nonces for proof-of-work mining
- scrypt + AES-256-GCM for the passphrase sealer
- Password generation for `keep --generate`

The chain itself only ever needs digest(), NULL_DIGEST and new_nonce().
Encryption is used solely by the passphrase sealer; the GnuPG sealer hands
the whole job to the gpg binary.
"""

import os
import hmac
import hashlib
import json
import string
import secrets
from typing import Iterable, Optional, Tuple, Union

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


# =============================================================================
# Configuration
# =============================================================================

VAULT_KEY_SIZE = 32      # 256-bit key
NONCE_SIZE = 12          # 96-bit nonce for AES-GCM
SALT_SIZE = 16
CHAIN_NONCE_SIZE = 16    # 16 random bytes -> 32 hex characters

# scrypt parameters (tuned for ~250ms on modern CPU)
# N = CPU/memory cost (power of 2), r = block size, p = parallelization
SCRYPT_N = 2**17         # 131072 - uses ~128 MB RAM with r=8
SCRYPT_R = 8
SCRYPT_P = 1


# =============================================================================
# Digests
# =============================================================================

def digest(data: Union[str, bytes]) -> str:
    """
    SHA-256 of data as 64 lowercase hex characters.

    Strings are UTF-8 encoded first, so digest("abc") == digest(b"abc").
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


# Conventional "previous digest" of the genesis block
NULL_DIGEST = digest(b"")


def new_nonce() -> str:
    """Fresh random mining nonce (fixed length hex)."""
    return os.urandom(CHAIN_NONCE_SIZE).hex()


# =============================================================================
# Key Derivation
# =============================================================================

def derive_vault_key(
    passphrase: str,
    salt: bytes,
    n: int = SCRYPT_N,
    r: int = SCRYPT_R,
    p: int = SCRYPT_P
) -> bytes:
    """
    Derive the sealing key from a passphrase using scrypt.

    Why scrypt?
    - Memory-hard: Requires lots of RAM, expensive for attackers with GPUs

    Args:
        passphrase: User's passphrase
        salt: Random salt (stored in the envelope header, NOT secret)
        n, r, p: scrypt cost parameters (also stored in the header)

    Returns:
        32-byte vault key
    """
    kdf = Scrypt(salt=salt, length=VAULT_KEY_SIZE, n=n, r=r, p=p)
    return kdf.derive(passphrase.encode('utf-8'))


def new_salt() -> bytes:
    return os.urandom(SALT_SIZE)


# =============================================================================
# Canonical Associated Data
# =============================================================================

def canonical_ad(ad: dict) -> bytes:
    """
    Convert associated data to canonical JSON bytes.

    Same dict always gives the same bytes: keys sorted, no whitespace,
    UTF-8 without escaping.
    """
    json_str = json.dumps(ad, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    return json_str.encode('utf-8')


# =============================================================================
# Encryption (AES-256-GCM)
# =============================================================================

def encrypt(key: bytes, plaintext: bytes, associated_data: dict) -> Tuple[bytes, bytes]:
    """
    Encrypt data with AES-256-GCM.

    The tag authenticates both the ciphertext and associated_data, which is
    what lets the passphrase sealer stand in for "sign + encrypt".

    Returns:
        (nonce, ciphertext) tuple; ciphertext includes the 16-byte tag
    """
    # Generate random nonce (NEVER reuse with same key!)
    nonce = os.urandom(NONCE_SIZE)
    ad_bytes = canonical_ad(associated_data)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, ad_bytes)
    return nonce, ciphertext


def decrypt(key: bytes, nonce: bytes, ciphertext: bytes, associated_data: dict) -> bytes:
    """
    Decrypt AES-256-GCM ciphertext.

    Raises:
        cryptography.exceptions.InvalidTag: If tampered, wrong key, or wrong AD
    """
    ad_bytes = canonical_ad(associated_data)
    return AESGCM(key).decrypt(nonce, ciphertext, ad_bytes)


# =============================================================================
# Password Generation
# =============================================================================

CHARACTER_CLASSES = {
    "upper": string.ascii_uppercase,
    "lower": string.ascii_lowercase,
    "digit": string.digits,
    "symbol": "!@#$%^&*()_+-=",
}


def generate_password(
    length: int = 20,
    use_symbols: bool = True,
    allowed: Optional[Iterable[str]] = None
) -> str:
    """
    Generate a strong random password.

    Args:
        length: Password length (default 20)
        use_symbols: Include symbols? (ignored when `allowed` is given)
        allowed: Character class names from CHARACTER_CLASSES

    Returns:
        Random password containing at least one character of every allowed
        class (when length permits)
    """
    if allowed is None:
        allowed = ["upper", "lower", "digit"] + (["symbol"] if use_symbols else [])
    classes = []
    for name in allowed:
        if name not in CHARACTER_CLASSES:
            raise ValueError(f"Unknown character class: {name}")
        if CHARACTER_CLASSES[name] not in classes:
            classes.append(CHARACTER_CLASSES[name])
    if not classes:
        raise ValueError("At least one character class is required")
    if length < 1:
        raise ValueError("Password length must be positive")

    chars = "".join(classes)
    rng = secrets.SystemRandom()

    # One from each class first, then fill and shuffle
    picked = [secrets.choice(c) for c in classes][:length]
    picked += [secrets.choice(chars) for _ in range(length - len(picked))]
    rng.shuffle(picked)
    return "".join(picked)


# =============================================================================
# Helpers
# =============================================================================

def constant_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two digests in constant time.

    Uses built-in hmac.compare_digest. Strings are compared as UTF-8 bytes
    because compare_digest rejects non-ASCII str.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)
