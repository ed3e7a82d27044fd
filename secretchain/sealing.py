"""
SecretChain - Sealing Service

"Sealing" = sign + encrypt the serialized chain before it touches the disk.
The chain code never does this itself; it talks to a Sealer:

    seal(plaintext, sign_identity, encrypt_identity) -> bytes
    unseal(ciphertext) -> bytes
    check_signer(sign_identity)   after unseal: raise unless that key signed it
    select_identities() -> (sign_identity, encrypt_identity)

Two implementations:

GnuPGSealer
    Shells out to gpg. Identities are key ids/fingerprints from the user's
    secret keyring. Failures are classified from gpg's --status-fd output.

PassphraseSealer
    scrypt(passphrase) -> key, AES-256-GCM over the chain with the envelope
    header as associated data. The GCM tag does the job of the signature.
    Identities are the vault id (a uuid4), for both signing and encryption.

Every failure is a SealingError; nothing is retried.
"""

import base64
import binascii
import json
import logging
import subprocess
import uuid
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from cryptography.exceptions import InvalidTag

from . import crypto
from .errors import SealingError, SealingFailure

log = logging.getLogger(__name__)


# =============================================================================
# GnuPG
# =============================================================================

class GPGKey(NamedTuple):
    key_id: str
    uid: str


# Status keyword -> failure, in priority order
STATUS_FAILURES = [
    ("KEYREVOKED", SealingFailure.REVOKED_KEY),
    ("REVKEYSIG", SealingFailure.REVOKED_KEY),
    ("KEYEXPIRED", SealingFailure.EXPIRED_KEY),
    ("EXPKEYSIG", SealingFailure.EXPIRED_KEY),
    ("INV_SGNR", SealingFailure.INVALID_SIGNER),
    ("INV_RECP", SealingFailure.INVALID_RECIPIENT),
    ("MISSING_PASSPHRASE", SealingFailure.MISSING_PASSPHRASE),
    ("BAD_PASSPHRASE", SealingFailure.BAD_PASSPHRASE),
    ("NO_SECKEY", SealingFailure.NO_SECRET_KEY),
    ("BADSIG", SealingFailure.BAD_SIGNATURE),
    ("ERRSIG", SealingFailure.BAD_SIGNATURE),
    ("NODATA", SealingFailure.MALFORMED),
    ("DECRYPTION_FAILED", SealingFailure.MALFORMED),
]

# INV_RECP / INV_SGNR reason codes that are more specific than "invalid"
INVALID_KEY_REASONS = {
    "4": SealingFailure.REVOKED_KEY,
    "5": SealingFailure.EXPIRED_KEY,
}

# Validity flags of keys we must not use: expired, revoked, invalid, disabled
UNUSABLE_VALIDITY = set("erid")

USAGE_FLAGS = {"sign": "S", "encrypt": "E"}


def parse_status(stderr: bytes) -> List[List[str]]:
    """Pick the "[GNUPG:] KEYWORD args..." lines out of gpg's stderr."""
    records = []
    for line in stderr.decode("utf-8", "replace").splitlines():
        if line.startswith("[GNUPG:] "):
            records.append(line[len("[GNUPG:] "):].split())
    return records


def classify_status(status: List[List[str]]) -> Optional[SealingError]:
    """First (highest priority) failure found in the status records."""
    keywords = {record[0]: record[1:] for record in status if record}
    for keyword, failure in STATUS_FAILURES:
        if keyword not in keywords:
            continue
        args = keywords[keyword]
        if keyword in ("INV_RECP", "INV_SGNR") and args:
            failure = INVALID_KEY_REASONS.get(args[0], failure)
            return SealingError(failure, " ".join(args[1:]))
        return SealingError(failure, " ".join(args[:1]))
    return None


def parse_secret_keys(listing: str) -> Dict[str, List[GPGKey]]:
    """
    Parse `gpg --list-secret-keys --with-colons` output.

    Returns:
        {"sign": [...], "encrypt": [...]} usable primary keys per capability
    """
    usable: Dict[str, List[GPGKey]] = {usage: [] for usage in USAGE_FLAGS}
    current = None  # [validity, key_id, capabilities, uid]

    def flush():
        if current is None:
            return
        validity, key_id, capabilities, uid = current
        if validity in UNUSABLE_VALIDITY or "D" in capabilities:
            return
        for usage, flag in USAGE_FLAGS.items():
            if flag in capabilities:
                usable[usage].append(GPGKey(key_id, uid or ""))

    for line in listing.splitlines():
        fields = line.split(":")
        record = fields[0]
        if record == "sec":
            flush()
            current = [fields[1], fields[4], fields[11] if len(fields) > 11 else "", None]
        elif current is None:
            continue
        elif record == "fpr" and len(current[1]) < 40 and len(fields) > 9:
            current[1] = fields[9]
        elif record == "uid" and current[3] is None and len(fields) > 9:
            current[3] = fields[9]
    flush()
    return usable


def signer_matches(expected: str, fingerprints: Tuple[str, ...]) -> bool:
    """
    Does a recorded key id name one of these fingerprints?

    Accepts the full fingerprint or a long (16 hex) key id, case-insensitive.
    """
    expected = expected.upper()
    for fpr in fingerprints:
        fpr = fpr.upper()
        if fpr == expected or (len(expected) >= 16 and fpr.endswith(expected)):
            return True
    return False


KeyChooser = Callable[[str, List[GPGKey]], GPGKey]


class GnuPGSealer:
    """
    Seal with the gpg binary.

    Args:
        binary: gpg executable name or path
        chooser: Called as chooser(usage, keys) when several keys could be
            used for "sign" or "encrypt"; returns the chosen one
    """

    def __init__(self, binary: str = "gpg", chooser: Optional[KeyChooser] = None):
        self.binary = binary
        self.chooser = chooser
        self.signers: Tuple[str, ...] = ()  # fingerprints behind the last good signature

    def _run(self, args: List[str], data: bytes = b"") -> Tuple[int, bytes, List[List[str]]]:
        cmd = [self.binary, "--status-fd", "2", *args]
        log.debug("Running %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, input=data, stdout=subprocess.PIPE,
                                  stderr=subprocess.PIPE, check=False)
        except OSError as e:
            raise SealingError(SealingFailure.UNAVAILABLE, f"{self.binary}: {e}")
        return proc.returncode, proc.stdout, parse_status(proc.stderr)

    def _fail(self, returncode: int, status: List[List[str]]) -> SealingError:
        error = classify_status(status)
        if error is None:
            error = SealingError(SealingFailure.UNAVAILABLE, f"{self.binary} exited with {returncode}")
        return error

    def seal(self, plaintext: bytes, sign_identity: str, encrypt_identity: str) -> bytes:
        returncode, out, status = self._run(
            ["--yes", "--sign", "--encrypt",
             "--local-user", sign_identity,
             "--recipient", encrypt_identity],
            plaintext,
        )
        if returncode != 0 or not out:
            raise self._fail(returncode, status)
        return out

    def unseal(self, ciphertext: bytes) -> bytes:
        if not ciphertext:
            raise SealingError(SealingFailure.MALFORMED, "no data")
        returncode, out, status = self._run(["--decrypt"], ciphertext)
        if returncode != 0:
            raise self._fail(returncode, status)

        keywords = {record[0]: record[1:] for record in status if record}
        if "GOODSIG" not in keywords or "VALIDSIG" not in keywords:
            raise classify_status(status) or SealingError(SealingFailure.NO_SIGNATURE)
        # VALIDSIG <signing fpr> ... <primary key fpr>
        validsig = keywords["VALIDSIG"]
        self.signers = tuple(validsig[i] for i in (0, 9) if len(validsig) > i)
        return out

    def check_signer(self, expected: str) -> None:
        """
        The last unsealed file must be signed by `expected` (genesis signing key).

        Raises:
            SealingError: BAD_SIGNATURE if another key signed it
        """
        if not signer_matches(expected, self.signers):
            raise SealingError(
                SealingFailure.BAD_SIGNATURE,
                f"signed by {', '.join(self.signers) or 'nobody'}, chain belongs to {expected}",
            )

    def secret_keys(self) -> Dict[str, List[GPGKey]]:
        returncode, out, status = self._run(["--list-secret-keys", "--with-colons", "--fixed-list-mode"])
        if returncode != 0:
            raise self._fail(returncode, status)
        return parse_secret_keys(out.decode("utf-8", "replace"))

    def select_identities(self) -> Tuple[str, str]:
        """Pick one signing and one encryption key from the secret keyring."""
        keys = self.secret_keys()
        chosen = []
        for usage in ("sign", "encrypt"):
            candidates = keys[usage]
            if not candidates:
                raise SealingError(SealingFailure.NO_SECRET_KEY, f"no valid {usage} key")
            if len(candidates) == 1:
                chosen.append(candidates[0].key_id)
            elif self.chooser is None:
                raise SealingError(SealingFailure.NO_SECRET_KEY, f"several {usage} keys, none chosen")
            else:
                chosen.append(self.chooser(usage, candidates).key_id)
        return chosen[0], chosen[1]


# =============================================================================
# Passphrase (scrypt + AES-256-GCM)
# =============================================================================

MAGIC = b"SECRETCHAIN-SEALED-1\n"
HEADER_FIELDS = ("vault_id", "kdf", "kdf_params", "salt", "sign", "encrypt", "nonce")

# Called with confirm=True when a new passphrase is being set
PassphraseSource = Callable[[bool], Optional[str]]


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeError, AttributeError) as e:
        raise SealingError(SealingFailure.MALFORMED, f"bad base64: {e}")


# Largest scrypt parameters a sealed header may ask for
MAX_SCRYPT_N = 2**20
MAX_SCRYPT_R = 32
MAX_SCRYPT_P = 16


def _check_kdf_params(params) -> Dict[str, int]:
    """scrypt parameters read from a header: n a power of 2, all within bounds."""
    try:
        n, r, p = (int(params[k]) for k in ("n", "r", "p"))
    except (KeyError, TypeError, ValueError):
        raise SealingError(SealingFailure.MALFORMED, "bad kdf parameters")
    if n < 2 or n & (n - 1) or n > MAX_SCRYPT_N:
        raise SealingError(SealingFailure.MALFORMED, f"scrypt n={n} is not a power of 2 up to 2**20")
    if not 1 <= r <= MAX_SCRYPT_R or not 1 <= p <= MAX_SCRYPT_P:
        raise SealingError(SealingFailure.MALFORMED, f"scrypt r={r} p={p} out of range")
    return {"n": n, "r": r, "p": p}


class PassphraseSealer:
    """
    Seal with a key derived from a passphrase.

    Sealed file layout:

        SECRETCHAIN-SEALED-1
        {"vault_id": ..., "kdf": "scrypt", "kdf_params": {...}, "salt": ..., ...}
        <base64 ciphertext + tag>

    Everything in the header except the nonce is bound as associated data,
    so editing it breaks decryption.
    """

    def __init__(
        self,
        passphrase_source: PassphraseSource,
        n: int = crypto.SCRYPT_N,
        r: int = crypto.SCRYPT_R,
        p: int = crypto.SCRYPT_P
    ):
        self._passphrase_source = passphrase_source
        self.kdf_params = {"n": n, "r": r, "p": p}
        self.vault_id: Optional[str] = None
        self.salt: Optional[bytes] = None
        self._key: Optional[bytes] = None

    @classmethod
    def from_vault_key(cls, vault_key: bytes, passphrase_source: PassphraseSource, **kdf) -> "PassphraseSealer":
        """Sealer that already knows the key (recovery from Shamir shares)."""
        sealer = cls(passphrase_source, **kdf)
        sealer._key = vault_key
        return sealer

    @property
    def vault_key(self) -> bytes:
        if self._key is None:
            raise SealingError(SealingFailure.MISSING_PASSPHRASE, "vault is not unlocked")
        return self._key

    def _ask(self, confirm: bool) -> str:
        passphrase = self._passphrase_source(confirm)
        if not passphrase:
            raise SealingError(SealingFailure.MISSING_PASSPHRASE)
        return passphrase

    def _derive(self, passphrase: str) -> bytes:
        params = self.kdf_params
        return crypto.derive_vault_key(passphrase, self.salt, params["n"], params["r"], params["p"])

    def select_identities(self) -> Tuple[str, str]:
        if self.vault_id is None:
            self.vault_id = str(uuid.uuid4())
        return self.vault_id, self.vault_id

    def check_signer(self, expected: str) -> None:
        if expected != self.vault_id:
            raise SealingError(SealingFailure.BAD_SIGNATURE,
                               f"sealed by vault {self.vault_id}, chain belongs to {expected}")

    def rekey(self, passphrase: str) -> None:
        """New passphrase: new salt, new key, same vault id."""
        if not passphrase:
            raise SealingError(SealingFailure.MISSING_PASSPHRASE)
        self.salt = crypto.new_salt()
        self._key = self._derive(passphrase)

    def _associated_data(self, header: dict) -> dict:
        ad = {k: v for k, v in header.items() if k != "nonce"}
        ad["ctx"] = "chain_seal"
        return ad

    def seal(self, plaintext: bytes, sign_identity: str, encrypt_identity: str) -> bytes:
        if self.vault_id is None or sign_identity != self.vault_id:
            raise SealingError(SealingFailure.INVALID_SIGNER, sign_identity)
        if encrypt_identity != self.vault_id:
            raise SealingError(SealingFailure.INVALID_RECIPIENT, encrypt_identity)

        if self._key is None:
            # First seal of a new vault
            self.rekey(self._ask(confirm=True))

        header = {
            "vault_id": self.vault_id,
            "kdf": "scrypt",
            "kdf_params": self.kdf_params,
            "salt": _b64(self.salt),
            "sign": sign_identity,
            "encrypt": encrypt_identity,
        }
        nonce, ciphertext = crypto.encrypt(self._key, plaintext, self._associated_data(header))
        header["nonce"] = _b64(nonce)

        return b"".join([
            MAGIC,
            json.dumps(header, sort_keys=True).encode("utf-8"), b"\n",
            _b64(ciphertext).encode("ascii"), b"\n",
        ])

    def _parse(self, sealed: bytes) -> Tuple[dict, bytes]:
        if not sealed.startswith(MAGIC):
            raise SealingError(SealingFailure.MALFORMED, "not a sealed chain file")
        lines = sealed[len(MAGIC):].split(b"\n")
        if len(lines) < 2:
            raise SealingError(SealingFailure.MALFORMED, "truncated")
        try:
            header = json.loads(lines[0].decode("utf-8"))
        except (UnicodeError, ValueError) as e:
            raise SealingError(SealingFailure.MALFORMED, f"bad header: {e}")
        if not isinstance(header, dict) or any(f not in header for f in HEADER_FIELDS):
            raise SealingError(SealingFailure.MALFORMED, "incomplete header")
        if header["kdf"] != "scrypt" or not isinstance(header["kdf_params"], dict):
            raise SealingError(SealingFailure.MALFORMED, f"unsupported kdf {header['kdf']!r}")
        return header, _unb64(lines[1].decode("ascii", "replace"))

    def unseal(self, ciphertext: bytes) -> bytes:
        if not ciphertext:
            raise SealingError(SealingFailure.MALFORMED, "no data")
        header, body = self._parse(ciphertext)
        if header["sign"] != header["vault_id"]:
            raise SealingError(SealingFailure.INVALID_SIGNER, header["sign"])
        if header["encrypt"] != header["vault_id"]:
            raise SealingError(SealingFailure.INVALID_RECIPIENT, header["encrypt"])

        salt = _unb64(header["salt"])
        if self._key is not None and self.salt is not None and self.salt != salt:
            self._key = None  # different file, different key
        self.vault_id = header["vault_id"]
        self.salt = salt
        self.kdf_params = _check_kdf_params(header["kdf_params"])
        nonce = _unb64(header["nonce"])
        if len(nonce) != crypto.NONCE_SIZE:
            raise SealingError(SealingFailure.MALFORMED, f"nonce is {len(nonce)} bytes")

        if self._key is None:
            self._key = self._derive(self._ask(confirm=False))

        try:
            return crypto.decrypt(self._key, nonce, body, self._associated_data(header))
        except InvalidTag:
            self._key = None
            raise SealingError(SealingFailure.BAD_PASSPHRASE, "or the sealed file was modified")
