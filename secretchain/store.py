"""
SecretChain - Persistence

The chain file is read once at the start of a command and written at most
once at the end:

    load()   read -> unseal -> decode -> structural check -> signer check
             -> sampled validation
    commit() encode -> seal -> compare-and-swap check -> atomic replace

commit() is the single commit point. Until it runs nothing on disk has
changed, so an interrupted command loses at most the action in progress.
The CLI holds off termination signals while it runs.

Concurrency: one writer at a time is assumed. We do not lock, but commit()
refuses to overwrite a file that changed since it was loaded, so a
concurrent invocation fails loudly instead of silently dropping blocks.
"""

import logging
import os
import tempfile
from typing import Optional

from . import crypto
from .block import BlockType
from .chain import Chain, sample_size_for, validate_chain
from .config import DIFFICULTY_PREFIX
from .errors import ConcurrentModificationError, IntegrityError

log = logging.getLogger(__name__)

FILE_MODE = 0o600
DIR_MODE = 0o700


def _read(path: str) -> Optional[bytes]:
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError:
        return None


def check_structure(chain: Chain) -> None:
    """
    Exactly one genesis block, at index 0.

    Raises:
        IntegrityError: If not
    """
    if chain.genesis is None:
        raise IntegrityError("first block is not a genesis block")
    for index, block in enumerate(chain):
        if index and block.block_type is BlockType.GENESIS:
            raise IntegrityError(f"unexpected genesis block at index {index}")


def load(path: str, sealer, difficulty: str = DIFFICULTY_PREFIX) -> Chain:
    """
    Load and check the chain file.

    A missing file is a new, empty chain. Anything that does not unseal,
    parse and validate raises and must not be used.

    Raises:
        IntegrityError: Empty file, malformed content, failed validation
        SealingError: Unsealing failed, or not signed by the genesis signing key
    """
    sealed = _read(path)
    if sealed is None:
        log.info("No chain at %s, starting a new one", path)
        return Chain()
    if not sealed:
        raise IntegrityError(f"missing chain file content: {path}")

    plaintext = sealer.unseal(sealed)
    try:
        text = plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise IntegrityError("chain data is not valid UTF-8")

    chain = Chain.decode(text, origin=crypto.digest(sealed))
    if not len(chain):
        raise IntegrityError("sealed chain contains no blocks")
    check_structure(chain)
    sealer.check_signer(chain.identities[0])

    sample = sample_size_for(len(chain))
    log.debug("Validating %s of %d blocks", sample or "all", len(chain))
    if not validate_chain(chain, sample, difficulty):
        raise IntegrityError(f"chain validation failed ({path})")
    return chain


def verify(chain: Chain, difficulty: str = DIFFICULTY_PREFIX) -> bool:
    """Full audit: structure and every block."""
    try:
        check_structure(chain)
    except IntegrityError:
        return False
    return validate_chain(chain, 0, difficulty)


def commit(
    chain: Chain,
    path: str,
    sealer,
    signing_identity: Optional[str] = None,
    encrypt_identity: Optional[str] = None
) -> None:
    """
    Seal and write the chain (atomically).

    Identities default to the ones recorded in the genesis block.

    Raises:
        ConcurrentModificationError: The file changed since load()
        SealingError: Sealing failed (file untouched)
    """
    genesis_signing, genesis_encrypt = chain.identities
    sealed = sealer.seal(
        chain.encode().encode("utf-8"),
        signing_identity or genesis_signing,
        encrypt_identity or genesis_encrypt,
    )

    on_disk = _read(path)
    current = crypto.digest(on_disk) if on_disk is not None else None
    if current != chain.origin:
        raise ConcurrentModificationError(f"{path} was modified by another process")

    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, mode=DIR_MODE, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".chain-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(sealed)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, FILE_MODE)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise

    chain.origin = crypto.digest(sealed)
    log.info("Wrote %d blocks to %s", len(chain), path)
