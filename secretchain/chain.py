"""
SecretChain - Hash Chain

The chain is the only data structure: an append-only list of blocks where
each block's digest commits to the previous one.

    digest[i] = H(digest[i-1] || H(content[i] || nonce[i]))
    digest[0] = H(NULL_DIGEST || H(content[0] || nonce[0]))

On top of the linkage every digest must start with the difficulty prefix
(proof-of-work). Mining a block takes ~256 attempts at the default "00".

This module holds:
- Chain: the in-memory value (owned by whoever loaded it)
- add_block(): the miner, the only way a block gets appended
- validate_block() / validate_chain(): recompute and compare digests
- sample_size_for(): how much to validate on each load
"""

import logging
import time
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from . import crypto
from .block import Block, BlockType, PARAMETER_ARITY, block_content, check_field
from .config import DIFFICULTY_PREFIX
from .errors import ChainStructureError, IntegrityError

log = logging.getLogger(__name__)

# Mining progress is logged every this many attempts
PROGRESS_INTERVAL = 64

# Load-time sampling: full audit every FULL_AUDIT_EVERY blocks, the last
# PARTIAL_AUDIT_SIZE blocks every PARTIAL_AUDIT_EVERY, otherwise the tip only
FULL_AUDIT_EVERY = 25
PARTIAL_AUDIT_EVERY = 5
PARTIAL_AUDIT_SIZE = 5

IdentitySelector = Callable[[], Tuple[str, str]]


class Chain:
    """
    Ordered, append-only sequence of blocks.

    `origin` is the digest of the sealed bytes this chain was loaded from
    (None for a chain that has never been written). store.commit() uses it to
    notice if the file changed underneath us.
    """

    def __init__(self, blocks: Optional[Sequence[Block]] = None, origin: Optional[str] = None):
        self._blocks: List[Block] = list(blocks or [])
        self.origin = origin

    def __len__(self) -> int:
        return len(self._blocks)

    def __getitem__(self, index: int) -> Block:
        return self._blocks[index]

    def __iter__(self) -> Iterator[Block]:
        return iter(self._blocks)

    def __reversed__(self) -> Iterator[Block]:
        """Lazy newest-to-oldest walk."""
        return reversed(self._blocks)

    def __repr__(self) -> str:
        return f"<Chain blocks={len(self)} tip={self.tip[:12]}>"

    @property
    def tip(self) -> str:
        """Digest of the last block, or NULL_DIGEST for an empty chain."""
        return self._blocks[-1].digest if self._blocks else crypto.NULL_DIGEST

    @property
    def genesis(self) -> Optional[Block]:
        if self._blocks and self._blocks[0].block_type is BlockType.GENESIS:
            return self._blocks[0]
        return None

    @property
    def identities(self) -> Tuple[str, str]:
        """(signing key id, encryption key id) recorded in the genesis block."""
        if self.genesis is None:
            raise IntegrityError("chain has no genesis block")
        signing, encryption = self.genesis.parameters
        return signing, encryption

    def _append(self, block: Block) -> None:
        # Only add_block() calls this
        self._blocks.append(block)

    def encode(self) -> str:
        """Newline-terminated serialization of every block."""
        return "".join(block.encode() + "\n" for block in self._blocks)

    @classmethod
    def decode(cls, text: str, origin: Optional[str] = None) -> "Chain":
        """
        Parse serialized blocks. Does NOT validate digests.

        Raises:
            IntegrityError: If any line is malformed
        """
        if text and not text.endswith("\n"):
            raise IntegrityError("chain data is truncated (no final newline)")
        lines = text.split("\n")[:-1] if text else []
        blocks = []
        for number, line in enumerate(lines, 1):
            try:
                blocks.append(Block.decode(line))
            except IntegrityError as e:
                raise IntegrityError(f"block {number}: {e}")
        return cls(blocks, origin=origin)


# =============================================================================
# Digest formula (shared by miner and validator)
# =============================================================================

def chain_digest(prev_digest: str, content: str, nonce: str) -> str:
    """H(prev_digest || H(content || nonce))"""
    inner = crypto.digest(content + "\t" + nonce)
    return crypto.digest(prev_digest + inner)


# =============================================================================
# Miner
# =============================================================================

def _mine(
    prev_digest: str,
    block_type: BlockType,
    actor: str,
    parameters: Tuple[str, ...],
    difficulty: str,
    now: Optional[int]
) -> Block:
    # Timestamp is taken once: retries must not change when the action happened
    timestamp = int(time.time()) if now is None else int(now)
    content = block_content(block_type, actor, timestamp, parameters)

    attempts = 0
    while True:
        attempts += 1
        nonce = crypto.new_nonce()
        candidate = chain_digest(prev_digest, content, nonce)
        if candidate.startswith(difficulty):
            break
        if attempts % PROGRESS_INTERVAL == 0:
            log.debug("Mining %s block: %d attempts so far", block_type.value, attempts)

    log.info("Mined %s block after %d attempts", block_type.value, attempts)
    return Block(block_type, actor, timestamp, parameters, nonce, candidate)


def add_block(
    chain: Chain,
    block_type: BlockType,
    parameters: Sequence[str],
    actor: str,
    select_identities: Optional[IdentitySelector] = None,
    difficulty: str = DIFFICULTY_PREFIX,
    now: Optional[int] = None
) -> Block:
    """
    Mine and append a block.

    If the chain is empty and a non-genesis block is requested, a genesis
    block is mined first using the (signing, encryption) key ids returned by
    select_identities().

    Args:
        chain: Chain to append to (mutated)
        block_type: What happened
        parameters: Type-specific parameters (see block.PARAMETER_ARITY)
        actor: Who did it ("user@host")
        select_identities: Key-selection callback, only used for a new chain
        difficulty: Required digest prefix
        now: Override timestamp (tests)

    Returns:
        The appended block (the last one, if a genesis was also created)

    Raises:
        ChainStructureError: Genesis on a non-empty chain, wrong parameter
            count, or empty chain without a key selector
    """
    block_type = BlockType(block_type)
    parameters = tuple(parameters)
    check_field("actor", actor)
    for value in parameters:
        check_field("parameter", value)

    if len(parameters) != PARAMETER_ARITY[block_type]:
        raise ChainStructureError(
            f"{block_type.value} takes {PARAMETER_ARITY[block_type]} parameters, "
            f"got {len(parameters)}"
        )

    if block_type is BlockType.GENESIS and len(chain):
        raise ChainStructureError("genesis block requested on a non-empty chain")

    if not len(chain) and block_type is not BlockType.GENESIS:
        if select_identities is None:
            raise ChainStructureError("empty chain needs signing/encryption identities")
        signing, encryption = select_identities()
        add_block(chain, BlockType.GENESIS, (signing, encryption), actor,
                  difficulty=difficulty, now=now)

    block = _mine(chain.tip, block_type, actor, parameters, difficulty, now)
    chain._append(block)
    return block


# =============================================================================
# Validator
# =============================================================================

def validate_block(chain: Chain, index: int, difficulty: str = DIFFICULTY_PREFIX) -> bool:
    """
    Recompute one block's digest and compare it with the stored one.

    Negative indices count from the end. Anything we cannot check (empty
    chain, index out of range) counts as invalid.
    """
    length = len(chain)
    if index < 0:
        index += length
    if not 0 <= index < length:
        return False

    block = chain[index]

    # Genesis at index 0 and nowhere else
    if (index == 0) != (block.block_type is BlockType.GENESIS):
        return False
    if len(block.parameters) != PARAMETER_ARITY[block.block_type]:
        return False

    if not block.digest.startswith(difficulty):
        return False

    prev_digest = chain[index - 1].digest if index else crypto.NULL_DIGEST
    expected = chain_digest(prev_digest, block.content(), block.nonce)
    return crypto.constant_compare(expected, block.digest)


def validate_chain(chain: Chain, sample_size: int = 0, difficulty: str = DIFFICULTY_PREFIX) -> bool:
    """
    Validate the last `sample_size` blocks (0 or too large = all of them).

    An empty chain is never valid.
    """
    length = len(chain)
    if not length:
        return False
    if sample_size <= 0 or sample_size > length:
        sample_size = length
    return all(validate_block(chain, i, difficulty) for i in range(length - sample_size, length))


def sample_size_for(length: int) -> int:
    """
    How many tail blocks to validate when loading a chain of `length`.

    A re-hashed block breaks the link of every block after it, and the tail
    is always checked. Anything else is caught by the next full audit.
    """
    if length % FULL_AUDIT_EVERY == 0:
        return 0
    if length % PARTIAL_AUDIT_EVERY == 0:
        return PARTIAL_AUDIT_SIZE
    return 1
