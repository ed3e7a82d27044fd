"""
SecretChain - State Resolver

The current value of a secret is never stored: it is whatever the most recent
`keep` for that id says, unless a more recent `forget` tombstones it.

We walk the chain backward and keep only the first sighting of each id. That
is the same as replaying forward and overwriting, but for a single id we can
stop as soon as we see it.
"""

from typing import Dict, Iterator, NamedTuple, Optional, Tuple, Union

from .block import Block, BlockType, decode_payload
from .chain import Chain


class ResolvedSecret(NamedTuple):
    payload: str
    timestamp: int

    @property
    def secret(self) -> str:
        """Decoded secret value."""
        return decode_payload(self.payload)


def latest_events(chain: Chain) -> Iterator[Tuple[str, Block]]:
    """
    Yield (secret_id, block) for the most recent keep/forget of each id,
    newest first. Stop pulling whenever you have what you need.
    """
    seen = set()
    for block in reversed(chain):
        if block.block_type not in (BlockType.KEEP, BlockType.FORGET):
            continue
        if block.secret_id in seen:
            continue
        seen.add(block.secret_id)
        yield block.secret_id, block


def scan(chain: Chain, target: Optional[str] = None) -> Dict[str, ResolvedSecret]:
    """
    Resolve live secrets.

    Args:
        chain: Chain to read
        target: Only resolve this id

    Returns:
        {secret_id: ResolvedSecret} for live ids; with a target, at most one
        entry (empty dict = not found)
    """
    state: Dict[str, Optional[ResolvedSecret]] = {}
    for secret_id, block in latest_events(chain):
        if target is not None and secret_id != target:
            continue
        if block.block_type is BlockType.KEEP:
            state[secret_id] = ResolvedSecret(block.payload, block.timestamp)
        else:
            state[secret_id] = None  # tombstone
        if target is not None:
            break

    return {k: v for k, v in state.items() if v is not None}


def resolve(
    chain: Chain,
    secret_id: Optional[str] = None
) -> Union[Optional[ResolvedSecret], Dict[str, ResolvedSecret]]:
    """
    resolve(chain, "x") -> ResolvedSecret or None
    resolve(chain)      -> every live secret
    """
    if secret_id is None:
        return scan(chain)
    return scan(chain, secret_id).get(secret_id)


def history(chain: Chain, secret_id: Optional[str] = None) -> Iterator[Block]:
    """Non-genesis blocks in chain order, optionally only for one id."""
    for block in chain:
        if block.block_type is BlockType.GENESIS:
            continue
        if secret_id is None or block.secret_id == secret_id:
            yield block
