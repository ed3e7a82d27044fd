"""
SecretChain - Block Model

One block = one action. On disk (inside the sealed file) a block is a single
tab-separated line:

    block_type  actor  timestamp  parameters...  nonce  digest

The number of parameters depends on the block type:

    genesis  [signing key id, encryption key id]
    keep     [secret id, payload]
    tell     [secret id]
    forget   [secret id]

Blocks are immutable; the only way to get a new one is chain.add_block().
"""

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple

from .errors import IntegrityError


FIELD_SEPARATOR = "\t"


class BlockType(str, Enum):
    GENESIS = "genesis"
    KEEP = "keep"
    TELL = "tell"
    FORGET = "forget"


PARAMETER_ARITY = {
    BlockType.GENESIS: 2,
    BlockType.KEEP: 2,
    BlockType.TELL: 1,
    BlockType.FORGET: 1,
}


def check_field(name: str, value: str) -> str:
    """Fields end up tab/newline separated, so they cannot contain either."""
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    if not value:
        raise ValueError(f"{name} cannot be empty")
    if any(c in value for c in "\t\r\n"):
        raise ValueError(f"{name} cannot contain tabs or newlines")
    return value


def block_content(
    block_type: BlockType,
    actor: str,
    timestamp: int,
    parameters: Sequence[str]
) -> str:
    """Everything that gets hashed except the nonce."""
    return FIELD_SEPARATOR.join([block_type.value, actor, str(timestamp), *parameters])


@dataclass(frozen=True)
class Block:
    block_type: BlockType
    actor: str
    timestamp: int
    parameters: Tuple[str, ...]
    nonce: str
    digest: str

    def content(self) -> str:
        return block_content(self.block_type, self.actor, self.timestamp, self.parameters)

    @property
    def secret_id(self) -> Optional[str]:
        """Secret this block is about (None for genesis)."""
        if self.block_type is BlockType.GENESIS:
            return None
        return self.parameters[0]

    @property
    def payload(self) -> Optional[str]:
        if self.block_type is BlockType.KEEP:
            return self.parameters[1]
        return None

    def encode(self) -> str:
        """Serialize to one line (without the trailing newline)."""
        return FIELD_SEPARATOR.join([self.content(), self.nonce, self.digest])

    @classmethod
    def decode(cls, line: str) -> "Block":
        """
        Parse one serialized line.

        Raises:
            IntegrityError: Unknown type, wrong field count or bad timestamp
        """
        fields = line.split(FIELD_SEPARATOR)
        try:
            block_type = BlockType(fields[0])
        except ValueError:
            raise IntegrityError(f"unknown block type {fields[0]!r}")

        expected = 3 + PARAMETER_ARITY[block_type] + 2
        if len(fields) != expected:
            raise IntegrityError(
                f"{block_type.value} block has {len(fields)} fields, expected {expected}"
            )

        # Canonical decimal only: decode(line).encode() == line
        raw = fields[2]
        if not (raw.isascii() and raw.isdigit()) or str(int(raw)) != raw:
            raise IntegrityError(f"bad timestamp {raw!r}")
        timestamp = int(raw)

        return cls(
            block_type=block_type,
            actor=fields[1],
            timestamp=timestamp,
            parameters=tuple(fields[3:-2]),
            nonce=fields[-2],
            digest=fields[-1],
        )


# =============================================================================
# Payload codec
# =============================================================================

def encode_payload(secret: str) -> str:
    """Secrets may contain anything, payloads must be a single field."""
    if not secret:
        raise ValueError("Secret cannot be empty")
    return base64.urlsafe_b64encode(secret.encode('utf-8')).decode('ascii')


def decode_payload(payload: str) -> str:
    try:
        return base64.urlsafe_b64decode(payload.encode('ascii')).decode('utf-8')
    except (binascii.Error, UnicodeError) as e:
        raise IntegrityError(f"undecodable secret payload: {e}")
