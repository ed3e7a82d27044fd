"""
SecretChain - Recovery Module (Shamir Secret Sharing)

Only meaningful for the passphrase sealer: its scrypt-derived vault key is
split into n mnemonic shares, any k of which rebuild it (SLIP-0039).

Use case: you forgot the passphrase. Combine k shares, unseal with the
rebuilt key, set a new passphrase. The vault id and the chain are unchanged.
"""

from typing import List

from shamir_mnemonic import MnemonicError, shamir

from .errors import RecoveryError, SealingError, SealingFailure


# Share counts the SLIP-0039 library accepts for one group
MIN_THRESHOLD = 2
MAX_SHARES = 16


def generate_recovery_shares(vault_key: bytes, k: int, n: int) -> List[str]:
    """
    Split the vault key into n mnemonic shares, any k of which rebuild it.

    Raises:
        RecoveryError: If k and n do not describe a usable split
    """
    if not MIN_THRESHOLD <= k <= n <= MAX_SHARES:
        raise RecoveryError(
            f"need {MIN_THRESHOLD} <= k <= n <= {MAX_SHARES}, got k={k} n={n}"
        )
    groups = shamir.generate_mnemonics(group_threshold=1, groups=[(k, n)], master_secret=vault_key)
    return groups[0]


def combine_recovery_shares(shares: List[str]) -> bytes:
    """
    Rebuild the vault key from k shares.

    Raises:
        SealingError: If shares are invalid or insufficient
    """
    try:
        return shamir.combine_mnemonics(shares)
    except MnemonicError as e:
        raise SealingError(SealingFailure.BAD_PASSPHRASE, f"recovery shares rejected: {e}")


def print_recovery_kit(shares: List[str], vault_id: str, k: int) -> str:
    """
    Format recovery shares for printing.

    Returns:
        Formatted string ready for printing
    """
    output = []
    output.append("=" * 70)
    output.append("SecretChain RECOVERY KIT")
    output.append("=" * 70)
    output.append(f"\nVault ID: {vault_id}")
    output.append(f"Threshold: Need {k} of {len(shares)} shares to recover")
    output.append("\nIMPORTANT:")
    output.append("- Print this document and store shares in separate secure locations")
    output.append(f"- Any {k} shares can unlock your secrets if you forget the passphrase")
    output.append("- Changing the passphrase invalidates this kit")
    output.append("- NEVER store all shares together!\n")
    output.append("=" * 70)

    for i, share in enumerate(shares, 1):
        output.append(f"\n\nSHARE {i} of {len(shares)}")
        output.append("-" * 70)
        output.append(share)
        output.append("\n" + "-" * 70)

    output.append("\n\nTo recover:")
    output.append("1. Run: secretchain --sealer passphrase recover")
    output.append(f"2. Enter any {k} shares when prompted")
    output.append("3. Set a new passphrase\n")

    return "\n".join(output)
