"""
SecretChain - Secrets in a Tamper-Evident Hash Chain

A personal secret manager where nothing is ever overwritten: every action is
a block in a hash chain, and the current value of a secret is derived by
reading the chain backward.

Key Features:
- Tamper evidence: SHA-256 linked blocks with 8-bit proof-of-work
- Cheap checks: sampled validation on every load, full audit every 25 blocks
- Sealing: the whole chain is signed + encrypted (GnuPG, or scrypt + AES-GCM)
- Recovery: k-of-n Shamir shares for the passphrase sealer

Components:
- crypto.py: digests, nonces, scrypt/AES-GCM, password generation
- block.py: one block and its tab-separated encoding
- chain.py: the chain, the miner and the validator
- scanner.py: current state of secrets (latest keep wins, forget tombstones)
- store.py: load/commit the sealed chain file
- sealing.py: GnuPG and passphrase sealers
- recovery.py: Shamir Secret Sharing
- cli.py: command-line interface (argparse)

Usage:
    secretchain keep github --generate
    secretchain tell github --copy
    secretchain forget github
    secretchain list
    secretchain verify
"""

__version__ = "0.3.0"
__author__ = "SecretChain Team"
