"""
SecretChain - Attack Demonstration

Run: python attack_demo.py

What it shows (and why attacks fail):
1) Editing a secret in the chain breaks that block's digest.
2) Re-hashing the edited block without proof-of-work is rejected.
3) Re-mining the edited block breaks the link of the next block.
4) A wrong passphrase cannot unseal the file.
5) Dropping the newest blocks keeps a valid chain, so the seal is what
   stops an attacker from writing a truncated file back.
"""

import os
import tempfile
from dataclasses import replace

from secretchain import crypto, store
from secretchain.block import BlockType, encode_payload
from secretchain.chain import Chain, add_block, chain_digest, validate_block, validate_chain
from secretchain.errors import SealingError
from secretchain.scanner import resolve
from secretchain.sealing import PassphraseSealer


LINE = "=" * 70
ACTOR = "alice@laptop"


def section(title: str):
    print(f"\n{LINE}\n{title}\n{LINE}")


def main():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "chain")
        passphrase = "CorrectHorseBatteryStaple!"
        sealer = PassphraseSealer(lambda confirm: passphrase, n=2**14)

        # Build a small chain and seal it
        chain = Chain()
        for secret_id, secret in [("github", "gh-secret"), ("bank", "1234"), ("email", "hunter2")]:
            add_block(chain, BlockType.KEEP, [secret_id, encode_payload(secret)], ACTOR,
                      select_identities=sealer.select_identities)
        add_block(chain, BlockType.FORGET, ["bank"], ACTOR)
        store.commit(chain, path, sealer)
        print(f"Sealed chain with {len(chain)} blocks: {', '.join(b.block_type.value for b in chain)}")

        # 1) Edit a secret
        section("Attack 1: Replace the github secret")
        blocks = list(chain)
        blocks[1] = replace(blocks[1], parameters=("github", encode_payload("attacker-secret")))
        tampered = Chain(blocks)
        print(f"validate_block(1): {validate_block(tampered, 1)}")
        print(f"validate_chain(all): {validate_chain(tampered)}")

        # 2) Re-hash without mining
        section("Attack 2: Recompute the digest, skip proof-of-work")
        edited = blocks[1]
        while True:
            nonce = crypto.new_nonce()
            forged = chain_digest(blocks[0].digest, edited.content(), nonce)
            if not forged.startswith("00"):
                break
        blocks[1] = replace(edited, nonce=nonce, digest=forged)
        print(f"Digest {forged[:16]}... lacks the '00' prefix")
        print(f"validate_block(1): {validate_block(Chain(blocks), 1)}")

        # 3) Re-mine the edited block
        section("Attack 3: Re-mine the edited block")
        while not forged.startswith("00"):
            nonce = crypto.new_nonce()
            forged = chain_digest(blocks[0].digest, edited.content(), nonce)
        blocks[1] = replace(edited, nonce=nonce, digest=forged)
        remined = Chain(blocks)
        print(f"validate_block(1): {validate_block(remined, 1)}  (the forgery itself is fine)")
        print(f"validate_block(2): {validate_block(remined, 2)}  (but the next link is broken)")
        print("Re-mining every later block would be needed, and then step 4 applies.")

        # 4) Wrong passphrase
        section("Attack 4: Unseal with a guessed passphrase")
        with open(path, "rb") as f:
            sealed = f.read()
        try:
            PassphraseSealer(lambda confirm: "password123").unseal(sealed)
            print("Unexpected: unsealed with the wrong passphrase")
        except SealingError as e:
            print(f"Expected failure: {e}")

        # 5) Truncation
        section("Attack 5: Drop the forget block (undo a revocation)")
        truncated = Chain(list(chain)[:-1])
        print(f"validate_chain(truncated): {validate_chain(truncated)}")
        print(f"bank resolves again: {resolve(truncated, 'bank') is not None}")
        print("The chain alone cannot tell; writing this back requires the sealing")
        print("key, and the sealed file on disk still ends with the forget block:")
        print(f"  bank in sealed chain: {resolve(store.load(path, sealer), 'bank') is not None}")


if __name__ == "__main__":
    main()
