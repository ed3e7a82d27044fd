"""
SecretChain - Command Line Interface

Usage:
    secretchain keep ID [--force] [--generate [--length N] [--allow CLASS]... [--no-symbols]]
    secretchain tell ID [--copy]
    secretchain forget ID
    secretchain list
    secretchain history [ID]
    secretchain verify
    secretchain recovery-kit [-k 3] [-n 5] [--output FILE]   (passphrase sealer)
    secretchain recover                                      (passphrase sealer)

Every command: load the sealed chain, check it, maybe mine one block, write
it back. Exit status: 0 success, 1 not found / nothing to show / error,
130 interrupted.
"""

import argparse
import getpass
import signal
import socket
import sys
from contextlib import contextmanager
from datetime import datetime
from typing import List, Mapping, Optional

from . import __version__, clipboard, store
from .block import BlockType, check_field, encode_payload
from .chain import Chain, add_block
from .config import Settings
from .crypto import CHARACTER_CLASSES, generate_password
from .errors import SealingError, SealingFailure, SecretChainError
from .logging_config import configure_logging
from .recovery import combine_recovery_shares, generate_recovery_shares, print_recovery_kit
from .scanner import history, resolve
from .sealing import GnuPGSealer, GPGKey, PassphraseSealer


def stderr(message: str) -> None:
    print(message, file=sys.stderr)


def current_actor() -> str:
    return f"{getpass.getuser()}@{socket.gethostname()}"


def format_time(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


@contextmanager
def deferred_signals():
    """
    Hold SIGINT/SIGTERM/SIGHUP until the block exits, then re-deliver them.

    Wraps the one write of the chain file.
    """
    signums = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, "SIGHUP"):
        signums.append(signal.SIGHUP)

    received = []
    previous = {}
    for signum in signums:
        previous[signum] = signal.signal(signum, lambda s, frame: received.append(s))
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
        for signum in received:
            signal.raise_signal(signum)


# =============================================================================
# Interactive collaborators
# =============================================================================

def passphrase_prompt(settings: Settings):
    """Passphrase source for PassphraseSealer (env var first, then getpass)."""
    def ask(confirm: bool) -> Optional[str]:
        if settings.passphrase:
            return settings.passphrase
        passphrase = getpass.getpass("Passphrase: ")
        if confirm and getpass.getpass("Confirm passphrase: ") != passphrase:
            raise SealingError(SealingFailure.BAD_PASSPHRASE, "passphrases don't match")
        return passphrase
    return ask


def choose_key(usage: str, keys: List[GPGKey]) -> GPGKey:
    """Numbered menu on stderr; stdout is kept for command output."""
    stderr(f"Choose a key to {usage} with:")
    for i, key in enumerate(keys, 1):
        stderr(f"  {i}) {key.key_id}  {key.uid}")
    while True:
        sys.stderr.write(f"[1-{len(keys)}] > ")
        sys.stderr.flush()
        try:
            choice = input().strip()
        except EOFError:
            raise SealingError(SealingFailure.NO_SECRET_KEY, f"no {usage} key chosen")
        if choice.isdigit() and 1 <= int(choice) <= len(keys):
            return keys[int(choice) - 1]


def make_sealer(settings: Settings):
    if settings.sealer == "passphrase":
        return PassphraseSealer(passphrase_prompt(settings))
    return GnuPGSealer(settings.gpg_binary, chooser=choose_key)


class Session:
    """What one invocation needs: settings, sealer and who is acting."""

    def __init__(self, settings: Settings, sealer=None, actor: Optional[str] = None):
        self.settings = settings
        self.sealer = sealer or make_sealer(settings)
        self.actor = actor or current_actor()

    def load(self) -> Chain:
        return store.load(self.settings.chain_path, self.sealer, self.settings.difficulty)

    def append(self, chain: Chain, block_type: BlockType, parameters: List[str]) -> None:
        add_block(chain, block_type, parameters, self.actor,
                  select_identities=self.sealer.select_identities,
                  difficulty=self.settings.difficulty)

    def commit(self, chain: Chain) -> None:
        with deferred_signals():
            store.commit(chain, self.settings.chain_path, self.sealer)


# =============================================================================
# Commands
# =============================================================================

def read_secret(args) -> str:
    if args.generate:
        return generate_password(args.length, allowed=args.allowed)
    if not sys.stdin.isatty():
        return sys.stdin.read().rstrip("\n")
    secret = getpass.getpass(f"Secret for '{args.id}': ")
    if secret and getpass.getpass("Confirm: ") != secret:
        raise ValueError("Secrets don't match")
    return secret


def cmd_keep(args, session: Session) -> int:
    chain = session.load()
    if resolve(chain, args.id) is not None and not args.force:
        stderr(f"'{args.id}' already exists (use --force to replace it)")
        return 1

    try:
        payload = encode_payload(read_secret(args))
    except ValueError as e:
        stderr(f"ERROR: {e}")
        return 1

    session.append(chain, BlockType.KEEP, [args.id, payload])
    session.commit(chain)
    stderr(f"Kept '{args.id}'")
    return 0


def cmd_tell(args, session: Session) -> int:
    chain = session.load()
    found = resolve(chain, args.id)
    if found is None:
        stderr(f"'{args.id}' not found")
        return 1

    if args.copy:
        clipboard.check_available()

    # Record the access before revealing anything
    session.append(chain, BlockType.TELL, [args.id])
    session.commit(chain)

    if args.copy:
        timeout = session.settings.clipboard_timeout
        stderr(f"Copied '{args.id}' to clipboard, clearing in {timeout}s (Ctrl+C clears now)")
        clipboard.copy_with_timeout(found.secret, timeout)
    else:
        print(found.secret)
    return 0


def cmd_forget(args, session: Session) -> int:
    chain = session.load()
    if resolve(chain, args.id) is None:
        stderr(f"'{args.id}' not found")
        return 1

    session.append(chain, BlockType.FORGET, [args.id])
    session.commit(chain)
    stderr(f"Forgot '{args.id}'")
    return 0


def cmd_list(args, session: Session) -> int:
    secrets = resolve(session.load())
    if not secrets:
        stderr("No secrets.")
        return 1
    for secret_id in sorted(secrets):
        print(f"{secret_id}\t{format_time(secrets[secret_id].timestamp)}")
    return 0


def cmd_history(args, session: Session) -> int:
    blocks = list(history(session.load(), args.id))
    if not blocks:
        stderr("No history.")
        return 1
    for block in blocks:
        print(f"{format_time(block.timestamp)}\t{block.block_type.value:<6}\t{block.secret_id}\t{block.actor}")
    return 0


def cmd_verify(args, session: Session) -> int:
    chain = session.load()
    if not len(chain):
        stderr("No chain to verify.")
        return 1
    if not store.verify(chain, session.settings.difficulty):
        stderr("✗ Chain validation FAILED")
        return 1
    signing, encryption = chain.identities
    print(f"✓ Chain intact: {len(chain)} blocks, tip {chain.tip}")
    print(f"  signing key: {signing}")
    print(f"  encryption key: {encryption}")
    return 0


def _require_passphrase_sealer(session: Session) -> bool:
    if not isinstance(session.sealer, PassphraseSealer):
        stderr("Recovery kits only work with the passphrase sealer (--sealer passphrase)")
        return False
    return True


def cmd_recovery_kit(args, session: Session) -> int:
    if not _require_passphrase_sealer(session):
        return 1
    chain = session.load()
    if not len(chain):
        stderr("No chain yet, nothing to recover.")
        return 1

    shares = generate_recovery_shares(session.sealer.vault_key, args.k, args.n)
    kit = print_recovery_kit(shares, session.sealer.vault_id, args.k)
    if args.output:
        with open(args.output, "w") as f:
            f.write(kit)
        stderr(f"✓ Saved to: {args.output}")
    else:
        print(kit)
    return 0


def cmd_recover(args, session: Session) -> int:
    if not _require_passphrase_sealer(session):
        return 1

    stderr("Enter recovery shares, one per line. Empty line when done.")
    shares = []
    for line in sys.stdin:
        line = " ".join(line.split())
        if not line:
            break
        shares.append(line)
    if len(shares) < 2:
        stderr("ERROR: Need at least 2 shares")
        return 1

    vault_key = combine_recovery_shares(shares)
    ask = passphrase_prompt(session.settings)
    session.sealer = PassphraseSealer.from_vault_key(vault_key, ask)
    chain = session.load()
    if not len(chain):
        stderr("No chain to recover.")
        return 1

    stderr("✓ Shares accepted. Set a new passphrase.")
    session.sealer.rekey(ask(True))
    session.commit(chain)
    stderr("✓ Passphrase changed. Create a new recovery kit!")
    return 0


# =============================================================================
# Argument parsing
# =============================================================================

def secret_id(value: str) -> str:
    try:
        return check_field("secret id", value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="secretchain",
        description="Keep secrets in a sealed, tamper-evident hash chain.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-f", "--file", help="chain file (default: $SECRETCHAIN_FILE)")
    parser.add_argument("--sealer", choices=["gpg", "passphrase"],
                        help="sealing backend (default: $SECRETCHAIN_SEALER or gpg)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("keep", help="store a secret")
    p.add_argument("id", type=secret_id)
    p.add_argument("--force", action="store_true", help="replace an existing secret")
    p.add_argument("-g", "--generate", action="store_true", help="generate a random password")
    p.add_argument("-l", "--length", type=int, default=20, help="generated length (default 20)")
    p.add_argument("--allow", dest="allowed", action="append", choices=sorted(CHARACTER_CLASSES),
                   help="character class for generated passwords (repeatable; default all)")
    p.add_argument("--no-symbols", dest="allowed", action="store_const",
                   const=["upper", "lower", "digit"], help="letters and digits only")
    p.set_defaults(func=cmd_keep)

    p = sub.add_parser("tell", help="reveal a secret")
    p.add_argument("id", type=secret_id)
    p.add_argument("-c", "--copy", action="store_true", help="copy to clipboard instead of printing")
    p.set_defaults(func=cmd_tell)

    p = sub.add_parser("forget", help="remove a secret")
    p.add_argument("id", type=secret_id)
    p.set_defaults(func=cmd_forget)

    p = sub.add_parser("list", help="list secret ids")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("history", help="show the audit trail")
    p.add_argument("id", nargs="?", type=secret_id)
    p.set_defaults(func=cmd_history)

    p = sub.add_parser("verify", help="validate the whole chain")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("recovery-kit", help="split the vault key into recovery shares")
    p.add_argument("-k", type=int, default=3, help="threshold (default 3)")
    p.add_argument("-n", type=int, default=5, help="total shares (default 5)")
    p.add_argument("-o", "--output", help="write the kit to a file")
    p.set_defaults(func=cmd_recovery_kit)

    p = sub.add_parser("recover", help="reset the passphrase using recovery shares")
    p.set_defaults(func=cmd_recover)

    return parser


def main(argv: Optional[List[str]] = None, env: Optional[Mapping[str, str]] = None, sealer=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env(env)
        if args.file:
            settings.chain_path = args.file
        if args.sealer:
            settings.sealer = args.sealer
        configure_logging("DEBUG" if args.verbose else settings.log_level)
        return args.func(args, Session(settings, sealer))
    except SecretChainError as e:
        stderr(f"{type(e).__name__}: {e}")
        return 1
    except KeyboardInterrupt:
        stderr("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
