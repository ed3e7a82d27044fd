"""
SecretChain - Sealing + CLI Tests

Run with: python test_cli.py   (or pytest)

Covers:
- Passphrase sealer: round trip, wrong passphrase, header tampering
- Shamir recovery of the passphrase sealer key
- GnuPG sealer status parsing (gpg itself is faked)
- keep / tell / forget / list / history / verify end to end
- Clipboard failures and signals held around the commit
"""

import io
import json
import os
import signal
import subprocess
import tempfile
from contextlib import redirect_stderr, redirect_stdout
from unittest import mock

import pyperclip

from secretchain import cli, store
from secretchain.block import BlockType, encode_payload
from secretchain.chain import Chain, add_block
from secretchain.clipboard import copy_with_timeout
from secretchain.config import Settings
from secretchain.crypto import generate_password
from secretchain.errors import ClipboardError, ConfigError, RecoveryError, SealingError, SealingFailure
from secretchain.recovery import combine_recovery_shares, generate_recovery_shares
from secretchain.scanner import resolve
from secretchain.sealing import (
    GnuPGSealer, PassphraseSealer, classify_status, parse_secret_keys, parse_status, signer_matches
)

from test_simple import PlainSealer

# Fast scrypt for tests
FAST_KDF = {"n": 2**10, "r": 8, "p": 1}


def passphrase(value):
    return lambda confirm: value


def reheader(sealed, **changes):
    """Rewrite fields of a sealed file's JSON header."""
    magic, header, body, rest = sealed.split(b"\n", 3)
    fields = json.loads(header)
    fields.update(changes)
    return b"\n".join([magic, json.dumps(fields).encode(), body, rest])


def test_passphrase_sealer():
    """Test scrypt + AES-GCM sealing."""
    print("Testing Passphrase Sealer...")

    sealer = PassphraseSealer(passphrase("correct horse"), **FAST_KDF)
    sign, encrypt = sealer.select_identities()
    assert sign == encrypt == sealer.vault_id
    sealed = sealer.seal(b"genesis\t...\n", sign, encrypt)
    assert b"genesis" not in sealed

    reader = PassphraseSealer(passphrase("correct horse"))
    assert reader.unseal(sealed) == b"genesis\t...\n"
    assert reader.vault_id == sealer.vault_id
    print("  [OK] Seal/unseal round trip")

    try:
        PassphraseSealer(passphrase("wrong")).unseal(sealed)
        assert False, "Wrong passphrase must fail"
    except SealingError as e:
        assert e.kind is SealingFailure.BAD_PASSPHRASE
        print("  [OK] Wrong passphrase rejected")

    tampered = sealed.replace(sealer.vault_id.encode(), b"00000000-0000-4000-8000-000000000000")
    try:
        PassphraseSealer(passphrase("correct horse")).unseal(tampered)
        assert False, "Header tampering must fail"
    except SealingError as e:
        assert e.kind is SealingFailure.BAD_PASSPHRASE
        print("  [OK] Header tampering detected")

    try:
        sealer.seal(b"x", "someone-else", encrypt)
        assert False, "Foreign signing identity must fail"
    except SealingError as e:
        assert e.kind is SealingFailure.INVALID_SIGNER
    try:
        sealer.seal(b"x", sign, "someone-else")
        assert False, "Foreign recipient must fail"
    except SealingError as e:
        assert e.kind is SealingFailure.INVALID_RECIPIENT
    print("  [OK] Identities enforced")

    for garbage in [b"", b"plain text", b"SECRETCHAIN-SEALED-1\n{not json\nAAAA\n"]:
        try:
            PassphraseSealer(passphrase("x")).unseal(garbage)
            assert False, "Garbage must fail"
        except SealingError as e:
            assert e.kind is SealingFailure.MALFORMED
    print("  [OK] Malformed input rejected")

    for changes in [{"nonce": ""}, {"nonce": "AAAA"}, {"kdf_params": {"n": 3, "r": 8, "p": 1}},
                    {"kdf_params": {"n": 2**30, "r": 8, "p": 1}}, {"kdf_params": {"n": 1024, "r": 0, "p": 1}}]:
        try:
            PassphraseSealer(passphrase("correct horse")).unseal(reheader(sealed, **changes))
            assert False, f"Should reject header {changes}"
        except SealingError as e:
            assert e.kind is SealingFailure.MALFORMED
    print("  [OK] Bad nonce and scrypt parameters rejected")

    try:
        PassphraseSealer(passphrase("")).unseal(sealed)
        assert False, "Missing passphrase must fail"
    except SealingError as e:
        assert e.kind is SealingFailure.MISSING_PASSPHRASE
        print("  [OK] Missing passphrase rejected")


def test_recovery():
    """Test recovering a forgotten passphrase from Shamir shares."""
    print("Testing Recovery (Shamir Secret Sharing)...")

    sealer = PassphraseSealer(passphrase("forgotten"), **FAST_KDF)
    sign, encrypt = sealer.select_identities()
    sealed = sealer.seal(b"chain data\n", sign, encrypt)

    shares = generate_recovery_shares(sealer.vault_key, k=2, n=3)
    assert len(shares) == 3
    assert combine_recovery_shares([shares[0], shares[2]]) == sealer.vault_key
    print("  [OK] Any k shares rebuild the key")

    try:
        combine_recovery_shares([shares[1]])
        assert False, "Should require at least k shares"
    except SealingError:
        print("  [OK] Insufficient shares rejected")

    key = combine_recovery_shares(shares[:2])
    recovered = PassphraseSealer.from_vault_key(key, passphrase(None))
    assert recovered.unseal(sealed) == b"chain data\n"
    recovered.rekey("brand new")
    resealed = recovered.seal(b"chain data\n", sign, encrypt)
    assert PassphraseSealer(passphrase("brand new")).unseal(resealed) == b"chain data\n"
    print("  [OK] Unseal with shares, then rekey")

    try:
        generate_recovery_shares(sealer.vault_key, k=4, n=3)
        assert False, "k > n must fail"
    except RecoveryError:
        print("  [OK] Bad thresholds rejected")


LISTING = "\n".join([
    "sec:u:255:22:AAAA1111BBBB2222:1500000000:::u:::scESC:::+:::23::0:",
    "fpr:::::::::0123456789ABCDEF0123456789ABCDEFAAAA1111:",
    "uid:u::::1500000000::HASH::Testy McTestface <testy@mctestface.com>::::::::::0:",
    "ssb:u:255:18:CCCC3333DDDD4444:1500000000::::::e:::+:::23:",
    "sec:e:255:22:EEEE5555FFFF6666:1400000000:1450000000::u:::scSC:::+:::23::0:",
    "fpr:::::::::FEDCBA9876543210FEDCBA9876543210EEEE5555:",
    "uid:e::::1400000000::HASH::Old Key <old@example.com>::::::::::0:",
    "sec:u:255:22:9999888877776666:1500000000:::u:::scS:::+:::23::0:",
    "fpr:::::::::11112222333344445555666677778888ABCDEF01:",
    "uid:u::::1500000000::HASH::Signer Only <sign@example.com>::::::::::0:",
])


def test_gnupg_parsing():
    """Test gpg key listing and status classification."""
    print("Testing GnuPG Parsing...")

    keys = parse_secret_keys(LISTING)
    assert [k.key_id for k in keys["sign"]] == [
        "0123456789ABCDEF0123456789ABCDEFAAAA1111",
        "11112222333344445555666677778888ABCDEF01",
    ]
    assert [k.key_id for k in keys["encrypt"]] == ["0123456789ABCDEF0123456789ABCDEFAAAA1111"]
    assert keys["encrypt"][0].uid == "Testy McTestface <testy@mctestface.com>"
    print("  [OK] Expired keys skipped, capabilities respected")

    status = parse_status(b"gpg: some noise\n[GNUPG:] INV_RECP 0 BADKEY\n[GNUPG:] FAILURE sign-encrypt 53\n")
    assert status == [["INV_RECP", "0", "BADKEY"], ["FAILURE", "sign-encrypt", "53"]]
    assert classify_status(status).kind is SealingFailure.INVALID_RECIPIENT
    assert classify_status([["INV_SGNR", "4", "KEY"]]).kind is SealingFailure.REVOKED_KEY
    assert classify_status([["INV_RECP", "5", "KEY"]]).kind is SealingFailure.EXPIRED_KEY
    assert classify_status([["BAD_PASSPHRASE", "KEY"]]).kind is SealingFailure.BAD_PASSPHRASE
    assert classify_status([["NODATA", "1"]]).kind is SealingFailure.MALFORMED
    assert classify_status([["GOODSIG", "KEY", "me"]]) is None
    print("  [OK] Status lines classified")

    primary = "0123456789ABCDEF0123456789ABCDEFAAAA1111"
    assert signer_matches(primary, ("CCCC3333DDDD4444CCCC3333DDDD4444CCCC3333", primary))
    assert signer_matches("89abcdef0123456789abcdefaaaa1111", (primary,))
    assert signer_matches("89ABCDEFAAAA1111", (primary,))
    assert not signer_matches("AAAA1111", (primary,))
    assert not signer_matches(primary, ("FEDCBA9876543210FEDCBA9876543210EEEE5555",))
    assert not signer_matches(primary, ())
    print("  [OK] Signer matched by fingerprint or long key id")


def fake_gpg(returncode, stdout=b"", status=()):
    stderr = "".join(f"[GNUPG:] {line}\n" for line in status).encode()
    return mock.patch(
        "secretchain.sealing.subprocess.run",
        return_value=subprocess.CompletedProcess([], returncode, stdout, stderr),
    )


def test_gnupg_sealer():
    """Test the gpg sealer against a faked gpg."""
    print("Testing GnuPG Sealer...")

    sealer = GnuPGSealer("gpg")

    with fake_gpg(0, b"CIPHERTEXT") as run:
        assert sealer.seal(b"chain", "SIGNKEY", "ENCKEY") == b"CIPHERTEXT"
        cmd = run.call_args[0][0]
        assert cmd[0] == "gpg" and "--sign" in cmd and "--encrypt" in cmd
        assert cmd[cmd.index("--local-user") + 1] == "SIGNKEY"
        assert cmd[cmd.index("--recipient") + 1] == "ENCKEY"
        assert run.call_args[1]["input"] == b"chain"
    print("  [OK] Seal invokes gpg --sign --encrypt")

    with fake_gpg(2, status=["INV_SGNR 0 SIGNKEY", "FAILURE sign 17"]):
        try:
            sealer.seal(b"chain", "SIGNKEY", "ENCKEY")
            assert False, "Invalid signer must fail"
        except SealingError as e:
            assert e.kind is SealingFailure.INVALID_SIGNER

    with fake_gpg(0, b"plain", status=["DECRYPTION_OKAY", "GOODSIG ABC me", "VALIDSIG FPR123 2024-01-01"]):
        assert sealer.unseal(b"CIPHERTEXT") == b"plain"
        assert sealer.signers == ("FPR123",)
        sealer.check_signer("FPR123")
    print("  [OK] Unseal requires a good signature")

    with fake_gpg(0, b"plain", status=["DECRYPTION_OKAY"]):
        try:
            sealer.unseal(b"CIPHERTEXT")
            assert False, "Unsigned data must fail"
        except SealingError as e:
            assert e.kind is SealingFailure.NO_SIGNATURE

    with fake_gpg(0, b"plain", status=["DECRYPTION_OKAY", "EXPKEYSIG ABC me"]):
        try:
            sealer.unseal(b"CIPHERTEXT")
            assert False, "Expired signer must fail"
        except SealingError as e:
            assert e.kind is SealingFailure.EXPIRED_KEY
    print("  [OK] Missing/expired signatures rejected")

    with fake_gpg(0, LISTING.encode()):
        chooser = mock.Mock(side_effect=lambda usage, keys: keys[-1])
        sealer.chooser = chooser
        assert sealer.select_identities() == (
            "11112222333344445555666677778888ABCDEF01",
            "0123456789ABCDEF0123456789ABCDEFAAAA1111",
        )
        assert chooser.call_count == 1  # only one encryption key, no question asked
    print("  [OK] Key selection")

    missing = GnuPGSealer("__no_such_gpg_binary__")
    try:
        missing.unseal(b"CIPHERTEXT")
        assert False, "Missing binary must fail"
    except SealingError as e:
        assert e.kind is SealingFailure.UNAVAILABLE
        print("  [OK] Missing gpg binary reported")

    signing = "0123456789ABCDEF0123456789ABCDEFAAAA1111"
    chain = Chain()
    add_block(chain, BlockType.KEEP, ["db", encode_payload("p@ss")], "alice@laptop",
              lambda: (signing, "ENCKEY"))
    plaintext = chain.encode().encode()
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "chain")
        with open(path, "wb") as f:
            f.write(b"CIPHERTEXT")

        # Signed by a subkey: VALIDSIG names the primary key last
        validsig = f"VALIDSIG SUBKEYFPR 2024-01-01 1700000000 0 4 0 22 8 00 {signing}"
        with fake_gpg(0, plaintext, status=["GOODSIG ABC me", validsig]):
            assert resolve(store.load(path, sealer), "db").secret == "p@ss"
        print("  [OK] Chain signed by its genesis key loads")

        with fake_gpg(0, plaintext, status=["GOODSIG X mallory", "VALIDSIG ATTACKERFPR 2024-01-01"]):
            try:
                store.load(path, sealer)
                assert False, "Foreign signer must fail"
            except SealingError as e:
                assert e.kind is SealingFailure.BAD_SIGNATURE
        print("  [OK] Chain re-signed by another key refused")


def test_config():
    """Test settings from environment."""
    print("Testing Config...")

    settings = Settings.from_env({})
    assert settings.sealer == "gpg" and settings.difficulty == "00"
    settings = Settings.from_env({"SECRETCHAIN_SEALER": "Passphrase", "SECRETCHAIN_DIFFICULTY": "0"})
    assert settings.sealer == "passphrase" and settings.difficulty == "0"

    for bad in [{"SECRETCHAIN_SEALER": "rot13"}, {"SECRETCHAIN_DIFFICULTY": "0G"},
                {"SECRETCHAIN_DIFFICULTY": "AB"}, {"SECRETCHAIN_DIFFICULTY": ""},
                {"SECRETCHAIN_CLIPBOARD_TIMEOUT": "soon"}, {"SECRETCHAIN_CLIPBOARD_TIMEOUT": "0"}]:
        try:
            Settings.from_env(bad)
            assert False, f"Should reject {bad}"
        except ConfigError:
            pass
    print("  [OK] Environment settings validated")

    assert len(generate_password(12, allowed=["digit"])) == 12
    assert generate_password(12, allowed=["digit"]).isdigit()
    pwd = generate_password(4, allowed=["upper", "lower", "digit", "symbol"])
    assert any(c.isupper() for c in pwd) and any(c.isdigit() for c in pwd)
    print("  [OK] Password generation honours character classes")


def run_cli(args, path, sealer, stdin="", **env_overrides):
    out, err = io.StringIO(), io.StringIO()
    env = {"SECRETCHAIN_LOG_LEVEL": "WARNING", **env_overrides}
    with mock.patch("sys.stdin", io.StringIO(stdin)), redirect_stdout(out), redirect_stderr(err):
        code = cli.main(["--file", path] + args, env=env, sealer=sealer)
    return code, out.getvalue(), err.getvalue()


def test_cli_flow():
    """Test keep/tell/forget/list/history/verify end to end."""
    print("Testing CLI...")

    sealer = PlainSealer()
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "chain")

        code, out, err = run_cli(["tell", "db"], path, sealer)
        assert code == 1 and "not found" in err
        assert not os.path.exists(path)

        assert run_cli(["keep", "db"], path, sealer, stdin="p@ss\n")[0] == 0
        assert run_cli(["keep", "api", "--generate", "--length", "30"], path, sealer)[0] == 0
        print("  [OK] keep (stdin and generated)")

        code, out, err = run_cli(["keep", "db"], path, sealer, stdin="other\n")
        assert code == 1 and "already exists" in err
        assert run_cli(["keep", "db", "--force"], path, sealer, stdin="n3w\n")[0] == 0
        print("  [OK] Existing secret needs --force")

        code, out, _ = run_cli(["tell", "db"], path, sealer)
        assert code == 0 and out == "n3w\n"
        code, out, _ = run_cli(["tell", "api"], path, sealer)
        assert code == 0 and len(out.strip()) == 30
        print("  [OK] tell prints the latest value")

        code, out, _ = run_cli(["list"], path, sealer)
        assert code == 0 and [line.split("\t")[0] for line in out.splitlines()] == ["api", "db"]

        assert run_cli(["forget", "db"], path, sealer)[0] == 0
        assert run_cli(["forget", "db"], path, sealer)[0] == 1
        assert run_cli(["tell", "db"], path, sealer)[0] == 1
        code, out, _ = run_cli(["list"], path, sealer)
        assert [line.split("\t")[0] for line in out.splitlines()] == ["api"]
        print("  [OK] forget + list")

        code, out, _ = run_cli(["history", "db"], path, sealer)
        kinds = [line.split("\t")[1].strip() for line in out.splitlines()]
        assert kinds == ["keep", "keep", "tell", "forget"]
        assert "n3w" not in out and "p@ss" not in out
        print("  [OK] history shows actions, never payloads")

        code, out, _ = run_cli(["verify"], path, sealer)
        assert code == 0 and "Chain intact" in out
        chain = store.load(path, sealer)
        assert resolve(chain, "db") is None and len(chain) == 7
        print("  [OK] verify")

        # Corrupt the tip: every command refuses to work
        with open(path, "rb") as f:
            data = f.read()
        with open(path, "wb") as f:
            f.write(data.replace(b"\ntell\t", b"\nkeep\t", 1))
        code, out, err = run_cli(["list"], path, sealer)
        assert code == 1 and "IntegrityError" in err and out == ""
        print("  [OK] Integrity failure is fatal and named")


def test_clipboard():
    """Test copy + timed clear, and tell --copy."""
    print("Testing Clipboard...")

    with mock.patch("secretchain.clipboard.pyperclip") as clip:
        clip.PyperclipException = pyperclip.PyperclipException
        clip.paste.return_value = "s3cret"
        assert copy_with_timeout("s3cret", 5, sleep=lambda seconds: None)
        assert clip.copy.call_args_list == [mock.call("s3cret"), mock.call("")]

        clip.reset_mock()
        clip.paste.return_value = "something the user copied later"
        assert not copy_with_timeout("s3cret", 5, sleep=lambda seconds: None)
        clip.copy.assert_called_once_with("s3cret")
        print("  [OK] Cleared only if unchanged")

        clip.reset_mock()
        clip.copy.side_effect = pyperclip.PyperclipException("no copy/paste mechanism")
        try:
            copy_with_timeout("s3cret", 5, sleep=lambda seconds: None)
            assert False, "Missing clipboard must fail"
        except ClipboardError:
            print("  [OK] Missing clipboard reported")

    sealer = PlainSealer()
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "chain")
        run_cli(["keep", "db"], path, sealer, stdin="p@ss")
        with mock.patch("secretchain.clipboard.check_available"), \
                mock.patch("secretchain.clipboard.copy_with_timeout") as copy:
            code, out, _ = run_cli(["tell", "db", "--copy"], path, sealer)
        assert code == 0 and out == ""
        copy.assert_called_once_with("p@ss", 45)
        print("  [OK] tell --copy never prints the secret")

        blocks = len(store.load(path, sealer))
        no_backend = pyperclip.PyperclipException("no copy/paste mechanism")
        with mock.patch("secretchain.clipboard.pyperclip.paste", side_effect=no_backend):
            code, out, err = run_cli(["tell", "db", "--copy"], path, sealer)
        assert code == 1 and "ClipboardError" in err and out == ""
        assert len(store.load(path, sealer)) == blocks
        print("  [OK] tell --copy without a clipboard fails before recording")


def test_deferred_signals():
    """Test that the commit point holds termination signals."""
    print("Testing Deferred Signals...")

    received = []
    previous = signal.signal(signal.SIGINT, lambda signum, frame: received.append(signum))
    try:
        with cli.deferred_signals():
            signal.raise_signal(signal.SIGINT)
            assert received == []
            assert signal.getsignal(signal.SIGINT) is not previous
        assert received == [signal.SIGINT]
        print("  [OK] SIGINT delivered after the block exits")

        handler = signal.getsignal(signal.SIGINT)
        with cli.deferred_signals():
            pass
        assert signal.getsignal(signal.SIGINT) is handler
        print("  [OK] Handlers restored")
    finally:
        signal.signal(signal.SIGINT, previous)


def test_cli_passphrase_sealer():
    """Test the CLI with the real passphrase sealer."""
    print("Testing CLI + Passphrase Sealer...")

    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "chain")
        ask = passphrase("hunter2")

        assert run_cli(["keep", "db"], path, PassphraseSealer(ask, **FAST_KDF), stdin="p@ss")[0] == 0
        code, out, _ = run_cli(["tell", "db"], path, PassphraseSealer(ask))
        assert code == 0 and out == "p@ss\n"

        code, out, err = run_cli(["tell", "db"], path, PassphraseSealer(passphrase("nope")))
        assert code == 1 and "SealingError" in err and out == ""
        print("  [OK] Sealed end to end, wrong passphrase refused")


def test_cli_recovery():
    """Test recovery-kit then recover with a new passphrase."""
    print("Testing CLI Recovery...")

    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "chain")
        run_cli(["keep", "db"], path, PassphraseSealer(passphrase("old"), **FAST_KDF), stdin="p@ss")

        code, kit, _ = run_cli(["recovery-kit", "-k", "2", "-n", "3"], path, PassphraseSealer(passphrase("old")))
        shares = [line for line in kit.splitlines() if len(line.split()) >= 20]
        assert code == 0 and len(shares) == 3

        code, _, err = run_cli(["recover"], path, None, stdin="\n".join(shares[1:]) + "\n\n",
                               SECRETCHAIN_SEALER="passphrase", SECRETCHAIN_PASSPHRASE="new")
        assert code == 0, err

        code, out, _ = run_cli(["tell", "db"], path, PassphraseSealer(passphrase("new")))
        assert code == 0 and out == "p@ss\n"
        assert run_cli(["tell", "db"], path, PassphraseSealer(passphrase("old")))[0] == 1
        print("  [OK] Passphrase reset from shares")

        for bad in [["-k", "1"], ["-k", "4", "-n", "3"], ["-n", "17"]]:
            code, out, err = run_cli(["recovery-kit", *bad], path, PassphraseSealer(passphrase("new")))
            assert code == 1 and "RecoveryError" in err and out == ""
        print("  [OK] Bad share counts reported, not raised")

        code, _, err = run_cli(["recovery-kit"], path, PlainSealer())
        assert code == 1 and "passphrase sealer" in err
        print("  [OK] Recovery kits need the passphrase sealer")


def run_all_tests():
    print("=" * 70)
    print("SecretChain - Sealing + CLI Test Suite")
    print("=" * 70)
    print()

    tests = [
        test_passphrase_sealer,
        test_recovery,
        test_gnupg_parsing,
        test_gnupg_sealer,
        test_config,
        test_cli_flow,
        test_clipboard,
        test_deferred_signals,
        test_cli_passphrase_sealer,
        test_cli_recovery,
    ]

    failed = []

    for test in tests:
        try:
            test()
            print()
        except Exception as e:
            print(f"  [FAIL] TEST FAILED: {e}")
            failed.append((test.__name__, e))
            print()

    print("=" * 70)
    if not failed:
        print("[OK] ALL TESTS PASSED!")
    else:
        print(f"[FAIL] {len(failed)} TESTS FAILED:")
        for name, error in failed:
            print(f"  - {name}: {error}")
    print("=" * 70)

    return len(failed) == 0


if __name__ == "__main__":
    import sys
    success = run_all_tests()
    sys.exit(0 if success else 1)
