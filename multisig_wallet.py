"""
m-of-n Multisig Wallet (P2SH / P2WSH)
=====================================
- BIP-39 24-word mnemonic per signer (256-bit entropy)
- BIP-32 derivation on the BIP-48 multisig path m/48'/0'/0'/2'/{index}
- Sorted-key OP_CHECKMULTISIG redeem script (BIP-67 ordering)
- Legacy P2SH (Base58Check) and native P2WSH (bech32) addresses
- SIGHASH_ALL input signing with ordered signature assembly
- AES-256-GCM encrypted backup of the mnemonics

Dependencies:
    pip install coincurve mnemonic base58 bech32 pycryptodome

Key Ordering:
    ``WalletState.key_pairs`` stays in signer-slot order, so slot ``i``
    always pairs with path ``.../{i}`` and its own mnemonic.  The redeem
    script, ``MultisigScript.public_keys`` and ``get_public_keys()`` use
    byte-sorted order.  Two cosigners holding the same public keys and
    policy always derive the same script and addresses, whatever order
    the keys were exchanged in.

Signature Ordering:
    OP_CHECKMULTISIG walks signatures and keys in lockstep, so signatures
    are always placed in the order their public keys appear in the redeem
    script (ascending key bytes), never in the order signers signed.

Secrets:
    Mnemonics and private keys are never logged and are left out of
    ``repr()``.  The mnemonic is the only backup of a signer's key.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import time
from base64 import b64decode, b64encode
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

# Real secp256k1 (libsecp256k1), BIP-32 and BIP-39
from coincurve import PrivateKey as _Secp256k1PrivateKey
from coincurve import PublicKey as _Secp256k1PublicKey
from bip32 import BIP32
from mnemonic import Mnemonic

# Symmetric encryption for the mnemonic backup
from Crypto.Cipher import AES
from Crypto.Protocol.KDF import scrypt

from bitcoin_protocol import (
    OP_0,
    OP_CHECKMULTISIG,
    LegacySighash,
    ScriptDecodeError,
    SegwitV0Sighash,
    SighashType,
    Transaction,
    TxIn,
    TxOut,
    base58check_decode,
    base58check_encode,
    compile_script,
    decode_segwit_address,
    decode_small_int,
    decompile_script,
    hash160,
    p2pkh_script_pubkey,
    p2sh_script_pubkey,
    p2wsh_script_pubkey,
    segwit_address,
    sha256,
    small_int_opcode,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
from logging.handlers import RotatingFileHandler

log = logging.getLogger("multisig_wallet")
log.addHandler(logging.NullHandler())


def setup_logging(log_file: str = "multisig_wallet.log") -> None:
    """
    Configure logging with rotating file + console.

    Call once at startup; safe to call multiple times (idempotent).
    Records carry policies, paths, public keys and addresses only:
    mnemonics, seeds and private keys are never passed to the logger, so
    the log file needs no more protection than a watch-only wallet.
    """
    if getattr(setup_logging, "_done", False):
        return

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    file_handler = RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5,
    )
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(fmt)
    console_handler.setLevel(logging.WARNING)

    log.addHandler(file_handler)
    log.addHandler(console_handler)
    log.setLevel(logging.INFO)

    setup_logging._done = True  # type: ignore[attr-defined]


# ============================================================
# ERRORS
# ============================================================

class MultisigError(Exception):
    """Base class for every wallet-level failure."""


class InvalidPolicy(MultisigError, ValueError):
    """Policy violates 1 <= m <= n <= MAX_SIGNERS, or keys do not match n."""


class KeyGenerationFailure(MultisigError):
    """Derivation produced an invalid private key (negligible probability)."""


class MissingPrivateKey(MultisigError):
    """Signing was attempted with a public-only key record."""


class InvalidInputIndex(MultisigError, IndexError):
    """Input index outside [0, number of inputs)."""


class ScriptConstructionFailure(MultisigError):
    """A script or address could not be built from the given material."""


class SignerNotInScript(MultisigError):
    """Signing key is not one of the redeem script's public keys."""


class IncompleteSignatures(MultisigError):
    """Fewer than m signatures were supplied for a strict finalisation."""


class WalletNotInitialized(MultisigError):
    """Wallet accessor used before ``generate_wallet()``."""


class WalletAlreadyInitialized(MultisigError):
    """``generate_wallet()`` called on a wallet that already holds keys."""


class UnknownNetwork(ValueError):
    pass


class InvalidMnemonic(ValueError):
    pass


# ============================================================
# POLICY & NETWORK CONFIGURATION
# ============================================================

# OP_1..OP_16 can express n up to 16, but a P2SH redeem script must fit in
# one 520-byte push: 15 compressed keys (513 bytes) is the largest that does.
MAX_SIGNERS = 15


@dataclass(frozen=True)
class MultisigPolicy:
    """Spending policy: *required* signatures out of *total* keys."""
    required: int
    total: int

    def __post_init__(self) -> None:
        for name, value in (("required", self.required), ("total", self.total)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidPolicy(f"{name} must be an integer, got {value!r}")
        if self.total < 1:
            raise InvalidPolicy(f"total signers must be >= 1, got {self.total}")
        if self.required < 1:
            raise InvalidPolicy(
                f"required signatures must be >= 1, got {self.required}"
            )
        if self.required > self.total:
            raise InvalidPolicy(
                f"required signatures ({self.required}) exceed "
                f"total signers ({self.total})"
            )
        if self.total > MAX_SIGNERS:
            raise InvalidPolicy(
                f"total signers ({self.total}) exceeds maximum of {MAX_SIGNERS}"
            )

    def __str__(self) -> str:
        return f"{self.required}-of-{self.total}"


@dataclass(frozen=True)
class NetworkParams:
    """Address-encoding parameters for one Bitcoin network."""
    name: str
    p2pkh_version: int
    p2sh_version: int
    bech32_hrp: str

    def address_to_script_pubkey(self, address: str) -> bytes:
        """Decode a P2PKH / P2SH / segwit address of this network."""
        if address.lower().startswith(self.bech32_hrp + "1"):
            ver, prog = decode_segwit_address(self.bech32_hrp, address)
            # OP_0 / OP_1..OP_16 followed by the program push
            return bytes([small_int_opcode(ver), len(prog)]) + prog
        version, payload = base58check_decode(address)
        if version == self.p2sh_version:
            return p2sh_script_pubkey(payload)
        if version == self.p2pkh_version:
            return p2pkh_script_pubkey(payload)
        raise ValueError(
            f"Address {address} has version 0x{version:02x}, not a "
            f"{self.name} P2PKH/P2SH address"
        )


NETWORKS: Dict[str, NetworkParams] = {
    "mainnet": NetworkParams("mainnet", 0x00, 0x05, "bc"),
    "testnet": NetworkParams("testnet", 0x6F, 0xC4, "tb"),
    "signet":  NetworkParams("signet",  0x6F, 0xC4, "tb"),
    "regtest": NetworkParams("regtest", 0x6F, 0xC4, "bcrt"),
}


def get_network(network: Union[str, NetworkParams]) -> NetworkParams:
    if isinstance(network, NetworkParams):
        return network
    try:
        return NETWORKS[network]
    except KeyError:
        raise UnknownNetwork(
            f"Unknown network {network!r}; expected one of {sorted(NETWORKS)}"
        ) from None


# ============================================================
# KEY DERIVATION ENGINE  (BIP-39 + BIP-32 / BIP-48)
# ============================================================

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
HARDENED = 0x80000000

# BIP-48: purpose 48', coin 0', account 0', script type 2' (P2WSH)
BIP48_ACCOUNT_PATH = "m/48'/0'/0'/2'"

MNEMONIC_ENTROPY_BYTES = 32     # 256 bits -> 24 words

_BIP39 = Mnemonic("english")
_PATH_COMPONENT = re.compile(r"^(\d+)(['hH]?)$")


@dataclass(frozen=True)
class KeyPairRecord:
    """
    One signer slot.

    ``mnemonic`` and ``private_key`` are None for a cosigner's public
    share.  Neither appears in ``repr()``.
    """
    mnemonic: Optional[str] = field(repr=False)
    path: str
    public_key: bytes
    private_key: Optional[bytes] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if len(self.public_key) != 33 or self.public_key[0] not in (2, 3):
            raise ValueError(
                f"public key must be 33-byte compressed SEC1, "
                f"got {len(self.public_key)} bytes"
            )
        if self.private_key is not None and len(self.private_key) != 32:
            raise ValueError(
                f"private key must be 32 bytes, got {len(self.private_key)}"
            )

    @property
    def has_private_key(self) -> bool:
        return self.private_key is not None

    @property
    def index(self) -> int:
        """Signer slot, i.e. the last (non-hardened) path component."""
        return parse_derivation_path(self.path)[-1] & ~HARDENED

    def public_only(self) -> "KeyPairRecord":
        """The shareable form of this record (no mnemonic, no private key)."""
        return replace(self, mnemonic=None, private_key=None)

    # ---- serialisation -------------------------------------------------
    def to_dict(self) -> Dict[str, str]:
        d = {"path": self.path, "public_key": self.public_key.hex()}
        if self.mnemonic is not None:
            d["mnemonic"] = self.mnemonic
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, str], passphrase: str = "") -> "KeyPairRecord":
        """Rebuild a record; slots with a mnemonic are re-derived from it."""
        public_key = bytes.fromhex(d["public_key"])
        if "mnemonic" not in d:
            return cls(mnemonic=None, path=d["path"], public_key=public_key)
        record = _record_from_mnemonic(d["mnemonic"], d["path"], passphrase)
        if record.public_key != public_key:
            raise ValueError(
                f"mnemonic for {d['path']} re-derives a different public key "
                f"(wrong passphrase?)"
            )
        return record


def parse_derivation_path(path: str) -> List[int]:
    """Parse ``m/48'/0'/0'/2'/0`` (or ``48h``) into uint32 indices."""
    parts = path.strip().split("/")
    if parts[0] != "m":
        raise ValueError(f"Path must start with 'm': {path}")

    indices: List[int] = []
    for part in parts[1:]:
        match = _PATH_COMPONENT.match(part)
        if not match:
            raise ValueError(f"Bad path component {part!r} in {path}")
        idx = int(match.group(1))
        if idx >= HARDENED:
            raise ValueError(f"Path index {idx} out of range in {path}")
        if match.group(2):
            idx += HARDENED
        indices.append(idx)
    return indices


def validate_path(path: str, index: Optional[int] = None,
                  account_path: str = BIP48_ACCOUNT_PATH) -> bool:
    """
    True iff *path* is ``account_path/{i}`` with a non-hardened leaf
    (and ``i == index`` when *index* is given).
    """
    try:
        indices = parse_derivation_path(path)
        prefix = parse_derivation_path(account_path)
    except ValueError:
        return False
    if len(indices) != len(prefix) + 1 or indices[:-1] != prefix:
        return False
    leaf = indices[-1]
    if leaf >= HARDENED:
        return False
    return index is None or leaf == index


def validate_mnemonic(words: str) -> bool:
    """BIP-39 wordlist and checksum check."""
    return _BIP39.check(words)


def derive_path(seed: bytes, path: str) -> Tuple[bytes, bytes]:
    """
    Return ``(private_key, chain_code)`` at *path* below the seed's master.

    Raises:
        KeyGenerationFailure: the derivation hit an invalid key.  This has
            negligible probability and is never retried.
    """
    indices = parse_derivation_path(path)
    try:
        chain_code, private_key = BIP32.from_seed(seed).get_extended_privkey_from_path(
            indices
        )
    except Exception as exc:
        log.warning("Failed to derive private key at %s", path)
        raise KeyGenerationFailure(f"{path} yields no valid private key") from exc
    if not private_key or not 0 < int.from_bytes(private_key, "big") < SECP256K1_N:
        log.warning("Derivation produced an invalid private key at %s", path)
        raise KeyGenerationFailure(f"{path} yields an invalid private key")
    return bytes(private_key), bytes(chain_code)


def _record_from_mnemonic(mnemonic: str, path: str, passphrase: str) -> KeyPairRecord:
    if not validate_mnemonic(mnemonic):
        raise InvalidMnemonic("mnemonic fails BIP-39 wordlist/checksum validation")
    seed = Mnemonic.to_seed(mnemonic, passphrase)
    private_key, _ = derive_path(seed, path)
    public_key = _Secp256k1PrivateKey(private_key).public_key.format(compressed=True)
    log.debug("Derived signer key at %s", path)
    return KeyPairRecord(
        mnemonic=mnemonic,
        path=path,
        public_key=public_key,
        private_key=private_key,
    )


def _check_index(index: int) -> None:
    if isinstance(index, bool) or not isinstance(index, int):
        raise ValueError(f"signer index must be an integer, got {index!r}")
    if not 0 <= index < HARDENED:
        raise ValueError(f"signer index out of range: {index}")


def key_pair_from_mnemonic(
    mnemonic: str,
    index: int,
    *,
    account_path: str = BIP48_ACCOUNT_PATH,
    passphrase: str = "",
) -> KeyPairRecord:
    """Restore signer slot *index* from its backup words."""
    _check_index(index)
    return _record_from_mnemonic(mnemonic, f"{account_path}/{index}", passphrase)


def generate_key_pair(
    index: int,
    *,
    account_path: str = BIP48_ACCOUNT_PATH,
    passphrase: str = "",
) -> KeyPairRecord:
    """
    Generate a fresh signer key with a 24-word mnemonic backup.

    The key sits at ``{account_path}/{index}``; the leaf is non-hardened so
    cosigner public keys can be derived from an account xpub.  The empty
    passphrase is the default policy; a non-empty one must be kept with
    the mnemonic or the key cannot be restored.

    Raises:
        KeyGenerationFailure: derivation hit an invalid key.
    """
    _check_index(index)
    entropy = secrets.token_bytes(MNEMONIC_ENTROPY_BYTES)
    mnemonic = _BIP39.to_mnemonic(entropy)
    return key_pair_from_mnemonic(
        mnemonic, index, account_path=account_path, passphrase=passphrase,
    )


# ============================================================
# MULTISIG SCRIPT BUILDER
# ============================================================

@dataclass(frozen=True)
class AddressSet:
    p2sh: str
    p2wsh: str


@dataclass(frozen=True)
class MultisigScript:
    """Redeem script plus its P2SH / P2WSH envelopes on one network."""
    policy: MultisigPolicy
    public_keys: Tuple[bytes, ...]        # byte-sorted, as embedded
    redeem_script: bytes
    addresses: AddressSet
    network: NetworkParams

    @property
    def script_hash(self) -> bytes:
        """HASH160 of the redeem script (P2SH commitment)."""
        return hash160(self.redeem_script)

    @property
    def witness_program(self) -> bytes:
        """SHA-256 of the redeem script (P2WSH commitment)."""
        return sha256(self.redeem_script)

    @property
    def p2sh_script_pubkey(self) -> bytes:
        return p2sh_script_pubkey(self.script_hash)

    @property
    def p2wsh_script_pubkey(self) -> bytes:
        return p2wsh_script_pubkey(self.witness_program)

    def key_position(self, public_key: bytes) -> int:
        try:
            return self.public_keys.index(public_key)
        except ValueError:
            raise SignerNotInScript(
                f"public key {public_key.hex()[:16]}... is not in the redeem script"
            ) from None


def sort_public_keys(public_keys: Sequence[bytes]) -> List[bytes]:
    """Byte-lexicographic order of the compressed encodings (BIP-67)."""
    return sorted(bytes(pk) for pk in public_keys)


def _check_public_key(public_key: bytes) -> None:
    if len(public_key) != 33:
        raise ScriptConstructionFailure(
            f"public key must be 33-byte compressed, got {len(public_key)} bytes"
        )
    try:
        _Secp256k1PublicKey(public_key)
    except ValueError as exc:
        raise ScriptConstructionFailure(
            f"invalid secp256k1 point {public_key.hex()[:16]}...: {exc}"
        ) from exc


def encode_multisig_script(required: int, public_keys: Sequence[bytes]) -> bytes:
    """
    OP_m <pk_0> ... <pk_{n-1}> OP_n OP_CHECKMULTISIG, keys in the order given.

    ``build_multisig`` sorts before calling this; use it directly only to
    reproduce a script whose key order is already fixed.
    """
    script = compile_script([
        small_int_opcode(required),
        *public_keys,
        small_int_opcode(len(public_keys)),
        OP_CHECKMULTISIG,
    ])
    if not script:
        raise ScriptConstructionFailure("script encoder produced no output")
    return script


def build_multisig(
    policy: MultisigPolicy,
    public_keys: Sequence[bytes],
    network: Union[str, NetworkParams] = "testnet",
) -> MultisigScript:
    """
    Build the sorted-key redeem script and its P2SH / P2WSH addresses.

    Raises:
        InvalidPolicy: ``len(public_keys) != policy.total``.
        ScriptConstructionFailure: bad or duplicate key, or an address
            encoder returned nothing.
    """
    params = get_network(network)
    if len(public_keys) != policy.total:
        raise InvalidPolicy(
            f"policy {policy} needs {policy.total} public keys, "
            f"got {len(public_keys)}"
        )
    for pk in public_keys:
        _check_public_key(pk)

    sorted_keys = sort_public_keys(public_keys)
    if len(set(sorted_keys)) != len(sorted_keys):
        raise ScriptConstructionFailure("duplicate public keys in multisig set")

    redeem_script = encode_multisig_script(policy.required, sorted_keys)

    p2sh = base58check_encode(params.p2sh_version, hash160(redeem_script))
    p2wsh = segwit_address(params.bech32_hrp, 0, sha256(redeem_script))
    if not p2sh or p2wsh is None:
        raise ScriptConstructionFailure("address encoding failed")

    return MultisigScript(
        policy=policy,
        public_keys=tuple(sorted_keys),
        redeem_script=redeem_script,
        addresses=AddressSet(p2sh=p2sh, p2wsh=p2wsh),
        network=params,
    )


def parse_multisig_script(script: bytes) -> Tuple[int, List[bytes]]:
    """
    Return ``(m, public_keys)`` of a canonical bare-multisig script.

    Raises:
        ScriptConstructionFailure: anything else.
    """
    try:
        chunks = decompile_script(script)
    except ScriptDecodeError as exc:
        raise ScriptConstructionFailure(f"undecodable script: {exc}") from exc

    if len(chunks) < 4 or chunks[-1] != OP_CHECKMULTISIG:
        raise ScriptConstructionFailure("not an OP_CHECKMULTISIG script")

    m_op, n_op, keys = chunks[0], chunks[-2], chunks[1:-2]
    m = decode_small_int(m_op) if isinstance(m_op, int) else None
    n = decode_small_int(n_op) if isinstance(n_op, int) else None
    if not m or not n:
        raise ScriptConstructionFailure("m / n must be OP_1..OP_16")
    if not all(isinstance(k, bytes) and len(k) == 33 for k in keys):
        raise ScriptConstructionFailure("keys must be 33-byte pushes")
    if len(keys) != n or not 1 <= m <= n:
        raise ScriptConstructionFailure(
            f"inconsistent multisig counts: m={m}, n={n}, keys={len(keys)}"
        )
    if encode_multisig_script(m, keys) != bytes(script):
        raise ScriptConstructionFailure("non-minimal multisig encoding")
    return m, [bytes(k) for k in keys]


def validate_multisig_script(script: bytes) -> bool:
    try:
        parse_multisig_script(script)
    except ScriptConstructionFailure:
        return False
    return True


# ============================================================
# TRANSACTION SIGNER
# ============================================================

SCRIPT_TYPES = ("p2sh", "p2wsh")


def _check_script_type(script_type: str, amount: Optional[int]) -> None:
    if script_type not in SCRIPT_TYPES:
        raise ValueError(
            f"script_type must be one of {SCRIPT_TYPES}, got {script_type!r}"
        )
    if script_type == "p2wsh" and amount is None:
        raise ValueError("P2WSH signing commits to the spent amount; pass amount=")


def _check_input_index(tx: Transaction, input_index: int) -> None:
    if isinstance(input_index, bool) or not isinstance(input_index, int):
        raise InvalidInputIndex(f"input index must be an integer, got {input_index!r}")
    if not 0 <= input_index < len(tx.inputs):
        raise InvalidInputIndex(
            f"input index {input_index} out of range "
            f"(transaction has {len(tx.inputs)} inputs)"
        )


def signature_digest(
    tx: Transaction,
    input_index: int,
    redeem_script: bytes,
    *,
    script_type: str = "p2sh",
    amount: Optional[int] = None,
) -> bytes:
    """SIGHASH_ALL digest with the redeem script as scriptCode."""
    _check_script_type(script_type, amount)
    _check_input_index(tx, input_index)
    if script_type == "p2wsh":
        return SegwitV0Sighash(tx, input_index).compute(
            redeem_script, amount, SighashType.ALL,
        )
    return LegacySighash(tx, input_index).compute(redeem_script, SighashType.ALL)


def verify_signature(public_key: bytes, signature: bytes, digest: bytes) -> bool:
    """Check a DER signature (without the trailing sighash byte)."""
    try:
        return _Secp256k1PublicKey(public_key).verify(signature, digest, hasher=None)
    except ValueError:
        return False


def create_witness(signatures: Sequence[bytes], redeem_script: bytes) -> List[bytes]:
    """P2WSH witness stack: [<empty dummy>, sig..., redeem_script]."""
    return [b"", *signatures, redeem_script]


def _unlocking_elements(tx: Transaction, input_index: int, script_type: str) -> List[bytes]:
    txin = tx.inputs[input_index]
    if script_type == "p2wsh":
        return list(txin.witness)
    if not txin.script_sig:
        return []
    try:
        chunks = decompile_script(txin.script_sig)
    except ScriptDecodeError as exc:
        raise ScriptConstructionFailure(
            f"existing scriptSig on input {input_index} is undecodable: {exc}"
        ) from exc
    return [c for c in chunks if isinstance(c, bytes)]


def _match_signatures(
    elements: Sequence[bytes],
    redeem_script: bytes,
    public_keys: Sequence[bytes],
    digest: bytes,
) -> Dict[bytes, bytes]:
    """Map each existing signature to the key it verifies against."""
    found: Dict[bytes, bytes] = {}
    for element in elements:
        if not element or element == redeem_script:
            continue
        if element[-1] != SighashType.ALL:
            log.warning("Dropping signature with sighash type 0x%02x", element[-1])
            continue
        der = element[:-1]
        for pk in public_keys:
            if pk not in found and verify_signature(pk, der, digest):
                found[pk] = element
                break
        else:
            log.warning("Dropping signature that matches no script key")
    return found


def _apply_unlocking(
    tx: Transaction,
    input_index: int,
    redeem_script: bytes,
    ordered_signatures: Sequence[bytes],
    script_type: str,
) -> None:
    txin = tx.inputs[input_index]
    if script_type == "p2wsh":
        txin.script_sig = b""
        txin.witness = create_witness(ordered_signatures, redeem_script)
    else:
        txin.script_sig = compile_script([OP_0, *ordered_signatures, redeem_script])
        txin.witness = []


def _order_signatures(
    signatures: Mapping[bytes, bytes],
    public_keys: Sequence[bytes],
    required: int,
) -> List[bytes]:
    ordered = [signatures[pk] for pk in public_keys if pk in signatures]
    return ordered[:required]


def collect_signatures(
    tx_hex: str,
    input_index: int,
    redeem_script: bytes,
    *,
    script_type: str = "p2sh",
    amount: Optional[int] = None,
) -> Dict[bytes, bytes]:
    """Return ``{public_key: signature}`` already present on the input."""
    tx = Transaction.from_hex(tx_hex)
    _, public_keys = parse_multisig_script(redeem_script)
    digest = signature_digest(
        tx, input_index, redeem_script, script_type=script_type, amount=amount,
    )
    return _match_signatures(
        _unlocking_elements(tx, input_index, script_type),
        redeem_script, public_keys, digest,
    )


def sign_input(
    tx_hex: str,
    input_index: int,
    redeem_script: bytes,
    key_pair: KeyPairRecord,
    *,
    script_type: str = "p2sh",
    amount: Optional[int] = None,
) -> str:
    """
    Add *key_pair*'s SIGHASH_ALL signature to one multisig input.

    Signatures already on the input are kept and re-ordered to match the
    redeem script; a second signature from the same key replaces the first.
    Once ``m`` signatures are present the input is complete and further
    signers are ignored.  For ``p2wsh`` the unlocking data goes in the
    witness and the scriptSig is left empty.

    Returns:
        The updated transaction, hex encoded.

    Raises:
        MissingPrivateKey: *key_pair* is a public share.
        InvalidInputIndex: *input_index* outside the transaction's inputs.
        ScriptConstructionFailure: *redeem_script* is not multisig.
        SignerNotInScript: the key is not one of the script's keys.
    """
    if key_pair.private_key is None:
        raise MissingPrivateKey(f"key pair at {key_pair.path} has no private key")

    tx = Transaction.from_hex(tx_hex)
    _check_input_index(tx, input_index)
    _check_script_type(script_type, amount)

    required, public_keys = parse_multisig_script(redeem_script)
    if key_pair.public_key not in public_keys:
        raise SignerNotInScript(
            f"key at {key_pair.path} is not part of this redeem script"
        )

    signer = _Secp256k1PrivateKey(key_pair.private_key)
    if signer.public_key.format(compressed=True) != key_pair.public_key:
        raise ValueError(f"private and public key of {key_pair.path} do not match")

    digest = signature_digest(
        tx, input_index, redeem_script, script_type=script_type, amount=amount,
    )
    # RFC-6979 nonce, low-S, DER encoded
    signature = signer.sign(digest, hasher=None) + bytes([SighashType.ALL])

    signatures = _match_signatures(
        _unlocking_elements(tx, input_index, script_type),
        redeem_script, public_keys, digest,
    )
    if key_pair.public_key not in signatures and len(signatures) >= required:
        log.info("Input %d already has %d/%d signatures; %s not added",
                 input_index, len(signatures), required, key_pair.path)
        return tx_hex
    signatures[key_pair.public_key] = signature

    ordered = _order_signatures(signatures, public_keys, required)
    _apply_unlocking(tx, input_index, redeem_script, ordered, script_type)

    log.info("Signed input %d (%s, %d/%d signatures, SIGHASH_ALL)",
             input_index, script_type, len(ordered), required)
    return tx.to_hex()


def finalize_input(
    tx_hex: str,
    input_index: int,
    redeem_script: bytes,
    signatures: Mapping[bytes, bytes],
    *,
    script_type: str = "p2sh",
    amount: Optional[int] = None,
    strict: bool = True,
) -> str:
    """
    Assemble the unlocking data from independently collected signatures.

    *signatures* maps public key -> signature (DER + sighash byte), e.g.
    the merged output of ``collect_signatures`` from several signers.
    Each one is checked against this input's SIGHASH_ALL digest; any
    other sighash type or a signature that does not verify is dropped
    and does not count toward ``m``.  Extra valid signatures beyond ``m``
    are dropped, keeping script key order.

    Raises:
        SignerNotInScript: a signature's key is not in the script.
        IncompleteSignatures: fewer than ``m`` valid signatures and *strict*.
    """
    tx = Transaction.from_hex(tx_hex)
    _check_input_index(tx, input_index)
    _check_script_type(script_type, amount)
    required, public_keys = parse_multisig_script(redeem_script)

    for pk in signatures:
        if pk not in public_keys:
            raise SignerNotInScript(
                f"signature for key {pk.hex()[:16]}... not in redeem script"
            )

    digest = signature_digest(
        tx, input_index, redeem_script, script_type=script_type, amount=amount,
    )
    valid: Dict[bytes, bytes] = {}
    for pk, sig in signatures.items():
        if not sig or sig[-1] != SighashType.ALL:
            log.warning("Dropping signature for key %s...: not SIGHASH_ALL",
                        pk.hex()[:16])
        elif not verify_signature(pk, sig[:-1], digest):
            log.warning("Dropping signature for key %s...: does not verify",
                        pk.hex()[:16])
        else:
            valid[pk] = sig

    if strict and len(valid) < required:
        raise IncompleteSignatures(
            f"input {input_index} has {len(valid)} of {required} "
            f"required valid signatures"
        )

    ordered = _order_signatures(valid, public_keys, required)
    _apply_unlocking(tx, input_index, redeem_script, ordered, script_type)
    log.info("Finalized input %d with %d/%d signatures",
             input_index, len(ordered), required)
    return tx.to_hex()


def is_fully_signed(
    tx_hex: str,
    input_index: int,
    redeem_script: bytes,
    *,
    script_type: str = "p2sh",
    amount: Optional[int] = None,
) -> bool:
    """True once ``m`` valid signatures are present in script key order."""
    tx = Transaction.from_hex(tx_hex)
    required, public_keys = parse_multisig_script(redeem_script)
    digest = signature_digest(
        tx, input_index, redeem_script, script_type=script_type, amount=amount,
    )
    elements = _unlocking_elements(tx, input_index, script_type)
    if len(elements) != required + 2:
        return False
    if elements[0] != b"" or elements[-1] != redeem_script:
        return False

    # CHECKMULTISIG semantics: keys are only ever consumed forward
    key_iter = iter(public_keys)
    for sig in elements[1:-1]:
        if not sig or sig[-1] != SighashType.ALL:
            return False
        if not any(verify_signature(pk, sig[:-1], digest) for pk in key_iter):
            return False
    return True


# ============================================================
# WALLET STATE
# ============================================================

@dataclass(frozen=True)
class WalletState:
    """
    Immutable result of wallet initialisation.

    ``key_pairs`` is in signer-slot order; the script's keys are sorted.
    """
    policy: MultisigPolicy
    network: NetworkParams
    key_pairs: Tuple[KeyPairRecord, ...]
    script: MultisigScript

    @property
    def redeem_script(self) -> bytes:
        return self.script.redeem_script

    @property
    def addresses(self) -> AddressSet:
        return self.script.addresses

    @property
    def public_keys(self) -> List[bytes]:
        return list(self.script.public_keys)

    @property
    def derivation_paths(self) -> List[str]:
        return [kp.path for kp in self.key_pairs]

    @property
    def mnemonics(self) -> List[str]:
        """Backup words of every slot this wallet holds private keys for."""
        return [kp.mnemonic for kp in self.key_pairs if kp.mnemonic is not None]

    def key_pair(self, index: int) -> KeyPairRecord:
        return self.key_pairs[index]


def restore_wallet(
    required: int,
    total: int,
    key_pairs: Sequence[KeyPairRecord],
    network: Union[str, NetworkParams] = "testnet",
) -> WalletState:
    """
    Build a wallet from existing records, e.g. own keys plus cosigners'
    ``public_only()`` shares, given in any order.

    Each record is placed by the slot index at the end of its path, so
    ``key_pairs[i].path`` always ends in ``/{i}``.

    Raises:
        InvalidPolicy: the record slots are not exactly ``0 .. total-1``.
    """
    policy = MultisigPolicy(required, total)
    params = get_network(network)
    key_pairs = sorted(key_pairs, key=lambda kp: kp.index)
    slots = [kp.index for kp in key_pairs]
    if slots != list(range(policy.total)):
        raise InvalidPolicy(
            f"policy {policy} needs one record for each slot 0..{policy.total - 1}, "
            f"got slots {slots}"
        )
    script = build_multisig(policy, [kp.public_key for kp in key_pairs], params)
    log.info("Multisig %s on %s: p2sh=%s p2wsh=%s",
             policy, params.name, script.addresses.p2sh, script.addresses.p2wsh)
    return WalletState(
        policy=policy,
        network=params,
        key_pairs=tuple(key_pairs),
        script=script,
    )


def initialize_wallet(
    required: int,
    total: int,
    network: Union[str, NetworkParams] = "testnet",
    *,
    account_path: str = BIP48_ACCOUNT_PATH,
    passphrase: str = "",
    workers: int = 1,
) -> WalletState:
    """
    Generate one key pair per slot and build the multisig script.

    Slots have no data dependency; ``workers > 1`` generates them on a
    thread pool.  Results are always stored in slot order.
    """
    policy = MultisigPolicy(required, total)
    params = get_network(network)

    def _slot(index: int) -> KeyPairRecord:
        return generate_key_pair(
            index, account_path=account_path, passphrase=passphrase,
        )

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            key_pairs = list(pool.map(_slot, range(policy.total)))
    else:
        key_pairs = [_slot(i) for i in range(policy.total)]

    log.info("Generated %d signer keys under %s", len(key_pairs), account_path)
    return restore_wallet(policy.required, policy.total, key_pairs, params)


# ============================================================
# USER-FACING API
# ============================================================

# scrypt cost for the encrypted backup; stored in the file so it can change
SCRYPT_N = 2**20
# upper bound accepted from a backup file (128 * r * N bytes of memory)
MAX_SCRYPT_N = 2**20


@dataclass(frozen=True)
class WalletConfig:
    network: Union[str, NetworkParams] = "testnet"
    account_path: str = BIP48_ACCOUNT_PATH
    passphrase: str = field(default="", repr=False)


class MultisigWallet:
    """
    High-level m-of-n multisig wallet.

    The policy is validated on construction; keys, script and addresses
    are produced by ``generate_wallet()`` as a single ``WalletState``.

    >>> w = MultisigWallet(2, 3)
    >>> state = w.generate_wallet()
    >>> w.get_addresses().p2wsh.startswith("tb1")
    True
    """

    def __init__(
        self,
        required_signatures: int,
        total_signers: int,
        config: Optional[WalletConfig] = None,
    ) -> None:
        self.config = config or WalletConfig()
        self.policy = MultisigPolicy(required_signatures, total_signers)
        self.network = get_network(self.config.network)
        if not validate_path(f"{self.config.account_path}/0",
                             account_path=self.config.account_path):
            raise ValueError(f"Invalid account path: {self.config.account_path}")
        self._state: Optional[WalletState] = None

    # ---- lifecycle ----------------------------------------------------
    def generate_wallet(self, workers: int = 1) -> WalletState:
        """
        Generate all key pairs and the multisig addresses.

        Raises:
            WalletAlreadyInitialized: keys already exist; regenerating
                would replace the addresses and discard the mnemonics.
        """
        if self._state is not None:
            raise WalletAlreadyInitialized(
                f"wallet already holds {len(self._state.key_pairs)} key pairs"
            )
        self._state = initialize_wallet(
            self.policy.required,
            self.policy.total,
            self.network,
            account_path=self.config.account_path,
            passphrase=self.config.passphrase,
            workers=workers,
        )
        return self._state

    def generate_key_pair(self, index: int) -> KeyPairRecord:
        return generate_key_pair(
            index,
            account_path=self.config.account_path,
            passphrase=self.config.passphrase,
        )

    @property
    def state(self) -> WalletState:
        if self._state is None:
            raise WalletNotInitialized("call generate_wallet() first")
        return self._state

    # ---- accessors ----------------------------------------------------
    def get_derivation_paths(self) -> List[str]:
        return self.state.derivation_paths

    def get_public_keys(self) -> List[bytes]:
        """Public keys in redeem-script (sorted) order."""
        return self.state.public_keys

    def get_redeem_script(self) -> bytes:
        return self.state.redeem_script

    def get_addresses(self) -> AddressSet:
        return self.state.addresses

    def get_mnemonics(self) -> List[str]:
        return self.state.mnemonics

    # ---- signing ------------------------------------------------------
    def sign_transaction(
        self,
        tx_hex: str,
        input_index: int,
        key_pair: KeyPairRecord,
        *,
        script_type: str = "p2sh",
        amount: Optional[int] = None,
    ) -> str:
        return sign_input(
            tx_hex, input_index, self.get_redeem_script(), key_pair,
            script_type=script_type, amount=amount,
        )

    def create_witness(self, signatures: Sequence[bytes]) -> List[bytes]:
        return create_witness(signatures, self.get_redeem_script())

    # ---- validation ---------------------------------------------------
    def validate_path(self, path: str) -> bool:
        return validate_path(path, account_path=self.config.account_path)

    @staticmethod
    def validate_multisig_script(script: bytes) -> bool:
        return validate_multisig_script(script)

    # ---- encrypted persistence ----------------------------------------
    def save_encrypted(self, filepath: str, password: str) -> None:
        """
        Write the mnemonic backup to disk encrypted with AES-256-GCM.

        KDF: scrypt(N=SCRYPT_N, r=8, p=1) -> 32-byte key.  Cosigner slots
        are stored as public keys only.  The redeem script is not stored;
        it is rebuilt from the keys on load.
        """
        state = self.state
        plaintext = json.dumps(
            {
                "policy": {"required": state.policy.required,
                           "total": state.policy.total},
                "network": state.network.name,
                "account_path": self.config.account_path,
                "key_pairs": [kp.to_dict() for kp in state.key_pairs],
            },
            separators=(",", ":"),
        ).encode()

        kdf_salt = secrets.token_bytes(16)
        n = SCRYPT_N
        key = scrypt(password.encode(), kdf_salt, 32, N=n, r=8, p=1)
        cipher = AES.new(key, AES.MODE_GCM)
        ct, tag = cipher.encrypt_and_digest(plaintext)

        blob = {
            "v": 1,
            "kdf": "scrypt",
            "n": n,
            "salt": kdf_salt.hex(),
            "nonce": cipher.nonce.hex(),
            "tag": tag.hex(),
            "ct": b64encode(ct).decode(),
        }
        Path(filepath).write_text(json.dumps(blob, indent=2))
        log.info("Wallet saved -> %s (%s, %d slots)",
                 filepath, state.policy, len(state.key_pairs))

    @classmethod
    def load_encrypted(
        cls, filepath: str, password: str, passphrase: str = "",
    ) -> "MultisigWallet":
        """
        Decrypt a backup and re-derive every key from its mnemonic.

        Raises:
            ValueError: unsupported KDF parameters, wrong password or a
                tampered file (GCM MAC check).
        """
        blob = json.loads(Path(filepath).read_text())

        n = blob.get("n")
        if blob.get("kdf") != "scrypt":
            raise ValueError(f"Unsupported KDF {blob.get('kdf')!r}")
        if (isinstance(n, bool) or not isinstance(n, int)
                or not 2 <= n <= MAX_SCRYPT_N or n & (n - 1)):
            raise ValueError(
                f"scrypt N must be a power of two in [2, {MAX_SCRYPT_N}], got {n!r}"
            )

        kdf_salt = bytes.fromhex(blob["salt"])
        key = scrypt(password.encode(), kdf_salt, 32, N=n, r=8, p=1)
        cipher = AES.new(key, AES.MODE_GCM, nonce=bytes.fromhex(blob["nonce"]))

        plaintext = cipher.decrypt_and_verify(
            b64decode(blob["ct"]),
            bytes.fromhex(blob["tag"]),
        )
        data = json.loads(plaintext)

        wallet = cls(
            data["policy"]["required"],
            data["policy"]["total"],
            WalletConfig(
                network=data["network"],
                account_path=data["account_path"],
                passphrase=passphrase,
            ),
        )
        key_pairs = [
            KeyPairRecord.from_dict(d, passphrase) for d in data["key_pairs"]
        ]
        wallet._state = restore_wallet(
            wallet.policy.required, wallet.policy.total, key_pairs, wallet.network,
        )
        log.info("Wallet loaded <- %s (%s)", filepath, wallet.policy)
        return wallet


# ============================================================
# SELF-TEST / DEMO
# ============================================================

def _run_demo() -> None:
    """2-of-3 end-to-end: keys, addresses, two signers, encrypted backup."""
    setup_logging()
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    separator = "=" * 60
    print(f"\n{separator}")
    print("  2-of-3 multisig (testnet)")
    print(separator)

    wallet = MultisigWallet(2, 3)
    t0 = time.perf_counter()
    state = wallet.generate_wallet(workers=3)
    keygen_ms = (time.perf_counter() - t0) * 1000
    print(f"  Keygen: {keygen_ms:.1f} ms for {len(state.key_pairs)} signers")
    for kp in state.key_pairs:
        print(f"    {kp.path}  {kp.public_key.hex()}")

    addresses = wallet.get_addresses()
    print(f"  P2SH:  {addresses.p2sh}")
    print(f"  P2WSH: {addresses.p2wsh}")
    print(f"  Redeem script: {len(wallet.get_redeem_script())} B")

    # Spend a made-up outpoint back to the P2WSH address
    tx = Transaction(
        inputs=[TxIn.from_txid("ab" * 32, 0)],
        outputs=[TxOut(90_000, state.script.p2wsh_script_pubkey)],
    )
    for script_type, amount in (("p2sh", None), ("p2wsh", 100_000)):
        signed = tx.to_hex()
        for slot in (2, 0):
            signed = wallet.sign_transaction(
                signed, 0, state.key_pair(slot),
                script_type=script_type, amount=amount,
            )
        ok = is_fully_signed(
            signed, 0, wallet.get_redeem_script(),
            script_type=script_type, amount=amount,
        )
        print(f"  {script_type.upper()} spend: {len(signed) // 2} B -> "
              f"{'PASS' if ok else 'FAIL'}")
        if not ok:
            raise SystemExit(f"FATAL: {script_type} signing self-test failed")

    tmp = Path("_multisig_wallet_test.enc")
    try:
        wallet.save_encrypted(str(tmp), "hunter2")
        loaded = MultisigWallet.load_encrypted(str(tmp), "hunter2")
        assert loaded.get_addresses() == addresses
        assert loaded.get_mnemonics() == wallet.get_mnemonics()
        print("  Encrypted save/load: PASS")
    finally:
        tmp.unlink(missing_ok=True)

    print(f"\n{separator}")
    print("  ALL SELF-TESTS PASSED")
    print(f"{separator}\n")


if __name__ == "__main__":
    _run_demo()
