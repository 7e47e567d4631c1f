"""
Bitcoin wire-level primitives for script-hash multisig spending.

Covers what the wallet layer needs and nothing else:

* CompactSize, SHA-256d and HASH160
* Script push encoding and decompilation (bare opcodes + data pushes)
* Transaction parsing / serialisation (legacy and BIP-144 segwit)
* Legacy signature hash (pre-segwit, used by P2SH)
* BIP-143 signature hash (segwit v0, used by P2WSH)
* Base58Check and bech32 address encoding

References:
    https://github.com/bitcoin/bips/blob/master/bip-0143.mediawiki
    https://github.com/bitcoin/bips/blob/master/bip-0144.mediawiki
"""

import hashlib
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import base58
from bech32 import decode as _bech32_decode, encode as _bech32_encode
from Crypto.Hash import RIPEMD160

# ---------------------------------------------------------------------------
# Opcodes
# ---------------------------------------------------------------------------
OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1NEGATE = 0x4F
OP_1 = 0x51
OP_16 = 0x60
OP_EQUAL = 0x87
OP_HASH160 = 0xA9
OP_CHECKMULTISIG = 0xAE

# Largest element the interpreter will push (P2SH redeem script limit)
MAX_SCRIPT_ELEMENT_SIZE = 520

ScriptChunk = Union[int, bytes]


class ScriptDecodeError(ValueError):
    """Script bytes are truncated or not a sequence of valid pushes/opcodes."""


class TransactionDecodeError(ValueError):
    """Serialized transaction is malformed."""


def compact_size(n: int) -> bytes:
    """Bitcoin CompactSize encoding."""
    if n < 0xfd:
        return struct.pack("<B", n)
    elif n <= 0xffff:
        return b'\xfd' + struct.pack("<H", n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack("<I", n)
    else:
        return b'\xff' + struct.pack("<Q", n)


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    """Double SHA-256, the hash used for txids and sighash digests."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD-160(SHA-256(data))."""
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


# ============================================================
# SCRIPT ENCODING
# ============================================================

def small_int_opcode(n: int) -> int:
    """Opcode pushing the integer *n* (0..16) onto the stack."""
    if n == 0:
        return OP_0
    if not 1 <= n <= 16:
        raise ValueError(f"small integer out of range 0..16: {n}")
    return OP_1 + n - 1


def decode_small_int(opcode: int) -> Optional[int]:
    """Inverse of ``small_int_opcode``; None for any other opcode."""
    if opcode == OP_0:
        return 0
    if OP_1 <= opcode <= OP_16:
        return opcode - OP_1 + 1
    return None


def push_data(data: bytes) -> bytes:
    """Minimal push of *data* (empty data is OP_0)."""
    n = len(data)
    if n == 0:
        return bytes([OP_0])
    if n < OP_PUSHDATA1:
        return bytes([n]) + data
    if n <= 0xff:
        return bytes([OP_PUSHDATA1, n]) + data
    if n <= 0xffff:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", n) + data
    return bytes([OP_PUSHDATA4]) + struct.pack("<I", n) + data


def compile_script(chunks: Sequence[ScriptChunk]) -> bytes:
    """Serialize a list of opcodes (ints) and data pushes (bytes)."""
    out = bytearray()
    for chunk in chunks:
        if isinstance(chunk, int):
            if not 0 <= chunk <= 0xff:
                raise ValueError(f"opcode out of range: {chunk}")
            out.append(chunk)
        else:
            out += push_data(bytes(chunk))
    return bytes(out)


def decompile_script(script: bytes) -> List[ScriptChunk]:
    """
    Split *script* into opcodes and pushed data.

    Data pushes (including OP_0, which pushes the empty vector) come back
    as ``bytes``; every other opcode comes back as ``int``.
    """
    chunks: List[ScriptChunk] = []
    pos = 0
    while pos < len(script):
        op = script[pos]
        pos += 1
        if op == OP_0:
            chunks.append(b"")
            continue
        if op < OP_PUSHDATA1:
            size = op
        elif op == OP_PUSHDATA1:
            if pos + 1 > len(script):
                raise ScriptDecodeError("truncated OP_PUSHDATA1")
            size = script[pos]
            pos += 1
        elif op == OP_PUSHDATA2:
            if pos + 2 > len(script):
                raise ScriptDecodeError("truncated OP_PUSHDATA2")
            size = struct.unpack_from("<H", script, pos)[0]
            pos += 2
        elif op == OP_PUSHDATA4:
            if pos + 4 > len(script):
                raise ScriptDecodeError("truncated OP_PUSHDATA4")
            size = struct.unpack_from("<I", script, pos)[0]
            pos += 4
        else:
            chunks.append(op)
            continue
        if pos + size > len(script):
            raise ScriptDecodeError(
                f"push of {size} bytes overruns script at offset {pos}"
            )
        chunks.append(bytes(script[pos:pos + size]))
        pos += size
    return chunks


# ---- standard output templates ----------------------------------------

def p2sh_script_pubkey(script_hash: bytes) -> bytes:
    """OP_HASH160 <20-byte hash> OP_EQUAL"""
    if len(script_hash) != 20:
        raise ValueError(f"P2SH hash must be 20 bytes, got {len(script_hash)}")
    return compile_script([OP_HASH160, script_hash, OP_EQUAL])


def p2wsh_script_pubkey(witness_program: bytes) -> bytes:
    """OP_0 <32-byte sha256(witness script)>"""
    if len(witness_program) != 32:
        raise ValueError(
            f"P2WSH program must be 32 bytes, got {len(witness_program)}"
        )
    return compile_script([OP_0, witness_program])


def p2pkh_script_pubkey(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20> OP_EQUALVERIFY OP_CHECKSIG"""
    if len(pubkey_hash) != 20:
        raise ValueError(f"P2PKH hash must be 20 bytes, got {len(pubkey_hash)}")
    return b"\x76\xa9\x14" + pubkey_hash + b"\x88\xac"


# ============================================================
# ADDRESS ENCODING
# ============================================================

def base58check_encode(version: int, payload: bytes) -> str:
    return base58.b58encode_check(bytes([version]) + payload).decode()


def base58check_decode(address: str) -> Tuple[int, bytes]:
    """Return ``(version_byte, payload)``; raises ValueError on bad checksum."""
    raw = base58.b58decode_check(address)
    if len(raw) < 2:
        raise ValueError(f"Base58Check payload too short: {address}")
    return raw[0], raw[1:]


def segwit_address(hrp: str, witness_version: int, program: bytes) -> Optional[str]:
    """bech32 (v0) / bech32m (v1+) address; None if the encoder rejects it."""
    return _bech32_encode(hrp, witness_version, list(program))


def decode_segwit_address(hrp: str, address: str) -> Tuple[int, bytes]:
    ver, prog = _bech32_decode(hrp, address)
    if ver is None or prog is None:
        raise ValueError(f"Invalid bech32 address for hrp {hrp!r}: {address}")
    return ver, bytes(prog)


# ============================================================
# TRANSACTION CODEC
# ============================================================

class _Reader:
    """Cursor over a byte string that raises TransactionDecodeError on overrun."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def read(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise TransactionDecodeError(
                f"unexpected end of data: need {n} bytes at offset {self.pos}"
            )
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def peek(self, n: int) -> bytes:
        return self.data[self.pos:self.pos + n]

    def read_uint32(self) -> int:
        return struct.unpack("<I", self.read(4))[0]

    def read_int64(self) -> int:
        return struct.unpack("<q", self.read(8))[0]

    def read_compact_size(self) -> int:
        b0 = self.read(1)[0]
        if b0 < 0xfd:
            return b0
        if b0 == 0xfd:
            return struct.unpack("<H", self.read(2))[0]
        if b0 == 0xfe:
            return struct.unpack("<I", self.read(4))[0]
        return struct.unpack("<Q", self.read(8))[0]

    def read_var_bytes(self) -> bytes:
        return self.read(self.read_compact_size())

    def at_end(self) -> bool:
        return self.pos == len(self.data)


@dataclass
class TxIn:
    prev_txid: bytes           # 32 bytes, internal (little-endian) byte order
    prev_vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: List[bytes] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(self.prev_txid) != 32:
            raise ValueError("prev_txid must be 32 bytes")

    @classmethod
    def from_txid(cls, txid_hex: str, vout: int, **kwargs) -> "TxIn":
        """Build from a display-order (RPC style) txid hex string."""
        return cls(prev_txid=bytes.fromhex(txid_hex)[::-1], prev_vout=vout, **kwargs)

    @property
    def outpoint(self) -> bytes:
        return self.prev_txid + struct.pack("<I", self.prev_vout)

    @property
    def txid_hex(self) -> str:
        return self.prev_txid[::-1].hex()


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return (
            struct.pack("<q", self.value)
            + compact_size(len(self.script_pubkey))
            + self.script_pubkey
        )


@dataclass
class Transaction:
    version: int = 2
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0

    # ---- parsing ------------------------------------------------------
    @classmethod
    def parse(cls, data: bytes) -> "Transaction":
        r = _Reader(data)
        version = r.read_uint32()

        # BIP-144: marker 0x00 + flag 0x01 after nVersion
        segwit = r.peek(2) == b"\x00\x01"
        if segwit:
            r.read(2)

        inputs: List[TxIn] = []
        for _ in range(r.read_compact_size()):
            prev_txid = r.read(32)
            prev_vout = r.read_uint32()
            script_sig = r.read_var_bytes()
            sequence = r.read_uint32()
            inputs.append(TxIn(prev_txid, prev_vout, script_sig, sequence))

        outputs: List[TxOut] = []
        for _ in range(r.read_compact_size()):
            value = r.read_int64()
            outputs.append(TxOut(value, r.read_var_bytes()))

        if segwit:
            for txin in inputs:
                txin.witness = [
                    r.read_var_bytes() for _ in range(r.read_compact_size())
                ]

        locktime = r.read_uint32()
        if not r.at_end():
            raise TransactionDecodeError(
                f"{len(data) - r.pos} trailing bytes after transaction"
            )
        return cls(version=version, inputs=inputs, outputs=outputs,
                   locktime=locktime)

    @classmethod
    def from_hex(cls, tx_hex: str) -> "Transaction":
        try:
            raw = bytes.fromhex(tx_hex)
        except ValueError as exc:
            raise TransactionDecodeError(f"not valid hex: {exc}") from exc
        return cls.parse(raw)

    # ---- serialisation ------------------------------------------------
    @property
    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness
        raw = struct.pack("<I", self.version)
        if segwit:
            raw += b"\x00\x01"
        raw += compact_size(len(self.inputs))
        for txin in self.inputs:
            raw += txin.outpoint
            raw += compact_size(len(txin.script_sig)) + txin.script_sig
            raw += struct.pack("<I", txin.sequence)
        raw += compact_size(len(self.outputs))
        for out in self.outputs:
            raw += out.serialize()
        if segwit:
            for txin in self.inputs:
                raw += compact_size(len(txin.witness))
                for item in txin.witness:
                    raw += compact_size(len(item)) + item
        raw += struct.pack("<I", self.locktime)
        return raw

    def to_hex(self) -> str:
        return self.serialize().hex()

    def txid(self) -> str:
        """Display-order txid (witness data excluded)."""
        return sha256d(self.serialize(include_witness=False))[::-1].hex()


# ============================================================
# SIGNATURE HASHES
# ============================================================

class SighashType:
    ALL = 0x01


def _check_hash_type(hash_type: int) -> None:
    if hash_type != SighashType.ALL:
        raise ValueError(
            f"only SIGHASH_ALL digests are supported, got 0x{hash_type:02x}"
        )


class LegacySighash:
    """
    Pre-segwit signature hash, as used when spending P2SH outputs.

    The spent input's scriptSig is replaced by ``script_code`` (the redeem
    script for P2SH), every other scriptSig is emptied, and the result is
    serialised with the 4-byte hash type appended and double-SHA-256'd.
    """

    def __init__(self, tx: Transaction, input_index: int) -> None:
        if not 0 <= input_index < len(tx.inputs):
            raise IndexError(
                f"input index {input_index} out of range "
                f"(transaction has {len(tx.inputs)} inputs)"
            )
        self.tx = tx
        self.input_index = input_index

    def compute(self, script_code: bytes, hash_type: int = SighashType.ALL) -> bytes:
        _check_hash_type(hash_type)
        stripped = Transaction(
            version=self.tx.version,
            inputs=[
                TxIn(
                    prev_txid=txin.prev_txid,
                    prev_vout=txin.prev_vout,
                    script_sig=script_code if i == self.input_index else b"",
                    sequence=txin.sequence,
                )
                for i, txin in enumerate(self.tx.inputs)
            ],
            outputs=list(self.tx.outputs),
            locktime=self.tx.locktime,
        )
        preimage = stripped.serialize(include_witness=False)
        preimage += struct.pack("<I", hash_type)
        return sha256d(preimage)


class SegwitV0Sighash:
    """BIP-143 signature hash for witness v0 (P2WSH) inputs."""

    def __init__(self, tx: Transaction, input_index: int) -> None:
        if not 0 <= input_index < len(tx.inputs):
            raise IndexError(
                f"input index {input_index} out of range "
                f"(transaction has {len(tx.inputs)} inputs)"
            )
        self.tx = tx
        self.input_index = input_index

    def compute(
        self,
        script_code: bytes,
        amount: int,
        hash_type: int = SighashType.ALL,
    ) -> bytes:
        """
        Args:
            script_code: witness script being satisfied (the redeem script)
            amount: value in satoshis of the output being spent
            hash_type: SIGHASH flag byte, SIGHASH_ALL only

        Returns:
            32-byte digest
        """
        _check_hash_type(hash_type)
        txin = self.tx.inputs[self.input_index]
        preimage = (
            struct.pack("<I", self.tx.version)
            + self._hash_prevouts()
            + self._hash_sequence()
            + txin.outpoint
            + compact_size(len(script_code)) + script_code
            + struct.pack("<q", amount)
            + struct.pack("<I", txin.sequence)
            + self._hash_outputs()
            + struct.pack("<I", self.tx.locktime)
            + struct.pack("<I", hash_type)
        )
        return sha256d(preimage)

    def _hash_prevouts(self) -> bytes:
        return sha256d(b"".join(txin.outpoint for txin in self.tx.inputs))

    def _hash_sequence(self) -> bytes:
        return sha256d(b"".join(
            struct.pack("<I", txin.sequence) for txin in self.tx.inputs
        ))

    def _hash_outputs(self) -> bytes:
        return sha256d(b"".join(out.serialize() for out in self.tx.outputs))
