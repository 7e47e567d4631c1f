# Copyright (c) 2026 Emiliano G Solazzi
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
#
# Commercial licenses available. Contact: emiliano.arlington@gmail.com
import pytest
from bitcoin_protocol import *
import struct


# secp256k1 generator point G (private key 1), compressed
_G = bytes.fromhex(
    "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
)


def _make_tx(n_in: int = 2, n_out: int = 2) -> Transaction:
    """Unsigned transaction with distinct inputs and outputs."""
    return Transaction(
        version=2,
        inputs=[
            TxIn.from_txid(f"{i + 1:02x}" * 32, i, sequence=0xFFFFFFFD)
            for i in range(n_in)
        ],
        outputs=[
            TxOut(10_000 * (i + 1), p2wsh_script_pubkey(sha256(bytes([i]))))
            for i in range(n_out)
        ],
        locktime=0,
    )


class TestHashes:
    """Hash helpers against well-known values."""

    def test_sha256d_empty(self):
        assert sha256d(b"").hex() == (
            "5df6e0e2761359d30a8275058e299fcc0381534545f55cf43e41983f5d4c9456"
        )

    def test_hash160_generator(self):
        """HASH160 of G is the BIP-173 example program."""
        assert hash160(_G).hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"


class TestCompactSize:

    @pytest.mark.parametrize("n,encoded", [
        (0, "00"),
        (0xfc, "fc"),
        (0xfd, "fdfd00"),
        (0xffff, "fdffff"),
        (0x10000, "fe00000100"),
        (0x100000000, "ff0000000001000000"),
    ])
    def test_boundaries(self, n, encoded):
        assert compact_size(n).hex() == encoded


class TestScriptEncoding:
    """Push encoding and decompilation."""

    def test_small_int_opcodes(self):
        assert small_int_opcode(0) == OP_0
        assert small_int_opcode(1) == 0x51
        assert small_int_opcode(2) == 0x52
        assert small_int_opcode(16) == 0x60
        for n in range(17):
            assert decode_small_int(small_int_opcode(n)) == n

    def test_small_int_out_of_range(self):
        with pytest.raises(ValueError):
            small_int_opcode(17)
        with pytest.raises(ValueError):
            small_int_opcode(-1)

    def test_decode_small_int_other_opcode(self):
        assert decode_small_int(OP_CHECKMULTISIG) is None
        assert decode_small_int(OP_1NEGATE) is None

    def test_push_data_sizes(self):
        assert push_data(b"") == b"\x00"
        assert push_data(b"\xaa" * 33)[:1] == b"\x21"
        assert push_data(b"\xaa" * 75)[:1] == b"\x4b"
        assert push_data(b"\xaa" * 76)[:2] == b"\x4c\x4c"
        assert push_data(b"\xaa" * 255)[:2] == b"\x4c\xff"
        assert push_data(b"\xaa" * 256)[:3] == b"\x4d\x00\x01"
        assert push_data(b"\xaa" * 513)[:3] == b"\x4d\x01\x02"

    def test_compile_decompile(self):
        script = compile_script([OP_0, b"\x01" * 72, b"\x02" * 105, OP_CHECKMULTISIG])
        chunks = decompile_script(script)
        assert chunks == [b"", b"\x01" * 72, b"\x02" * 105, OP_CHECKMULTISIG]

    def test_decompile_pushdata2(self):
        data = b"\x07" * 513
        assert decompile_script(push_data(data)) == [data]

    def test_decompile_truncated_push(self):
        with pytest.raises(ScriptDecodeError):
            decompile_script(b"\x21" + b"\x00" * 10)

    def test_decompile_truncated_pushdata_length(self):
        with pytest.raises(ScriptDecodeError):
            decompile_script(b"\x4d\x01")

    def test_compile_rejects_bad_opcode(self):
        with pytest.raises(ValueError):
            compile_script([0x100])

    def test_output_templates(self):
        h = hash160(_G)
        assert p2sh_script_pubkey(h) == b"\xa9\x14" + h + b"\x87"
        assert p2pkh_script_pubkey(h) == b"\x76\xa9\x14" + h + b"\x88\xac"
        prog = sha256(b"script")
        assert p2wsh_script_pubkey(prog) == b"\x00\x20" + prog
        with pytest.raises(ValueError):
            p2sh_script_pubkey(prog)
        with pytest.raises(ValueError):
            p2wsh_script_pubkey(h)


class TestAddressEncoding:

    def test_p2pkh_generator_address(self):
        assert base58check_encode(0x00, hash160(_G)) == (
            "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"
        )

    def test_base58check_roundtrip_and_checksum(self):
        addr = base58check_encode(0xC4, hash160(_G))
        assert addr.startswith("2")
        assert base58check_decode(addr) == (0xC4, hash160(_G))
        corrupted = addr[:-1] + ("1" if addr[-1] != "1" else "2")
        with pytest.raises(ValueError):
            base58check_decode(corrupted)

    def test_segwit_v0_bip173_vector(self):
        assert segwit_address("bc", 0, hash160(_G)) == (
            "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
        )

    def test_decode_segwit_address(self):
        prog = sha256(b"witness script")
        addr = segwit_address("tb", 0, prog)
        assert decode_segwit_address("tb", addr) == (0, prog)
        with pytest.raises(ValueError):
            decode_segwit_address("bc", addr)


class TestTransactionCodec:

    def test_legacy_roundtrip(self):
        tx = _make_tx()
        tx.inputs[0].script_sig = b"\x00\x01\x02"
        raw = tx.serialize()
        # no segwit marker without witness data
        assert raw[4:6] != b"\x00\x01"
        parsed = Transaction.parse(raw)
        assert parsed == tx
        assert parsed.serialize() == raw

    def test_segwit_roundtrip(self):
        tx = _make_tx()
        tx.inputs[1].witness = [b"", b"\x30" * 71, b"\x52" * 105]
        raw = tx.serialize()
        assert raw[4:6] == b"\x00\x01"
        parsed = Transaction.from_hex(raw.hex())
        assert parsed.inputs[0].witness == []
        assert parsed.inputs[1].witness == [b"", b"\x30" * 71, b"\x52" * 105]
        assert parsed.to_hex() == raw.hex()

    def test_txid_excludes_witness(self):
        tx = _make_tx()
        txid = tx.txid()
        tx.inputs[0].witness = [b"\x01"]
        assert tx.txid() == txid
        assert len(txid) == 64

    def test_txid_hex_display_order(self):
        txin = TxIn.from_txid("ab" * 31 + "cd", 3)
        assert txin.prev_txid[0] == 0xCD
        assert txin.txid_hex == "ab" * 31 + "cd"
        assert txin.outpoint[32:] == struct.pack("<I", 3)

    def test_truncated_raises(self):
        raw = _make_tx().serialize()
        with pytest.raises(TransactionDecodeError):
            Transaction.parse(raw[:-3])

    def test_trailing_bytes_raise(self):
        raw = _make_tx().serialize()
        with pytest.raises(TransactionDecodeError, match="trailing"):
            Transaction.parse(raw + b"\x00")

    def test_bad_hex_raises(self):
        with pytest.raises(TransactionDecodeError):
            Transaction.from_hex("zz")

    def test_txin_rejects_short_txid(self):
        with pytest.raises(ValueError):
            TxIn(prev_txid=b"\x00" * 31, prev_vout=0)


class TestLegacySighash:
    """Pre-segwit sighash as used for P2SH spends."""

    SCRIPT = b"\x51\x21" + _G + b"\x51\xae"

    def test_deterministic_32_bytes(self):
        tx = _make_tx()
        d1 = LegacySighash(tx, 0).compute(self.SCRIPT)
        d2 = LegacySighash(tx, 0).compute(self.SCRIPT)
        assert len(d1) == 32
        assert d1 == d2
        assert d1 != LegacySighash(tx, 1).compute(self.SCRIPT)

    def test_all_commits_to_outputs(self):
        tx = _make_tx()
        before = LegacySighash(tx, 0).compute(self.SCRIPT, SighashType.ALL)
        tx.outputs[1].value += 1
        assert LegacySighash(tx, 0).compute(self.SCRIPT, SighashType.ALL) != before

    def test_all_commits_to_other_inputs(self):
        tx = _make_tx()
        before = LegacySighash(tx, 0).compute(self.SCRIPT)
        tx.inputs[1].prev_vout = 9
        assert LegacySighash(tx, 0).compute(self.SCRIPT) != before

    def test_ignores_existing_script_sigs(self):
        tx = _make_tx()
        before = LegacySighash(tx, 0).compute(self.SCRIPT)
        tx.inputs[0].script_sig = b"\x00\x47" + b"\x30" * 71
        tx.inputs[1].script_sig = b"\x51"
        assert LegacySighash(tx, 0).compute(self.SCRIPT) == before

    def test_script_code_committed(self):
        tx = _make_tx()
        other = b"\x52\x21" + _G + b"\x51\xae"
        assert (LegacySighash(tx, 0).compute(self.SCRIPT)
                != LegacySighash(tx, 0).compute(other))

    @pytest.mark.parametrize("hash_type", [0x00, 0x02, 0x03, 0x81, 0x82])
    def test_rejects_other_hash_types(self, hash_type):
        with pytest.raises(ValueError, match="SIGHASH_ALL"):
            LegacySighash(_make_tx(), 0).compute(self.SCRIPT, hash_type)

    def test_index_out_of_range(self):
        with pytest.raises(IndexError):
            LegacySighash(_make_tx(n_in=1), 1)


class TestSegwitV0Sighash:
    """BIP-143 sighash as used for P2WSH spends."""

    SCRIPT = b"\x51\x21" + _G + b"\x51\xae"

    def test_commits_to_amount(self):
        tx = _make_tx()
        calc = SegwitV0Sighash(tx, 0)
        assert calc.compute(self.SCRIPT, 100_000) != calc.compute(self.SCRIPT, 100_001)

    def test_differs_from_legacy(self):
        tx = _make_tx()
        assert (SegwitV0Sighash(tx, 0).compute(self.SCRIPT, 100_000)
                != LegacySighash(tx, 0).compute(self.SCRIPT))

    def test_all_commits_to_outputs(self):
        tx = _make_tx()
        before = SegwitV0Sighash(tx, 1).compute(self.SCRIPT, 5_000)
        tx.outputs[0].value -= 1
        assert SegwitV0Sighash(tx, 1).compute(self.SCRIPT, 5_000) != before

    def test_commits_to_other_sequences(self):
        tx = _make_tx()
        before = SegwitV0Sighash(tx, 0).compute(self.SCRIPT, 5_000)
        tx.inputs[1].sequence = 0
        assert SegwitV0Sighash(tx, 0).compute(self.SCRIPT, 5_000) != before

    def test_ignores_witness_data(self):
        tx = _make_tx()
        before = SegwitV0Sighash(tx, 0).compute(self.SCRIPT, 5_000)
        tx.inputs[1].witness = [b"\x01", b"\x02"]
        assert SegwitV0Sighash(tx, 0).compute(self.SCRIPT, 5_000) == before

    @pytest.mark.parametrize("hash_type", [0x02, 0x03, 0x81])
    def test_rejects_other_hash_types(self, hash_type):
        with pytest.raises(ValueError, match="SIGHASH_ALL"):
            SegwitV0Sighash(_make_tx(), 0).compute(self.SCRIPT, 5_000, hash_type)

    def test_index_out_of_range(self):
        with pytest.raises(IndexError):
            SegwitV0Sighash(_make_tx(n_in=1), -1)
