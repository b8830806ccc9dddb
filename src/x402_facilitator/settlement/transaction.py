"""Solana wire-format transaction decoder.

Decodes legacy and v0 transactions from raw bytes and recovers SPL token
``TransferChecked`` instructions. The input is attacker-controlled: every read
goes through a bounds-checked cursor and malformed input raises
``TransactionParseError`` with the failing offset.

Wire layout::

    signatures      compact-u16 count, 64 bytes each
    message
      [prefix]      0x80 | version, v0 only
      header        3 x u8 (required sigs, readonly signed, readonly unsigned)
      account keys  compact-u16 count, 32 bytes each
      blockhash     32 bytes
      instructions  compact-u16 count, each:
                      u8 program id index
                      compact-u16 count + u8 account indexes
                      compact-u16 length + data
      [lookups]     v0 only: compact-u16 count, each:
                      32-byte table key
                      compact-u16 count + u8 writable indexes
                      compact-u16 count + u8 readonly indexes
"""
from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

import base58

from ..exceptions import TransactionParseError
from ..solana.client import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

SIGNATURE_LENGTH = 64
PUBKEY_LENGTH = 32
# Solana packet data limit
MAX_TRANSACTION_SIZE = 1232

TRANSFER_CHECKED_DISCRIMINATOR = 12
TRANSFER_CHECKED_DATA_LENGTH = 10
TOKEN_PROGRAMS = frozenset({TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID})

_VERSION_PREFIX_MASK = 0x80


class ByteCursor:
    """Forward-only reader over a bytes buffer with bounds checks."""

    def __init__(self, data: bytes, offset: int = 0):
        self._data = data
        self.offset = offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self.offset

    def _require(self, n: int, what: str) -> None:
        if n < 0 or self.remaining < n:
            raise TransactionParseError(
                f"Unexpected end of transaction reading {what}: need {n} bytes, "
                f"have {self.remaining}",
                offset=self.offset,
            )

    def peek_u8(self, what: str = "byte") -> int:
        self._require(1, what)
        return self._data[self.offset]

    def read_u8(self, what: str = "byte") -> int:
        value = self.peek_u8(what)
        self.offset += 1
        return value

    def read_bytes(self, n: int, what: str = "bytes") -> bytes:
        self._require(n, what)
        chunk = self._data[self.offset:self.offset + n]
        self.offset += n
        return chunk

    def read_compact_u16(self, what: str = "length") -> int:
        """Read a compact-u16 (1-3 bytes, 7 bits per byte, little-endian)."""
        start = self.offset
        value = 0
        for i in range(3):
            byte = self.read_u8(what)
            value |= (byte & 0x7F) << (7 * i)
            if not byte & 0x80:
                if i > 0 and byte == 0:
                    raise TransactionParseError(f"Non-canonical compact-u16 {what}", offset=start)
                break
        else:
            raise TransactionParseError(f"compact-u16 {what} longer than 3 bytes", offset=start)
        if value > 0xFFFF:
            raise TransactionParseError(f"compact-u16 {what} overflows u16", offset=start)
        return value


@dataclass(frozen=True)
class MessageHeader:
    num_required_signatures: int
    num_readonly_signed_accounts: int
    num_readonly_unsigned_accounts: int


@dataclass(frozen=True)
class CompiledInstruction:
    program_id_index: int
    account_indexes: Tuple[int, ...]
    data: bytes


@dataclass(frozen=True)
class AddressTableLookup:
    account_key: str
    writable_indexes: Tuple[int, ...]
    readonly_indexes: Tuple[int, ...]


@dataclass(frozen=True)
class DecodedTransaction:
    """A decoded transaction. Account keys and blockhash are base58 strings."""

    signatures: Tuple[bytes, ...]
    header: MessageHeader
    account_keys: Tuple[str, ...]
    recent_blockhash: str
    instructions: Tuple[CompiledInstruction, ...]
    version: Union[str, int] = "legacy"
    address_table_lookups: Tuple[AddressTableLookup, ...] = ()
    message_offset: int = 0
    raw: bytes = field(default=b"", repr=False)

    @property
    def fee_payer(self) -> Optional[str]:
        return self.account_keys[0] if self.account_keys else None

    @property
    def message_bytes(self) -> bytes:
        return self.raw[self.message_offset:]

    @property
    def signature(self) -> Optional[str]:
        """First signature in base58, the transaction id once submitted."""
        if not self.signatures or not any(self.signatures[0]):
            return None
        return base58.b58encode(self.signatures[0]).decode("ascii")

    def account_key(self, index: int) -> Optional[str]:
        """Static account key at ``index``; None for lookup-table indexes."""
        if 0 <= index < len(self.account_keys):
            return self.account_keys[index]
        return None

    def with_signature(self, signer: str, signature: bytes) -> bytes:
        """Return raw bytes with ``signature`` placed in ``signer``'s slot."""
        if len(signature) != SIGNATURE_LENGTH:
            raise ValueError("signature must be 64 bytes")
        required = self.header.num_required_signatures
        try:
            slot = self.account_keys.index(signer)
        except ValueError:
            raise ValueError(f"{signer} is not an account of this transaction") from None
        if slot >= required or slot >= len(self.signatures):
            raise ValueError(f"{signer} is not a required signer")
        # Signatures follow their compact-u16 count prefix.
        start = self.message_offset - SIGNATURE_LENGTH * (len(self.signatures) - slot)
        return self.raw[:start] + signature + self.raw[start + SIGNATURE_LENGTH:]


@dataclass(frozen=True)
class ParsedTransfer:
    """A TransferChecked instruction resolved to account addresses."""

    source: str
    mint: str
    destination: str
    authority: str
    amount: int
    decimals: int
    program_id: str


def _encode_key(raw: bytes) -> str:
    return base58.b58encode(raw).decode("ascii")


def _read_index_list(cursor: ByteCursor, what: str) -> Tuple[int, ...]:
    count = cursor.read_compact_u16(f"{what} count")
    return tuple(cursor.read_bytes(count, what))


def decode_transaction(data: bytes) -> DecodedTransaction:
    """Decode raw transaction bytes.

    Raises:
        TransactionParseError: Truncated, oversized or structurally invalid input.
    """
    if not data:
        raise TransactionParseError("Empty transaction", offset=0)
    if len(data) > MAX_TRANSACTION_SIZE:
        raise TransactionParseError(
            f"Transaction is {len(data)} bytes, limit is {MAX_TRANSACTION_SIZE}", offset=0
        )

    cursor = ByteCursor(data)

    num_signatures = cursor.read_compact_u16("signature count")
    signatures = tuple(
        cursor.read_bytes(SIGNATURE_LENGTH, "signature") for _ in range(num_signatures)
    )
    message_offset = cursor.offset

    version: Union[str, int] = "legacy"
    prefix = cursor.peek_u8("message prefix")
    if prefix & _VERSION_PREFIX_MASK:
        cursor.read_u8()
        version = prefix & 0x7F
        if version != 0:
            raise TransactionParseError(
                f"Unsupported transaction version {version}", offset=message_offset
            )

    header = MessageHeader(
        num_required_signatures=cursor.read_u8("header"),
        num_readonly_signed_accounts=cursor.read_u8("header"),
        num_readonly_unsigned_accounts=cursor.read_u8("header"),
    )
    if header.num_required_signatures != num_signatures:
        raise TransactionParseError(
            f"Header requires {header.num_required_signatures} signatures, "
            f"transaction carries {num_signatures}",
            offset=message_offset,
        )

    num_keys = cursor.read_compact_u16("account key count")
    account_keys = tuple(
        _encode_key(cursor.read_bytes(PUBKEY_LENGTH, "account key")) for _ in range(num_keys)
    )
    if num_keys < header.num_required_signatures:
        raise TransactionParseError(
            "Fewer account keys than required signers", offset=cursor.offset
        )

    recent_blockhash = _encode_key(cursor.read_bytes(PUBKEY_LENGTH, "recent blockhash"))

    num_instructions = cursor.read_compact_u16("instruction count")
    instructions: List[CompiledInstruction] = []
    for _ in range(num_instructions):
        program_id_index = cursor.read_u8("program id index")
        account_indexes = _read_index_list(cursor, "instruction accounts")
        data_len = cursor.read_compact_u16("instruction data length")
        instructions.append(
            CompiledInstruction(
                program_id_index=program_id_index,
                account_indexes=account_indexes,
                data=cursor.read_bytes(data_len, "instruction data"),
            )
        )

    lookups: List[AddressTableLookup] = []
    if version == 0:
        num_lookups = cursor.read_compact_u16("address table lookup count")
        for _ in range(num_lookups):
            lookups.append(
                AddressTableLookup(
                    account_key=_encode_key(cursor.read_bytes(PUBKEY_LENGTH, "lookup table key")),
                    writable_indexes=_read_index_list(cursor, "writable indexes"),
                    readonly_indexes=_read_index_list(cursor, "readonly indexes"),
                )
            )

    if cursor.remaining:
        raise TransactionParseError(
            f"{cursor.remaining} trailing bytes after message", offset=cursor.offset
        )

    return DecodedTransaction(
        signatures=signatures,
        header=header,
        account_keys=account_keys,
        recent_blockhash=recent_blockhash,
        instructions=tuple(instructions),
        version=version,
        address_table_lookups=tuple(lookups),
        message_offset=message_offset,
        raw=bytes(data),
    )


def decode_transaction_base64(tx_base64: str) -> DecodedTransaction:
    try:
        raw = base64.b64decode(tx_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise TransactionParseError(f"Transaction is not valid base64: {e}") from e
    return decode_transaction(raw)


def extract_transfers(tx: DecodedTransaction) -> List[ParsedTransfer]:
    """TransferChecked instructions of the Token and Token-2022 programs.

    Instructions whose accounts resolve through an address lookup table are
    skipped; their addresses cannot be known without a ledger read.
    """
    transfers: List[ParsedTransfer] = []
    for ix in tx.instructions:
        program_id = tx.account_key(ix.program_id_index)
        if program_id not in TOKEN_PROGRAMS:
            continue
        if len(ix.data) < TRANSFER_CHECKED_DATA_LENGTH or ix.data[0] != TRANSFER_CHECKED_DISCRIMINATOR:
            continue
        if len(ix.account_indexes) < 4:
            continue

        accounts = [tx.account_key(i) for i in ix.account_indexes[:4]]
        if any(a is None for a in accounts):
            continue
        source, mint, destination, authority = accounts

        (amount,) = struct.unpack_from("<Q", ix.data, 1)
        transfers.append(
            ParsedTransfer(
                source=source,
                mint=mint,
                destination=destination,
                authority=authority,
                amount=amount,
                decimals=ix.data[9],
                program_id=program_id,
            )
        )
    return transfers


def parse_transfer_instructions(tx_base64: str) -> List[ParsedTransfer]:
    """Decode a base64 transaction and return its TransferChecked transfers.

    Raises:
        TransactionParseError: The transaction cannot be decoded.
    """
    return extract_transfers(decode_transaction_base64(tx_base64))


__all__ = [
    "AddressTableLookup",
    "ByteCursor",
    "CompiledInstruction",
    "DecodedTransaction",
    "MessageHeader",
    "ParsedTransfer",
    "TOKEN_PROGRAMS",
    "TRANSFER_CHECKED_DISCRIMINATOR",
    "decode_transaction",
    "decode_transaction_base64",
    "extract_transfers",
    "parse_transfer_instructions",
]
