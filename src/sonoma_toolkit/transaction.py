"""Legacy transaction wire format.

Compiles instructions into a message, signs it and serializes the result
for ``sendTransaction``. Layout:

    signatures: compact-u16 count, 64 bytes each
    message:
        header: num_required_signatures, num_readonly_signed, num_readonly_unsigned
        account keys: compact-u16 count, 32 bytes each
        recent blockhash: 32 bytes
        instructions: compact-u16 count, each
            program id index (u8), account indices (compact array), data (compact array)
"""
from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Sequence

import base58

from .exceptions import InvalidParameters
from .signer import Signer

SIGNATURE_LENGTH = 64
PUBLIC_KEY_LENGTH = 32


@dataclass(frozen=True)
class AccountMeta:
    pubkey: str
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True)
class Instruction:
    program_id: str
    accounts: tuple[AccountMeta, ...]
    data: bytes = b""


def encode_length(value: int) -> bytes:
    """Encode a compact-u16 length prefix."""
    if not 0 <= value <= 0xFFFF:
        raise InvalidParameters(f"compact-u16 out of range: {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_length(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode a compact-u16 at ``offset``; returns (value, bytes consumed)."""
    value = 0
    for i in range(3):
        byte = data[offset + i]
        value |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return value, i + 1
    raise InvalidParameters("compact-u16 longer than 3 bytes")


def _pubkey_bytes(pubkey: str) -> bytes:
    raw = base58.b58decode(pubkey)
    if len(raw) != PUBLIC_KEY_LENGTH:
        raise InvalidParameters(f"Invalid public key '{pubkey}'", field="pubkey")
    return raw


@dataclass
class Message:
    num_required_signatures: int
    num_readonly_signed: int
    num_readonly_unsigned: int
    account_keys: list[str]
    recent_blockhash: str
    instructions: list[tuple[int, list[int], bytes]] = field(default_factory=list)

    @classmethod
    def compile(
        cls,
        fee_payer: str,
        instructions: Sequence[Instruction],
        recent_blockhash: str,
    ) -> "Message":
        """Order account keys and index instructions against them.

        Key order: fee payer, writable signers, readonly signers, writable
        non-signers, readonly non-signers. Within a group, first appearance
        wins.
        """
        flags: dict[str, list[bool]] = {fee_payer: [True, True]}
        for ix in instructions:
            for meta in ix.accounts:
                entry = flags.setdefault(meta.pubkey, [False, False])
                entry[0] = entry[0] or meta.is_signer
                entry[1] = entry[1] or meta.is_writable
            flags.setdefault(ix.program_id, [False, False])

        def group(key: str) -> int:
            if key == fee_payer:
                return 0
            is_signer, is_writable = flags[key]
            if is_signer:
                return 1 if is_writable else 2
            return 3 if is_writable else 4

        keys = sorted(flags, key=group)  # stable within groups
        num_signers = sum(1 for k in keys if flags[k][0])
        num_readonly_signed = sum(1 for k in keys if flags[k][0] and not flags[k][1])
        num_readonly_unsigned = sum(1 for k in keys if not flags[k][0] and not flags[k][1])

        index = {key: i for i, key in enumerate(keys)}
        compiled = [
            (index[ix.program_id], [index[m.pubkey] for m in ix.accounts], bytes(ix.data))
            for ix in instructions
        ]
        return cls(
            num_required_signatures=num_signers,
            num_readonly_signed=num_readonly_signed,
            num_readonly_unsigned=num_readonly_unsigned,
            account_keys=keys,
            recent_blockhash=recent_blockhash,
            instructions=compiled,
        )

    @property
    def signer_keys(self) -> list[str]:
        return self.account_keys[: self.num_required_signatures]

    def serialize(self) -> bytes:
        out = bytearray(
            [self.num_required_signatures, self.num_readonly_signed, self.num_readonly_unsigned]
        )
        out += encode_length(len(self.account_keys))
        for key in self.account_keys:
            out += _pubkey_bytes(key)
        out += _pubkey_bytes(self.recent_blockhash)
        out += encode_length(len(self.instructions))
        for program_index, account_indices, data in self.instructions:
            out.append(program_index)
            out += encode_length(len(account_indices))
            out += bytes(account_indices)
            out += encode_length(len(data))
            out += data
        return bytes(out)


@dataclass
class Transaction:
    message: Message
    signatures: list[bytes] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        fee_payer: Signer,
        instructions: Sequence[Instruction],
        recent_blockhash: str,
        signers: Sequence[Signer] = (),
    ) -> "Transaction":
        """Compile and sign in one step.

        Raises:
            InvalidParameters: If a required signer is missing
        """
        message = Message.compile(fee_payer.public_key, instructions, recent_blockhash)
        tx = cls(message=message)
        tx.sign([fee_payer, *signers])
        return tx

    def sign(self, signers: Sequence[Signer]) -> None:
        by_key = {s.public_key: s for s in signers}
        payload = self.message.serialize()
        signatures = []
        for key in self.message.signer_keys:
            signer = by_key.get(key)
            if signer is None:
                raise InvalidParameters(f"Missing signature for {key}", field="signers")
            signatures.append(signer.sign(payload))
        self.signatures = signatures

    @property
    def signature(self) -> str:
        """Transaction id: base58 of the fee payer's signature."""
        if not self.signatures:
            raise InvalidParameters("Transaction is not signed")
        return base58.b58encode(self.signatures[0]).decode()

    def serialize(self) -> bytes:
        out = bytearray(encode_length(len(self.signatures)))
        for sig in self.signatures:
            if len(sig) != SIGNATURE_LENGTH:
                raise InvalidParameters("Signatures must be 64 bytes")
            out += sig
        out += self.message.serialize()
        return bytes(out)

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode()


__all__ = [
    "AccountMeta",
    "Instruction",
    "Message",
    "Transaction",
    "encode_length",
    "decode_length",
]
