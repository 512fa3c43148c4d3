"""
Neutra Batch Instruction Codec

Operators drive a batch with one ABI-encoded blob per hedged asset. The
coordinator treats the blobs as opaque; only the venue adapter decodes
them. The payload layout decides the leg:

  - open leg:  (address asset, uint256 notional, uint256 acceptable_price)
  - close leg: (address asset, uint256 notional, uint256 acceptable_price,
                address receiver)

Open-leg notional is collateral in principal units (18 decimals); close-leg
notional is a USD size (30 decimals). Acceptable prices carry 30 decimals.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import decode_hex, encode_hex

from ..address import normalize_address
from ..exceptions import InvalidAddressError, InvalidInstructionError

OPEN_TYPES = ("address", "uint256", "uint256")
CLOSE_TYPES = ("address", "uint256", "uint256", "address")

_WORD = 32
_OPEN_LENGTH = _WORD * len(OPEN_TYPES)
_CLOSE_LENGTH = _WORD * len(CLOSE_TYPES)

InstructionBlob = Union[bytes, str]


class ExecutionLeg(str, Enum):
    OPEN = "open"
    CLOSE = "close"


@dataclass(frozen=True)
class AssetInstruction:
    """Decoded per-asset execution instruction."""
    leg: ExecutionLeg
    asset: str
    notional: int
    acceptable_price: int
    receiver: Optional[str] = None


def encode_open_instruction(asset: str, notional: int, acceptable_price: int) -> bytes:
    """Encode an instruction that opens (increases) a hedge on *asset*."""
    try:
        return encode(list(OPEN_TYPES), [normalize_address(asset), notional, acceptable_price])
    except (EncodingError, InvalidAddressError, TypeError, ValueError, OverflowError) as e:
        raise InvalidInstructionError(f"Cannot encode open instruction: {e}") from e


def encode_close_instruction(
    asset: str,
    notional: int,
    acceptable_price: int,
    receiver: str,
) -> bytes:
    """Encode an instruction that closes (decreases) a hedge on *asset*."""
    try:
        return encode(
            list(CLOSE_TYPES),
            [normalize_address(asset), notional, acceptable_price, normalize_address(receiver)],
        )
    except (EncodingError, InvalidAddressError, TypeError, ValueError, OverflowError) as e:
        raise InvalidInstructionError(f"Cannot encode close instruction: {e}") from e


def _as_bytes(blob: InstructionBlob) -> bytes:
    if isinstance(blob, (bytes, bytearray)):
        return bytes(blob)
    if isinstance(blob, str):
        try:
            return decode_hex(blob)
        except (ValueError, TypeError) as e:
            raise InvalidInstructionError(f"Instruction is not valid hex: {e}") from e
    raise InvalidInstructionError(f"Unsupported instruction type: {type(blob).__name__}")


def leg_of(blob: InstructionBlob) -> ExecutionLeg:
    """Leg implied by the payload length, without decoding the fields."""
    length = len(_as_bytes(blob))
    if length == _OPEN_LENGTH:
        return ExecutionLeg.OPEN
    if length == _CLOSE_LENGTH:
        return ExecutionLeg.CLOSE
    raise InvalidInstructionError(f"Unexpected instruction length {length}")


def decode_instruction(blob: InstructionBlob) -> AssetInstruction:
    """
    Decode one instruction blob.

    Raises:
        InvalidInstructionError: wrong length, bad encoding, zero notional
    """
    raw = _as_bytes(blob)
    leg = leg_of(raw)
    types = OPEN_TYPES if leg == ExecutionLeg.OPEN else CLOSE_TYPES
    try:
        values = decode(list(types), raw)
    except DecodingError as e:
        raise InvalidInstructionError(f"Cannot decode {leg.value} instruction: {e}") from e

    try:
        asset = normalize_address(values[0])
        receiver = normalize_address(values[3]) if leg == ExecutionLeg.CLOSE else None
    except InvalidAddressError as e:
        raise InvalidInstructionError(str(e)) from e

    notional, acceptable_price = int(values[1]), int(values[2])
    if notional <= 0:
        raise InvalidInstructionError(f"Instruction for {asset} has zero notional")

    return AssetInstruction(
        leg=leg,
        asset=asset,
        notional=notional,
        acceptable_price=acceptable_price,
        receiver=receiver,
    )


def decode_instructions(blobs: Sequence[InstructionBlob]) -> List[AssetInstruction]:
    return [decode_instruction(b) for b in blobs]


def to_hex(blob: InstructionBlob) -> str:
    """Hex form used when instructions are persisted or logged."""
    return encode_hex(_as_bytes(blob))
