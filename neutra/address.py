"""
Neutra Account Addresses

Participants, operators and the escrow account are EVM-style addresses
(20 bytes, 0x prefix). Everything that keys state by account goes through
normalize_address() so that differently-cased inputs map to one entry.
"""

from eth_utils import is_address, to_checksum_address

from .exceptions import InvalidAddressError


def normalize_address(address: str) -> str:
    """
    Validate an address and return its EIP-55 checksum form.

    Raises:
        InvalidAddressError: if the value is not a 20-byte hex address or
            carries an invalid mixed-case checksum
    """
    if not isinstance(address, str) or not is_address(address):
        raise InvalidAddressError(f"Invalid account address: {address!r}")
    return to_checksum_address(address)

