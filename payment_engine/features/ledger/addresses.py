"""
Program-derived addresses for escrow and subscription accounts.

Addresses are computed from stable seed material so related accounts can be
located without a lookup table:
- subscription account: ("user", owner)
- escrow account: ("escrow", owner, seed as u64 little-endian)
"""
from __future__ import annotations

import struct
from typing import Union

from solders.pubkey import Pubkey

from payment_engine.models.escrow import U64_MAX

ESCROW_TAG = "escrow"
SUBSCRIPTION_TAG = "user"

SeedComponent = Union[Pubkey, str, int, bytes]


def _seed_bytes(component: SeedComponent) -> bytes:
    if isinstance(component, Pubkey):
        return bytes(component)
    if isinstance(component, bytes):
        return component
    if isinstance(component, bool):
        raise TypeError("bool is not a valid seed component")
    if isinstance(component, int):
        if component < 0 or component > U64_MAX:
            raise ValueError(f"Seed {component} does not fit in a u64")
        return struct.pack("<Q", component)
    if isinstance(component, str):
        return bytes(Pubkey.from_string(component))
    raise TypeError(f"Unsupported seed component: {type(component).__name__}")


def as_pubkey(address: Union[Pubkey, str]) -> Pubkey:
    return address if isinstance(address, Pubkey) else Pubkey.from_string(address)


class AddressDeriver:
    """Derives addresses owned by one escrow program. Pure; holds no state beyond the program id."""

    def __init__(self, program_id: Union[Pubkey, str]):
        self.program_id = as_pubkey(program_id)

    def derive_pubkey(self, purpose_tag: str, *seed_components: SeedComponent) -> Pubkey:
        seeds = [purpose_tag.encode("utf-8")]
        seeds.extend(_seed_bytes(component) for component in seed_components)
        address, _bump = Pubkey.find_program_address(seeds, self.program_id)
        return address

    def derive_address(self, purpose_tag: str, *seed_components: SeedComponent) -> str:
        """
        Deterministic address for a purpose tag and seed components.

        Public keys (or their base58 strings) contribute their 32 raw bytes,
        integers their u64 little-endian encoding.
        """
        return str(self.derive_pubkey(purpose_tag, *seed_components))

    def subscription_address(self, owner: Union[Pubkey, str]) -> str:
        return self.derive_address(SUBSCRIPTION_TAG, as_pubkey(owner))

    def escrow_address(self, owner: Union[Pubkey, str], seed: int) -> str:
        return self.derive_address(ESCROW_TAG, as_pubkey(owner), seed)
