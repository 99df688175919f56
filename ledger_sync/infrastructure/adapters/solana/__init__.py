"""Solana RPC client and Anchor decoders."""

from .decoder import AnchorAccountDecoder, AnchorEventDecoder
from .idl import AnchorIdl, BorshReader, discriminator
from .rpc_client import SolanaLedgerClient

__all__ = [
    "AnchorAccountDecoder",
    "AnchorEventDecoder",
    "AnchorIdl",
    "BorshReader",
    "discriminator",
    "SolanaLedgerClient",
]
