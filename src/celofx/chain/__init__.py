"""Celo chain access: JSON-RPC client, ABI helpers, tokens and signing."""

from celofx.chain.abi import TRANSFER_EVENT, DecodedLog, EventSpec, decode_log, encode_call
from celofx.chain.client import ChainCall, ChainClient, JsonRpcChainClient, TxReceipt
from celofx.chain.signing import derive_user_wallet, is_address, load_account, recover_signer
from celofx.chain.tokens import TOKENS, Token, get_token

__all__ = [
    "TRANSFER_EVENT",
    "DecodedLog",
    "EventSpec",
    "decode_log",
    "encode_call",
    "ChainCall",
    "ChainClient",
    "JsonRpcChainClient",
    "TxReceipt",
    "derive_user_wallet",
    "is_address",
    "load_account",
    "recover_signer",
    "TOKENS",
    "Token",
    "get_token",
]
