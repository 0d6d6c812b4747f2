"""
Chain JSON-RPC integration module.
"""

from entitlement_engine.integrations.chain.rpc_client import ChainRPCClient, ChainRPCError

__all__ = ["ChainRPCClient", "ChainRPCError"]
