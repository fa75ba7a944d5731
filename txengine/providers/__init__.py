from .rpc import JsonRpcProvider, RpcError, RpcTransactionHandle

__all__ = [
    "JsonRpcProvider",
    "RpcError",
    "RpcTransactionHandle",
]
