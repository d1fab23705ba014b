"""ONC RPC proxy for NFSv3 with delay and drop injection, metrics and rpcbind support."""

__version__ = "0.1.0"