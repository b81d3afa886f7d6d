"""
SDK for memo-guard.

Provides the guarded AI completion proxy.
"""

from .proxy_client import GuardedProxyClient, ProxyResponse

__all__ = ["GuardedProxyClient", "ProxyResponse"]
