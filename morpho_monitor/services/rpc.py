"""Web3 connection helpers.

Each chain the engine reads from gets one explicitly constructed AsyncWeb3
instance. Callers decide which connections are shared.
"""

import logging

import aiohttp
from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.eth import AsyncEth

logger = logging.getLogger(__name__)


def create_web3(rpc_url: str, timeout_seconds: float = 10.0) -> AsyncWeb3:
    """Create an AsyncWeb3 instance for an HTTP RPC endpoint.

    Args:
        rpc_url: JSON-RPC endpoint URL
        timeout_seconds: Transport timeout applied to every request

    Returns:
        AsyncWeb3 instance bound to the endpoint
    """
    logger.debug(f"Creating Web3 connection to {rpc_url}")
    return AsyncWeb3(
        AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout_seconds)}),
        modules={"eth": (AsyncEth,)},
    )
