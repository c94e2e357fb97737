"""
Batched contract reads with per-call failure isolation.

Reads are first attempted as one Multicall3 ``aggregate3`` request (deployed at
the same address on all major EVM chains, World Chain included). If that
request itself fails, every call is retried as its own ``eth_call``. A single
call reverting never affects its siblings in either path.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Sequence, Tuple

from eth_abi import decode, encode
from web3 import AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from morpho_monitor.services.metrics import (
    record_call_results,
    record_multicall_fallback,
    record_rpc_request,
)

logger = logging.getLogger(__name__)

MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

MULTICALL3_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "allowFailure", "type": "bool"},
                    {"name": "callData", "type": "bytes"},
                ],
                "name": "calls",
                "type": "tuple[]",
            }
        ],
        "name": "aggregate3",
        "outputs": [
            {
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"},
                ],
                "name": "returnData",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "payable",
        "type": "function",
    }
]

# Errors meaning "this call reverted", as opposed to "the RPC is unreachable"
REVERT_ERRORS = (ContractLogicError, BadFunctionCallOutput)


class CallFailedError(RuntimeError):
    """A single contract read failed."""


class FatalFetchError(RuntimeError):
    """The RPC transport is unreachable for both batched and individual reads."""


@dataclass
class Call:
    """Represents a single contract call to be batched."""
    target: str  # Contract address
    function_signature: str  # e.g. "position(bytes32,address)"
    call_data: bytes  # Encoded function call
    output_types: List[str]
    args: Tuple[Any, ...] = ()
    allow_failure: bool = True  # Whether to continue if this call fails

    @property
    def function_name(self) -> str:
        return self.function_signature.split("(", 1)[0]


@dataclass
class CallResult:
    """Result of a single call, decoded when successful."""
    success: bool
    value: Tuple[Any, ...] | None = None
    error: str | None = None
    transport_error: bool = field(default=False, repr=False)


def build_call(
    target: str,
    function_signature: str,
    input_types: List[str],
    input_values: List[Any],
    output_types: List[str],
    allow_failure: bool = True,
) -> Call:
    """
    Build a Call object for inclusion in a batch.

    Args:
        target: Contract address to call
        function_signature: Function signature (e.g., "balanceOf(address)")
        input_types: List of input types (e.g., ["address"])
        input_values: List of input values
        output_types: ABI types of the return values
        allow_failure: Whether to continue if this call fails

    Returns:
        Call object ready for batching
    """
    # Function selector is the first 4 bytes of keccak256(signature)
    selector = bytes(AsyncWeb3.keccak(text=function_signature)[:4])

    if input_types and input_values:
        call_data = selector + encode(input_types, input_values)
    else:
        call_data = selector

    return Call(
        target=AsyncWeb3.to_checksum_address(target),
        function_signature=function_signature,
        call_data=call_data,
        output_types=list(output_types),
        args=tuple(input_values),
        allow_failure=allow_failure,
    )


def decode_result(call: Call, success: bool, return_data: bytes) -> CallResult:
    """Decode raw return data for a call into a CallResult."""
    if not success:
        return CallResult(success=False, error=f"{call.function_name} reverted")
    if not return_data:
        # Calls to addresses without code succeed with empty data
        return CallResult(success=False, error=f"{call.function_name} returned no data")

    try:
        return CallResult(success=True, value=tuple(decode(call.output_types, bytes(return_data))))
    except Exception as e:
        logger.error(f"Failed to decode {call.function_name} result from {call.target}: {e}")
        return CallResult(success=False, error=f"decode error: {e}")


class BatchStrategy(ABC):
    """Two-stage read strategy: one batched request, then individual calls."""

    @abstractmethod
    async def try_batch(self, calls: Sequence[Call]) -> List[CallResult]:
        """Execute all calls as one request. Raises if the request itself fails."""

    @abstractmethod
    async def try_individual(self, calls: Sequence[Call]) -> List[CallResult]:
        """Execute every call on its own. Never raises for a single call."""


class MulticallStrategy(BatchStrategy):
    """BatchStrategy backed by Multicall3 and plain ``eth_call``."""

    def __init__(
        self,
        web3: AsyncWeb3,
        multicall_address: str = MULTICALL3_ADDRESS,
        timeout_seconds: float = 10.0,
    ):
        self._web3 = web3
        self._timeout = timeout_seconds
        self._multicall_contract = web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(multicall_address),
            abi=MULTICALL3_ABI,
        )

    async def try_batch(self, calls: Sequence[Call]) -> List[CallResult]:
        formatted_calls = [
            (call.target, call.allow_failure, call.call_data)
            for call in calls
        ]

        results = await asyncio.wait_for(
            self._multicall_contract.functions.aggregate3(formatted_calls).call(),
            timeout=self._timeout,
        )
        if len(results) != len(calls):
            raise ValueError(
                f"Multicall returned {len(results)} results for {len(calls)} calls"
            )

        return [
            decode_result(call, result[0], result[1])
            for call, result in zip(calls, results)
        ]

    async def try_individual(self, calls: Sequence[Call]) -> List[CallResult]:
        # gather preserves submission order
        return list(await asyncio.gather(*(self._call_one(call) for call in calls)))

    async def _call_one(self, call: Call) -> CallResult:
        try:
            return_data = await asyncio.wait_for(
                self._web3.eth.call({"to": call.target, "data": call.call_data}),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{call.function_name} on {call.target} timed out after {self._timeout}s")
            return CallResult(success=False, error="timeout")
        except REVERT_ERRORS as e:
            logger.debug(f"{call.function_name} on {call.target} reverted: {e}")
            return CallResult(success=False, error=f"{call.function_name} reverted: {e}")
        except Exception as e:
            logger.warning(f"{call.function_name} on {call.target} failed: {e}")
            return CallResult(success=False, error=str(e), transport_error=True)

        return decode_result(call, True, return_data)


class ChainReader:
    """
    Executes contract reads with batching and an individual-call fallback.

    Example usage:
        reader = ChainReader(web3)

        calls = [
            build_call(vault, "balanceOf(address)", ["address"], [user], ["uint256"])
            for vault in vaults
        ]
        results = await reader.batch_read(calls)
    """

    def __init__(
        self,
        web3: AsyncWeb3 | None = None,
        strategy: BatchStrategy | None = None,
        multicall_address: str = MULTICALL3_ADDRESS,
        timeout_seconds: float = 10.0,
    ):
        if strategy is None:
            if web3 is None:
                raise ValueError("ChainReader needs either a web3 instance or a strategy")
            strategy = MulticallStrategy(web3, multicall_address, timeout_seconds)
        self._strategy = strategy

    @property
    def strategy(self) -> BatchStrategy:
        return self._strategy

    async def batch_read(self, calls: Sequence[Call]) -> List[CallResult]:
        """
        Execute calls and return one result per call, in submission order.

        Raises:
            FatalFetchError: if both the batch request and every individual
                call failed at the transport level
        """
        if not calls:
            return []

        try:
            results = await self._strategy.try_batch(calls)
            record_rpc_request("batch", "success")
        except Exception as e:
            logger.warning(
                f"Multicall batch of {len(calls)} calls failed, "
                f"falling back to individual calls: {e}"
            )
            record_rpc_request("batch", "error")
            record_multicall_fallback()

            results = await self._strategy.try_individual(calls)
            if all(result.transport_error for result in results):
                record_rpc_request("individual", "error")
                raise FatalFetchError(
                    f"RPC unreachable: batch failed ({e}) and all "
                    f"{len(calls)} individual calls failed"
                ) from e
            record_rpc_request("individual", "success")

        succeeded = sum(1 for result in results if result.success)
        record_call_results(succeeded, len(results) - succeeded)
        return results

    async def single_read(self, call: Call) -> Tuple[Any, ...]:
        """Execute one call and return its decoded values, raising on failure."""
        result = (await self._strategy.try_individual([call]))[0]
        record_rpc_request("single", "success" if result.success else "error")
        if not result.success:
            raise CallFailedError(
                f"{call.function_signature} on {call.target} failed: {result.error}"
            )
        return result.value
