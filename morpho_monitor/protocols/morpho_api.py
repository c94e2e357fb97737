"""Morpho GraphQL API position source.

The Morpho API indexes positions on every chain Morpho Blue is deployed on,
so it complements the World Chain contract reads with Base, Optimism and
Ethereum positions. Chains are queried independently; a failing chain is
recorded in the per-chain summary and never fails the whole read.
"""

import asyncio
import logging
from typing import Any, Dict, List, Tuple

import aiohttp

from morpho_monitor.protocols.base import (
    MarketInfo,
    NormalizedPosition,
    PositionSource,
    PositionState,
    ReadResult,
    format_units,
)
from morpho_monitor.protocols.markets import TokenRef
from morpho_monitor.services.diagnostics import Trace
from morpho_monitor.services.metrics import record_api_query

logger = logging.getLogger(__name__)

MORPHO_API_URL = "https://api.morpho.org/graphql"

SUPPORTED_CHAINS: Dict[int, str] = {
    8453: "Base",
    10: "Optimism",
    480: "World Chain",
    1: "Ethereum",
}

USER_POSITIONS_QUERY = """
query UserPosition($address: String!, $chainId: Int!) {
  userByAddress(chainId: $chainId, address: $address) {
    address
    marketPositions {
      market {
        uniqueKey
        lltv
        loanAsset { address symbol decimals }
        collateralAsset { address symbol decimals }
      }
      state {
        collateral
        collateralUsd
        borrowAssets
        borrowAssetsUsd
        borrowShares
        supplyAssets
        supplyAssetsUsd
        supplyShares
      }
    }
  }
}
"""

LLTV_SCALE = 10**18


class MorphoApiError(RuntimeError):
    """The Morpho API answered with an HTTP or GraphQL error."""


def _token(data: Dict[str, Any]) -> TokenRef:
    return TokenRef(
        address=data["address"],
        symbol=data["symbol"],
        decimals=int(data["decimals"]),
    )


def _lltv(value: Any) -> float:
    """LLTV arrives as a WAD integer string ("770000000000000000") or a ratio."""
    lltv = float(value)
    return lltv / LLTV_SCALE if lltv > 1 else lltv


def _amount(value: Any) -> int:
    return int(value) if value is not None else 0


def _usd(value: Any) -> float:
    return float(value) if value is not None else 0.0


def parse_market_position(data: Dict[str, Any]) -> NormalizedPosition:
    """Convert one ``marketPositions`` entry into a NormalizedPosition."""
    market = data["market"]
    state = data["state"]
    loan_asset = _token(market["loanAsset"])
    collateral_asset = _token(market["collateralAsset"])

    return NormalizedPosition(
        market=MarketInfo(
            id=market["uniqueKey"],
            liquidation_ltv=_lltv(market["lltv"]),
            loan_asset=loan_asset,
            collateral_asset=collateral_asset,
        ),
        state=PositionState(
            collateral_amount=format_units(_amount(state.get("collateral")), collateral_asset.decimals),
            collateral_usd=_usd(state.get("collateralUsd")),
            borrow_amount=format_units(_amount(state.get("borrowAssets")), loan_asset.decimals),
            borrow_assets_usd=_usd(state.get("borrowAssetsUsd")),
            borrow_shares=str(_amount(state.get("borrowShares"))),
            supply_amount=format_units(_amount(state.get("supplyAssets")), loan_asset.decimals),
            supply_assets_usd=_usd(state.get("supplyAssetsUsd")),
            supply_shares=str(_amount(state.get("supplyShares"))),
        ),
    )


class MorphoApiReader(PositionSource):
    """
    Fetches a wallet's Morpho positions from the GraphQL API on every
    supported chain.

    Example usage:
        reader = MorphoApiReader()
        result = await reader.get_positions(address)
        print(reader.chain_summary(address))  # {"Base": "0 positions", ...}
    """

    def __init__(
        self,
        api_url: str = MORPHO_API_URL,
        chains: Dict[int, str] | None = None,
        timeout_seconds: float = 10.0,
    ):
        self._api_url = api_url
        self._chains = chains if chains is not None else SUPPORTED_CHAINS
        self._timeout = timeout_seconds
        self._summaries: Dict[str, Dict[str, str]] = {}

    @property
    def name(self) -> str:
        return "Morpho API"

    def chain_summary(self, wallet_address: str) -> Dict[str, str]:
        """Outcome of the last query per chain ("3 positions", "error: ...")."""
        summary = {name: "not queried" for name in self._chains.values()}
        summary.update(self._summaries.get(wallet_address.lower(), {}))
        return summary

    def chain_debug_info(self, wallet_address: str) -> str:
        return ", ".join(f"{name}: {result}" for name, result in self.chain_summary(wallet_address).items())

    async def get_positions(self, wallet_address: str) -> ReadResult[List[NormalizedPosition]]:
        trace = Trace()
        trace.add(
            f"Querying Morpho API for {wallet_address} on {len(self._chains)} chains",
            logger=logger,
        )

        timeout = aiohttp.ClientTimeout(total=self._timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            per_chain = await asyncio.gather(*(
                self._query_chain(session, chain_id, wallet_address, trace)
                for chain_id in self._chains
            ))

        self._summaries[wallet_address.lower()] = {
            self._chains[chain_id]: outcome for chain_id, (_, outcome) in zip(self._chains, per_chain)
        }
        positions = [position for chain_positions, _ in per_chain for position in chain_positions]
        trace.add(f"Morpho API chains: {self.chain_debug_info(wallet_address)}", logger=logger)
        return ReadResult(value=positions, trace=trace)

    async def _query_chain(
        self,
        session: aiohttp.ClientSession,
        chain_id: int,
        wallet_address: str,
        trace: Trace,
    ) -> Tuple[List[NormalizedPosition], str]:
        chain_name = self._chains[chain_id]
        try:
            user = await self._fetch_user(session, chain_id, wallet_address.lower())
            entries = (user or {}).get("marketPositions") or []
            positions = [parse_market_position(entry) for entry in entries]
        except (aiohttp.ClientError, asyncio.TimeoutError, MorphoApiError, KeyError, TypeError, ValueError) as e:
            record_api_query(chain_name, "error")
            trace.add(f"Morpho API query failed on {chain_name}: {e}", level=logging.WARNING, logger=logger)
            return [], f"error: {e}"

        record_api_query(chain_name, "success")
        if positions:
            trace.add(f"Found {len(positions)} positions on {chain_name}", logger=logger)
        return positions, f"{len(positions)} positions"

    async def _fetch_user(
        self,
        session: aiohttp.ClientSession,
        chain_id: int,
        wallet_address: str,
    ) -> Dict[str, Any] | None:
        """POST the positions query for one chain and return ``userByAddress``."""
        payload = {
            "query": USER_POSITIONS_QUERY,
            "variables": {"address": wallet_address, "chainId": chain_id},
        }
        async with session.post(
            self._api_url,
            json=payload,
            headers={"Accept": "application/json"},
        ) as response:
            if response.status != 200:
                raise MorphoApiError(f"HTTP {response.status}")
            body = await response.json(content_type=None)

        data = body.get("data") or {}
        user = data.get("userByAddress")
        errors = body.get("errors") or []
        if user is None and errors:
            # Wallets the indexer has never seen come back as a NOT_FOUND error
            if all(error.get("status") == "NOT_FOUND" for error in errors):
                return None
            raise MorphoApiError("; ".join(str(error.get("message")) for error in errors))
        return user
