"""Vault position readers.

MetaMorpho vaults are ERC-4626 wrappers over Morpho Blue: a share balance that
the vault converts to underlying assets. The World App vault on OP Mainnet is a
custom interest-bearing WLD vault whose ``getDeposit`` getter already reports
the current amount including interest.
"""

import asyncio
import logging
from typing import List

from morpho_monitor.protocols.base import (
    InterestVaultBalance,
    PositionSource,
    ReadResult,
    VaultPosition,
    WalletBalance,
    format_units,
    to_usd,
)
from morpho_monitor.protocols.markets import (
    METAMORPHO_VAULTS,
    WORLD_APP_VAULT,
    InterestVaultConfig,
    TokenRef,
    VaultConfig,
)
from morpho_monitor.services.diagnostics import Trace
from morpho_monitor.services.multicall import ChainReader, build_call
from morpho_monitor.services.price import PriceOracleResolver

logger = logging.getLogger(__name__)


class MetaMorphoVaultReader(PositionSource):
    """Reads share balances in MetaMorpho vaults and converts them to assets."""

    def __init__(
        self,
        chain_reader: ChainReader,
        price_resolver: PriceOracleResolver,
        vaults: List[VaultConfig] | None = None,
    ):
        self._chain_reader = chain_reader
        self._prices = price_resolver
        self._vaults = vaults if vaults is not None else METAMORPHO_VAULTS

    @property
    def name(self) -> str:
        return "MetaMorpho"

    async def get_positions(self, wallet_address: str) -> ReadResult[List[VaultPosition]]:
        trace = Trace()
        if not self._vaults:
            return ReadResult(value=[], trace=trace)

        trace.add(f"Checking {len(self._vaults)} MetaMorpho vaults for {wallet_address}", logger=logger)

        # balanceOf for every vault, then decimals() for every vault
        results = await self._chain_reader.batch_read(
            [
                build_call(vault.vault_address, "balanceOf(address)", ["address"], [wallet_address], ["uint256"])
                for vault in self._vaults
            ]
            + [
                build_call(vault.vault_address, "decimals()", [], [], ["uint8"])
                for vault in self._vaults
            ]
        )
        balance_results = results[:len(self._vaults)]
        decimals_results = results[len(self._vaults):]

        holdings = []
        for vault, result, decimals_result in zip(self._vaults, balance_results, decimals_results):
            if not result.success:
                trace.add(
                    f"Skipping {vault.name or vault.vault_address}: balanceOf failed ({result.error})",
                    level=logging.WARNING,
                    logger=logger,
                )
                continue
            shares = result.value[0]
            if shares == 0:
                continue

            if decimals_result.success:
                share_decimals = decimals_result.value[0]
            else:
                share_decimals = vault.underlying_asset.decimals
                trace.add(
                    f"decimals() failed for {vault.name or vault.vault_address}, "
                    f"using underlying decimals {share_decimals}",
                    level=logging.WARNING,
                    logger=logger,
                )
            holdings.append((vault, shares, share_decimals))

        if not holdings:
            trace.add("No MetaMorpho vault shares found", logger=logger)
            return ReadResult(value=[], trace=trace)

        asset_results, prices = await asyncio.gather(
            self._chain_reader.batch_read([
                build_call(vault.vault_address, "convertToAssets(uint256)", ["uint256"], [shares], ["uint256"])
                for vault, shares, _ in holdings
            ]),
            self._prices.resolve_prices(vault.underlying_asset.symbol for vault, _, _ in holdings),
        )

        positions = []
        for (vault, shares, share_decimals), result in zip(holdings, asset_results):
            if not result.success:
                trace.add(
                    f"Skipping {vault.name or vault.vault_address}: convertToAssets failed ({result.error})",
                    level=logging.WARNING,
                    logger=logger,
                )
                continue

            token = vault.underlying_asset
            assets = format_units(result.value[0], token.decimals)
            positions.append(
                VaultPosition(
                    vault=vault,
                    shares=format_units(shares, share_decimals),
                    assets=assets,
                    assets_usd=to_usd(assets, prices.get(token.symbol.upper(), 0.0)),
                )
            )
            trace.add(f"{vault.name or vault.vault_address}: {assets} {token.symbol}", logger=logger)

        return ReadResult(value=positions, trace=trace)


class InterestVaultReader:
    """Reads the World App WLD vault deposit for a wallet."""

    DEPOSIT_OUTPUT_TYPES = [
        "uint256",  # amount (including interest)
        "uint256",  # endTime
        "uint256",  # depositedAmount
        "uint256",  # lastInterestCalculation
    ]

    def __init__(
        self,
        chain_reader: ChainReader,
        price_resolver: PriceOracleResolver,
        vault: InterestVaultConfig = WORLD_APP_VAULT,
    ):
        self._chain_reader = chain_reader
        self._prices = price_resolver
        self._vault = vault

    @property
    def name(self) -> str:
        return "World App Vault"

    async def get_balance(self, wallet_address: str) -> ReadResult[InterestVaultBalance | None]:
        """
        Read the vault deposit. Returns None as the value when the wallet has
        no deposit or the read failed.
        """
        trace = Trace()
        trace.add(f"Fetching World App vault balance for {wallet_address}", logger=logger)

        token = self._vault.token
        (deposit_result, decimals_result), price = await asyncio.gather(
            self._chain_reader.batch_read([
                build_call(
                    self._vault.vault_address,
                    "getDeposit(address)",
                    ["address"],
                    [wallet_address],
                    self.DEPOSIT_OUTPUT_TYPES,
                ),
                build_call(token.address, "decimals()", [], [], ["uint8"]),
            ]),
            self._prices.resolve_price(token.symbol),
        )

        if not deposit_result.success:
            trace.add(
                f"getDeposit failed: {deposit_result.error}",
                level=logging.WARNING,
                logger=logger,
            )
            return ReadResult(value=None, trace=trace)

        amount_now, end_time, deposited_amount, last_calc = deposit_result.value
        if amount_now == 0 and deposited_amount == 0:
            trace.add("No vault deposit found", logger=logger)
            return ReadResult(value=None, trace=trace)

        if decimals_result.success:
            decimals = decimals_result.value[0]
        else:
            decimals = token.decimals
            trace.add(
                f"decimals() failed, using configured {decimals}",
                level=logging.WARNING,
                logger=logger,
            )

        amount_str = format_units(amount_now, decimals)
        principal_str = format_units(deposited_amount, decimals)
        interest_str = format_units(amount_now - deposited_amount, decimals)

        balance = InterestVaultBalance(
            amount_now=amount_str,
            principal=principal_str,
            accrued_interest=interest_str,
            amount_now_usd=to_usd(amount_str, price),
            principal_usd=to_usd(principal_str, price),
            accrued_interest_usd=to_usd(interest_str, price),
            end_time=int(end_time),
            last_interest_calculation=int(last_calc),
            symbol=token.symbol,
            decimals=decimals,
        )
        trace.add(
            f"Vault balance: {amount_str} {token.symbol} "
            f"(principal {principal_str}, interest {interest_str})",
            logger=logger,
        )
        return ReadResult(value=balance, trace=trace)


class SpendingBalanceReader:
    """Reads the WLD the wallet holds outside the vault (World App spending balance)."""

    def __init__(
        self,
        chain_reader: ChainReader,
        price_resolver: PriceOracleResolver,
        token: TokenRef = WORLD_APP_VAULT.token,
    ):
        self._chain_reader = chain_reader
        self._prices = price_resolver
        self._token = token

    @property
    def name(self) -> str:
        return "World App Spending Balance"

    async def get_balance(self, wallet_address: str) -> ReadResult[WalletBalance | None]:
        trace = Trace()
        token = self._token
        trace.add(f"Fetching {token.symbol} spending balance for {wallet_address}", logger=logger)

        (balance_result, decimals_result), price = await asyncio.gather(
            self._chain_reader.batch_read([
                build_call(token.address, "balanceOf(address)", ["address"], [wallet_address], ["uint256"]),
                build_call(token.address, "decimals()", [], [], ["uint8"]),
            ]),
            self._prices.resolve_price(token.symbol),
        )

        if not balance_result.success:
            trace.add(f"balanceOf failed: {balance_result.error}", level=logging.WARNING, logger=logger)
            return ReadResult(value=None, trace=trace)

        raw_balance = balance_result.value[0]
        if raw_balance == 0:
            trace.add("No spending balance", logger=logger)
            return ReadResult(value=None, trace=trace)

        decimals = decimals_result.value[0] if decimals_result.success else token.decimals
        balance = format_units(raw_balance, decimals)
        trace.add(f"Spending balance: {balance} {token.symbol}", logger=logger)
        return ReadResult(
            value=WalletBalance(
                balance=balance,
                balance_usd=to_usd(balance, price),
                symbol=token.symbol,
                decimals=decimals,
            ),
            trace=trace,
        )
