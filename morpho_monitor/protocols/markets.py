"""Static market, vault and token configuration for World Chain.

Market IDs can be found on the Morpho app, on Worldscan, or by querying the
Morpho Blue contract directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class TokenRef:
    address: str
    symbol: str
    decimals: int

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TokenRef):
            return NotImplemented
        return self.address.lower() == other.address.lower()

    def __hash__(self) -> int:
        return hash(self.address.lower())


@dataclass(frozen=True)
class MarketConfig:
    """One Morpho Blue lending market."""
    market_name: str
    market_id: str                 # 32-byte market id, 0x-prefixed hex
    collateral_token: TokenRef
    loan_token: TokenRef
    liquidation_ltv: float         # 0.77 = 77%
    oracle_address: str | None = None
    active: bool = True

    @property
    def market_id_bytes(self) -> bytes:
        return bytes.fromhex(self.market_id.removeprefix("0x"))

    @property
    def has_oracle(self) -> bool:
        return bool(self.oracle_address) and self.oracle_address.lower() != ZERO_ADDRESS


@dataclass(frozen=True)
class VaultConfig:
    """Single-asset MetaMorpho vault built on top of Morpho Blue."""
    vault_address: str
    underlying_asset: TokenRef
    name: str = ""


@dataclass(frozen=True)
class InterestVaultConfig:
    """World App WLD vault on OP Mainnet."""
    vault_address: str
    token: TokenRef


WLD = TokenRef(address="0x2cfc85d8e48f8eab294be644d9e25c3030863003", symbol="WLD", decimals=18)
USDC = TokenRef(address="0x79a02482a880bce3f13e09da970dc34db4cd24d1", symbol="USDC", decimals=6)
WETH = TokenRef(address="0x4200000000000000000000000000000000000006", symbol="WETH", decimals=18)
WBTC = TokenRef(address="0x03c7054bcb39f7b2e5b2c7acb37583e32d70cfa3", symbol="WBTC", decimals=8)

WORLD_CHAIN_TOKENS: List[TokenRef] = [WLD, USDC, WETH, WBTC]

# Symbols the bulk price endpoint is asked for
PRICED_SYMBOLS: List[str] = ["WLD", "USDC", "WBTC", "WETH"]

MARKET_CONFIGS: List[MarketConfig] = [
    MarketConfig(
        market_name="WLD→USDC",
        market_id="0xba0ae12a5cdbf9a458566be68055f30c859771612950b5e43428a51becc6f6e9",
        collateral_token=WLD,
        loan_token=USDC,
        liquidation_ltv=0.77,
    ),
    MarketConfig(
        market_name="WETH→USDC",
        market_id="0x5fadb14df6523eb13a939f8024dbc54b10bdb4e521741e9995e2951337134b53",
        collateral_token=WETH,
        loan_token=USDC,
        liquidation_ltv=0.86,
    ),
    MarketConfig(
        market_name="WETH→WLD",
        market_id="0x296a8139fbd0e764a517d26956bb868a6c07b30c8627df5ad9a720963622bf37",
        collateral_token=WETH,
        loan_token=WLD,
        liquidation_ltv=0.77,
    ),
    MarketConfig(
        market_name="WBTC→WLD",
        market_id="0x14f297e80b8d7410ad506f80f2d747ff9eb0d9d44ab8c298a444219fcaf3c2f2",
        collateral_token=WBTC,
        loan_token=WLD,
        liquidation_ltv=0.77,
    ),
    MarketConfig(
        market_name="WBTC→WETH",
        market_id="0x19c682c3a37025075074cefea866fbe54656abc0fb6a7355b62a53f45b959abf",
        collateral_token=WBTC,
        loan_token=WETH,
        liquidation_ltv=0.91,
    ),
    MarketConfig(
        market_name="WBTC→USDC",
        market_id="0x787c5ff694f04e20cc6b3932cd662425161109bb0d63b189c48d99e714a3bd69",
        collateral_token=WBTC,
        loan_token=USDC,
        liquidation_ltv=0.86,
    ),
]

METAMORPHO_VAULTS: List[VaultConfig] = [
    VaultConfig(
        vault_address="0xb1E80387EbE53Ff75a89736097D34dC8D9E9045B",
        underlying_asset=USDC,
        name="MetaMorpho USDC Vault",
    ),
    VaultConfig(
        vault_address="0x348831b46876d3dF2Db98BdEc5E3B4083329Ab9f",
        underlying_asset=WLD,
        name="MetaMorpho WLD Vault",
    ),
    VaultConfig(
        vault_address="0x0Db7E405278c2674F462aC9D9eb8b8346D1c1571",
        underlying_asset=WETH,
        name="MetaMorpho WETH Vault",
    ),
    VaultConfig(
        vault_address="0xBC8C37467c5Df9D50B42294B8628c25888BECF61",
        underlying_asset=WBTC,
        name="MetaMorpho WBTC Vault",
    ),
]

WORLD_APP_VAULT = InterestVaultConfig(
    vault_address="0x21c4928109acB0659A88AE5329b5374A3024694C",
    token=TokenRef(address="0xdc6ff44d5d932cbd77b52e5612ba0529dc6226f1", symbol="WLD", decimals=18),
)


def get_active_markets(configs: List[MarketConfig] | None = None) -> List[MarketConfig]:
    return [config for config in (configs if configs is not None else MARKET_CONFIGS) if config.active]


def get_token_by_address(address: str) -> TokenRef | None:
    for token in WORLD_CHAIN_TOKENS:
        if token.address.lower() == address.lower():
            return token
    return None

