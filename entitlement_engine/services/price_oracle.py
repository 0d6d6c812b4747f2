"""
Price Oracle Adapter.

Quotes the deposit token in USD from two concentrated-liquidity pools:

    base/USD   = pool(base, stable) price, scaled by 10^12
    token/base = pool(token, base) price
    token/USD  = base/USD * token/base

Each pool price is (sqrtPriceX96 / 2^96)^2, inverted when the pool's token
ordering is the reverse of the quote direction. sqrtPriceX96 is a uint160,
so the square carries up to 320 bits; all arithmetic runs in Decimal with
78 significant digits.
"""

import logging
from decimal import Decimal, localcontext

from entitlement_engine.config.settings import EngineSettings, PoolSettings
from entitlement_engine.errors import ConfigurationError, PriceUnavailableError, TransientExternalError

logger = logging.getLogger(__name__)

PRICE_PRECISION = 78
Q96 = Decimal(2 ** 96)


def price_from_sqrt_price_x96(
    sqrt_price_x96: int,
    invert: bool = True,
    decimals_adjustment: int = 0,
) -> Decimal:
    """
    Convert a pool's sqrtPriceX96 into a price.

    Args:
        sqrt_price_x96: Raw slot0 value
        invert: Return 1/price
        decimals_adjustment: Multiply the result by 10^n

    Raises:
        PriceUnavailableError: If the pool reports a zero price
    """
    if sqrt_price_x96 <= 0:
        raise PriceUnavailableError("Pool reported a zero price")

    with localcontext() as ctx:
        ctx.prec = PRICE_PRECISION
        ratio = Decimal(sqrt_price_x96) / Q96
        price = ratio * ratio
        if invert:
            price = Decimal(1) / price
        if decimals_adjustment:
            price = price.scaleb(decimals_adjustment)
        return +price


def token_usd_price(
    base_usd_sqrt_price_x96: int,
    token_base_sqrt_price_x96: int,
    base_usd_pool: PoolSettings,
    token_base_pool: PoolSettings,
) -> Decimal:
    """Combine the two pool readings into a token/USD price."""
    base_usd = price_from_sqrt_price_x96(
        base_usd_sqrt_price_x96,
        invert=base_usd_pool.invert,
        decimals_adjustment=base_usd_pool.decimals_adjustment,
    )
    token_base = price_from_sqrt_price_x96(
        token_base_sqrt_price_x96,
        invert=token_base_pool.invert,
        decimals_adjustment=token_base_pool.decimals_adjustment,
    )
    with localcontext() as ctx:
        ctx.prec = PRICE_PRECISION
        price = base_usd * token_base

    if price <= 0:
        raise PriceUnavailableError("Computed token price is zero")
    return price


class PriceOracle:
    """Reads both pools through a chain client and quotes token/USD."""

    def __init__(self, chain, settings: EngineSettings):
        """
        Args:
            chain: Object with ``async read_slot0(pool_address) -> int``
            settings: Pool addresses and orientation
        """
        self.chain = chain
        self.base_usd_pool = settings.base_usd_pool
        self.token_base_pool = settings.token_base_pool

        if not self.base_usd_pool.address or not self.token_base_pool.address:
            raise ConfigurationError("Both price pool addresses must be configured")

    async def _read(self, pool: PoolSettings) -> int:
        try:
            return await self.chain.read_slot0(pool.address)
        except TransientExternalError as e:
            raise PriceUnavailableError(f"Pool {pool.address} unreadable: {e}") from e

    async def token_usd_price(self) -> Decimal:
        """
        Current token price in USD.

        Raises:
            PriceUnavailableError: If a pool cannot be read or prices at zero
        """
        base_usd_raw = await self._read(self.base_usd_pool)
        token_base_raw = await self._read(self.token_base_pool)

        price = token_usd_price(
            base_usd_raw,
            token_base_raw,
            self.base_usd_pool,
            self.token_base_pool,
        )
        logger.info("Token price quoted", extra={"token_usd": str(price)})
        return price
