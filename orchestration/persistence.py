import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import asyncpg

from config import config
from strategy.execution_types import Holdings, ReferencePrice, TradeRecord


logger = logging.getLogger(__name__)

REFERENCE_FIELDS = (
    "first_transaction_price",
    "last_transaction_price",
    "next_buy_price",
    "next_sell_price",
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS reference_prices (
    symbol TEXT PRIMARY KEY,
    first_transaction_price DOUBLE PRECISION NOT NULL DEFAULT 0,
    last_transaction_price DOUBLE PRECISION NOT NULL DEFAULT 0,
    next_buy_price DOUBLE PRECISION NOT NULL DEFAULT 0,
    next_sell_price DOUBLE PRECISION NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS trades (
    id BIGSERIAL PRIMARY KEY,
    symbol TEXT NOT NULL,
    action TEXT NOT NULL CHECK (action IN ('BUY', 'SELL')),
    quantity DOUBLE PRECISION NOT NULL,
    price DOUBLE PRECISION NOT NULL,
    quote_amount DOUBLE PRECISION NOT NULL,
    trade_time TIMESTAMPTZ NOT NULL,
    exchange_trade_id TEXT NOT NULL UNIQUE,
    automated BOOLEAN NOT NULL DEFAULT TRUE
);
CREATE INDEX IF NOT EXISTS trades_symbol_time_idx ON trades (symbol, trade_time DESC);
CREATE TABLE IF NOT EXISTS account_balances (
    asset TEXT PRIMARY KEY,
    free DOUBLE PRECISION NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


class PersistenceError(Exception):
    """A bookkeeping read or write failed; exchange state is not rolled back."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")


def _row_to_reference(row: Mapping[str, Any]) -> ReferencePrice:
    return ReferencePrice(
        symbol=row["symbol"],
        first_transaction_price=float(row["first_transaction_price"]),
        last_transaction_price=float(row["last_transaction_price"]),
        next_buy_price=float(row["next_buy_price"]),
        next_sell_price=float(row["next_sell_price"]),
        updated_at=row["updated_at"],
    )


def _row_to_trade(row: Mapping[str, Any]) -> TradeRecord:
    return TradeRecord(
        symbol=row["symbol"],
        action=row["action"],
        quantity=float(row["quantity"]),
        price=float(row["price"]),
        quote_amount=float(row["quote_amount"]),
        trade_time=row["trade_time"],
        exchange_trade_id=row["exchange_trade_id"],
        automated=row["automated"],
    )


class TradingStore:
    """
    Postgres-backed reference prices, trade ledger and balance snapshot.

    Every reference-price mutation is one transaction that locks the row
    with SELECT ... FOR UPDATE, so concurrent cycles on the same symbol
    serialize while distinct symbols proceed independently.
    """

    def __init__(self, db_config: Optional[Mapping[str, Any]] = None):
        self.db_config = db_config if db_config is not None else config.section('database')
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        db_config = self.db_config
        try:
            self.pool = await asyncpg.create_pool(
                host=db_config.get('host') or 'localhost',
                port=db_config.get('port', 5432),
                database=db_config.get('database'),
                user=db_config.get('user'),
                password=db_config.get('password'),
                min_size=db_config.get('min_size', 1),
                max_size=db_config.get('max_size', 10),
            )
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise PersistenceError('initialize', exc) from exc
        logger.info("Trading store ready")

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def _connection(self, operation: str):
        if self.pool is None:
            raise PersistenceError(operation, RuntimeError("store not initialized"))
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise PersistenceError(operation, exc) from exc

    async def ensure_reference_rows(self, symbols: Iterable[str]) -> None:
        async with self._connection('ensure_reference_rows') as conn:
            await conn.executemany(
                "INSERT INTO reference_prices (symbol) VALUES ($1) ON CONFLICT (symbol) DO NOTHING",
                [(symbol,) for symbol in symbols],
            )

    async def get_reference_price(self, symbol: str) -> ReferencePrice:
        async with self._connection('get_reference_price') as conn:
            row = await conn.fetchrow("SELECT * FROM reference_prices WHERE symbol = $1", symbol)
            if row is None:
                row = await conn.fetchrow(
                    "INSERT INTO reference_prices (symbol) VALUES ($1) "
                    "ON CONFLICT (symbol) DO UPDATE SET symbol = EXCLUDED.symbol RETURNING *",
                    symbol,
                )
        return _row_to_reference(row)

    async def get_all_reference_prices(self) -> Dict[str, ReferencePrice]:
        async with self._connection('get_all_reference_prices') as conn:
            rows = await conn.fetch("SELECT * FROM reference_prices ORDER BY symbol")
        return {row["symbol"]: _row_to_reference(row) for row in rows}

    async def mutate_reference_price(
        self,
        symbol: str,
        mutator: Callable[[ReferencePrice], ReferencePrice],
    ) -> ReferencePrice:
        """Atomic read-modify-write of the full row; the returned value is what was committed."""
        async with self._connection('mutate_reference_price') as conn:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO reference_prices (symbol) VALUES ($1) ON CONFLICT (symbol) DO NOTHING",
                    symbol,
                )
                row = await conn.fetchrow(
                    "SELECT * FROM reference_prices WHERE symbol = $1 FOR UPDATE",
                    symbol,
                )
                updated = mutator(_row_to_reference(row))
                row = await conn.fetchrow(
                    """
                    UPDATE reference_prices
                    SET first_transaction_price = $2,
                        last_transaction_price = $3,
                        next_buy_price = $4,
                        next_sell_price = $5,
                        updated_at = NOW()
                    WHERE symbol = $1
                    RETURNING *
                    """,
                    symbol,
                    updated.first_transaction_price,
                    updated.last_transaction_price,
                    updated.next_buy_price,
                    updated.next_sell_price,
                )
        return _row_to_reference(row)

    async def update_reference_price(
        self,
        symbol: str,
        fields: Mapping[str, float],
        force: bool = False,
    ) -> ReferencePrice:
        """
        Partial update, creating the row when missing.

        ``force`` routes the write through the row-locking transaction so it
        cannot interleave with an in-flight trade update.
        """
        unknown = set(fields) - set(REFERENCE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown reference price fields: {sorted(unknown)}")
        if force:
            logger.warning("Forced reference price update for %s: %s", symbol, dict(fields))
            return await self.mutate_reference_price(symbol, lambda current: current.evolve(**fields))

        columns = list(fields)
        values = [float(fields[c]) for c in columns]
        assignments = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns)
        placeholders = ", ".join(f"${i + 2}" for i in range(len(columns)))
        insert_columns = ", ".join(["symbol", *columns])
        if columns:
            sql = (
                f"INSERT INTO reference_prices ({insert_columns}) VALUES ($1, {placeholders}) "
                f"ON CONFLICT (symbol) DO UPDATE SET {assignments}, updated_at = NOW() RETURNING *"
            )
        else:
            sql = (
                "INSERT INTO reference_prices (symbol) VALUES ($1) "
                "ON CONFLICT (symbol) DO UPDATE SET updated_at = NOW() RETURNING *"
            )
        async with self._connection('update_reference_price') as conn:
            row = await conn.fetchrow(sql, symbol, *values)
        return _row_to_reference(row)

    async def record_trade(self, trade: TradeRecord) -> bool:
        """Append to the ledger; False when the exchange trade id is already present."""
        async with self._connection('record_trade') as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO trades
                    (symbol, action, quantity, price, quote_amount, trade_time, exchange_trade_id, automated)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (exchange_trade_id) DO NOTHING
                RETURNING id
                """,
                trade.symbol,
                trade.action,
                trade.quantity,
                trade.price,
                trade.quote_amount,
                trade.trade_time,
                trade.exchange_trade_id,
                trade.automated,
            )
        return inserted is not None

    async def get_current_holdings(self, symbol: str) -> Holdings:
        async with self._connection('get_current_holdings') as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    COALESCE(SUM(t.quantity) FILTER (WHERE t.action = 'BUY'), 0) AS bought,
                    COALESCE(SUM(t.quantity) FILTER (WHERE t.action = 'SELL'), 0) AS sold,
                    COALESCE(SUM(t.quote_amount) FILTER (WHERE t.action = 'BUY'), 0) AS spent,
                    COALESCE(SUM(t.quote_amount) FILTER (WHERE t.action = 'SELL'), 0) AS received,
                    COALESCE(SUM(t.quantity) FILTER (WHERE t.action = 'BUY' AND t.id > s.last_sell_id), 0)
                        AS open_quantity
                FROM trades t,
                    (SELECT COALESCE(MAX(id), 0) AS last_sell_id
                     FROM trades WHERE symbol = $1 AND action = 'SELL') s
                WHERE t.symbol = $1
                """,
                symbol,
            )
        return Holdings.from_totals(
            symbol,
            float(row["bought"]),
            float(row["sold"]),
            float(row["spent"]),
            float(row["received"]),
            open_quantity=float(row["open_quantity"]),
        )

    async def get_trading_history(self, symbol: str, limit: int = 10) -> List[TradeRecord]:
        async with self._connection('get_trading_history') as conn:
            rows = await conn.fetch(
                "SELECT * FROM trades WHERE symbol = $1 ORDER BY trade_time DESC, id DESC LIMIT $2",
                symbol,
                limit,
            )
        return [_row_to_trade(row) for row in rows]

    async def get_account_balances(self) -> Dict[str, float]:
        async with self._connection('get_account_balances') as conn:
            rows = await conn.fetch("SELECT asset, free FROM account_balances")
        return {row["asset"]: float(row["free"]) for row in rows}

    async def update_account_balances(self, balances: Mapping[str, float]) -> None:
        """Replace the snapshot; assets missing from ``balances`` drop to zero."""
        async with self._connection('update_account_balances') as conn:
            async with conn.transaction():
                await conn.execute("UPDATE account_balances SET free = 0, updated_at = NOW()")
                await conn.executemany(
                    """
                    INSERT INTO account_balances (asset, free) VALUES ($1, $2)
                    ON CONFLICT (asset) DO UPDATE SET free = EXCLUDED.free, updated_at = NOW()
                    """,
                    [(asset, float(free)) for asset, free in balances.items()],
                )
