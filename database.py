"""
PostgreSQL persistence for the storefront payment service
Direct psycopg2 connections with raw SQL: orders, wallets, the wallet audit
ledger and the single-row site configuration.

Blocking driver calls run in worker threads (asyncio.to_thread) under a
timeout so no webhook handler can hang on the database.
"""

import os
import json
import asyncio
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TypeVar

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from order_state import (
    Order, OrderStatus, RELEASABLE_CLAIMS, ensure_transition,
)
from payment_errors import (
    CreditingFailure, InsufficientBalance, InvalidTransition, LedgerConflict, LedgerOutcomeUnknown,
    PersistenceFailure,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

_connection_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()

DB_OPERATION_TIMEOUT = float(os.getenv('DB_OPERATION_TIMEOUT', '10'))
# Server-side limit per statement inside a transaction, kept below DB_OPERATION_TIMEOUT
# so PostgreSQL aborts a stuck transaction before we stop waiting for it
DB_STATEMENT_TIMEOUT_MS = int(os.getenv('DB_STATEMENT_TIMEOUT_MS', str(int(DB_OPERATION_TIMEOUT * 800))))


def get_connection_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """Get or create the database connection pool"""
    global _connection_pool
    with _pool_lock:
        if _connection_pool is None:
            database_url = os.getenv('DATABASE_URL')
            if not database_url:
                raise ValueError("DATABASE_URL environment variable not found")

            _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=int(os.getenv('DB_POOL_MIN', '2')),
                maxconn=int(os.getenv('DB_POOL_MAX', '20')),
                dsn=database_url,
                cursor_factory=RealDictCursor,
                connect_timeout=5,
                keepalives_idle=600,
                keepalives_interval=30,
                keepalives_count=3,
                sslmode=os.getenv('DB_SSLMODE', 'prefer'),
            )
            logger.info("✅ Database connection pool created")
    return _connection_pool


def close_connection_pool():
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("🔄 Database connection pool closed")


def get_connection():
    """Take a connection from the pool (autocommit on)"""
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    return conn


def return_connection(conn, is_broken: bool = False):
    """Give a connection back to the pool, discarding it when broken"""
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except Exception as e:
        logger.warning(f"⚠️ Could not return connection to pool: {e}")
        try:
            conn.close()
        except psycopg2.Error:
            pass


async def _run_with_timeout(func: Callable[[], T], operation_name: str) -> T:
    try:
        return await asyncio.wait_for(asyncio.to_thread(func), timeout=DB_OPERATION_TIMEOUT)
    except asyncio.TimeoutError:
        logger.error(f"💥 {operation_name} timed out after {DB_OPERATION_TIMEOUT}s")
        raise


async def execute_query(query: str, params: Optional[Any] = None) -> List[Dict]:
    """Execute a SELECT query and return rows as dicts"""

    def _execute() -> List[Dict]:
        conn = get_connection()
        broken = False
        try:
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return [dict(row) for row in cursor.fetchall()]
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            broken = True
            raise
        finally:
            return_connection(conn, is_broken=broken)

    return await _run_with_timeout(_execute, "query")


async def execute_update(query: str, params: Optional[Any] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE and return the affected row count (no retries, writes are not idempotent)"""

    def _execute() -> int:
        conn = get_connection()
        broken = False
        try:
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            broken = True
            raise
        finally:
            return_connection(conn, is_broken=broken)

    return await _run_with_timeout(_execute, "update")


async def run_in_transaction(func: Callable[..., T], *args, **kwargs) -> T:
    """Run func(cursor, *args, **kwargs) inside one database transaction"""

    def _execute_in_transaction() -> T:
        conn = get_connection()
        broken = False
        conn.autocommit = False
        try:
            with conn.cursor() as cursor:
                cursor.execute("SET LOCAL statement_timeout = %s", (DB_STATEMENT_TIMEOUT_MS,))
                result = func(cursor, *args, **kwargs)
            conn.commit()
            return result
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            broken = True
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            if not broken:
                conn.autocommit = True
            return_connection(conn, is_broken=broken)

    return await _run_with_timeout(_execute_in_transaction, "transaction")


_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in OrderStatus)

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id VARCHAR(128) PRIMARY KEY,
        email VARCHAR(255),
        display_name VARCHAR(255),
        session_token VARCHAR(255) UNIQUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS wallets (
        user_id VARCHAR(128) PRIMARY KEY REFERENCES users(user_id),
        balance_usd NUMERIC(12,2) NOT NULL DEFAULT 0.00,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT wallet_balance_non_negative CHECK (balance_usd >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS wallet_ledger (
        id BIGSERIAL PRIMARY KEY,
        order_id VARCHAR(64) NOT NULL,
        user_id VARCHAR(128) NOT NULL REFERENCES users(user_id),
        entry_type VARCHAR(10) NOT NULL CHECK (entry_type IN ('credit', 'debit')),
        amount_usd NUMERIC(12,2) NOT NULL CHECK (amount_usd > 0),
        balance_after NUMERIC(12,2),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT wallet_ledger_once_per_order UNIQUE (order_id, entry_type)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS orders (
        order_id VARCHAR(64) PRIMARY KEY,
        status VARCHAR(32) NOT NULL DEFAULT 'pending' CHECK (status IN ({_STATUS_VALUES})),
        product_category VARCHAR(128),
        user_id VARCHAR(128),
        base_amount NUMERIC(12,2),
        final_amount NUMERIC(12,2) NOT NULL,
        currency VARCHAR(8) NOT NULL DEFAULT 'USD',
        provider VARCHAR(32),
        provider_details JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        cart_details JSONB NOT NULL DEFAULT '[]'::jsonb,
        email VARCHAR(255),
        phone VARCHAR(32),
        notification_chat_id VARCHAR(64),
        notification_message_id BIGINT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        completed_at TIMESTAMP,
        CONSTRAINT final_amount_covers_base CHECK (base_amount IS NULL OR final_amount >= base_amount)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
    """
    CREATE TABLE IF NOT EXISTS site_config (
        id INTEGER PRIMARY KEY DEFAULT 1 CHECK (id = 1),
        exchange_rate_ves NUMERIC(14,4),
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


async def init_database():
    """Create tables if they don't exist"""

    def _init(cursor):
        for statement in SCHEMA_STATEMENTS:
            cursor.execute(statement)

    await run_in_transaction(_init)
    logger.info("✅ Database schema ready (users, wallets, wallet_ledger, orders, site_config)")


# ====================================================================
# ORDER STORE
# ====================================================================

class PostgresOrderStore:
    """Orders table access; every status write is a guarded compare-and-set"""

    async def get_order(self, order_id: str) -> Optional[Order]:
        rows = await execute_query("SELECT * FROM orders WHERE order_id = %s", (order_id,))
        return Order.from_row(rows[0]) if rows else None

    async def create_order(self, order: Order) -> None:
        try:
            await self._insert_order(order)
        except (psycopg2.Error, asyncio.TimeoutError) as e:
            logger.error(f"❌ ORDER_CREATE_FAILED: {order.order_id}: {e}")
            raise PersistenceFailure(f"Order insert failed: {e}", order.order_id) from e
        logger.info(f"🧾 ORDER_CREATED: {order.order_id} ({order.order_kind.value}, {order.final_amount} {order.currency})")

    async def _insert_order(self, order: Order) -> None:
        await execute_update(
            """INSERT INTO orders
               (order_id, status, product_category, user_id, base_amount, final_amount, currency,
                provider, provider_details, cart_details, email, phone)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s)""",
            (
                order.order_id, order.status.value, order.product_category, order.user_id,
                order.base_amount, order.final_amount, order.currency, order.provider,
                json.dumps(order.provider_details), json.dumps(order.cart_details),
                order.email, order.phone,
            )
        )

    async def delete_pending_order(self, order_id: str) -> bool:
        """Compensating cleanup when invoice creation fails before any payment attempt"""
        deleted = await execute_update(
            "DELETE FROM orders WHERE order_id = %s AND status = %s",
            (order_id, OrderStatus.PENDING.value)
        )
        return deleted == 1

    async def merge_provider_details(self, order_id: str, details: Dict[str, Any]) -> bool:
        updated = await execute_update(
            """UPDATE orders
               SET provider_details = provider_details || %s::jsonb, updated_at = CURRENT_TIMESTAMP
               WHERE order_id = %s""",
            (json.dumps(details), order_id)
        )
        return updated == 1

    async def transition_status(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        provider_details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move an order from `expected` to `target` only if it is still in `expected`

        Returns:
            bool: True when this call performed the transition

        Raises:
            InvalidTransition: target is not reachable from expected
            PersistenceFailure: the database write failed
        """
        ensure_transition(expected, target, order_id)
        return await self._compare_and_set(order_id, expected, target, provider_details)

    async def claim_order(self, order_id: str, expected: OrderStatus) -> bool:
        """Claim an order for crediting by flipping it to the processing marker"""
        return await self.transition_status(order_id, expected, OrderStatus.PROCESSING)

    async def finalize_claim(
        self,
        order_id: str,
        target: OrderStatus,
        provider_details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return await self.transition_status(order_id, OrderStatus.PROCESSING, target, provider_details)

    async def release_claim(self, order_id: str, back_to: OrderStatus) -> bool:
        """Return a processing order to the status it was claimed from"""
        if back_to not in RELEASABLE_CLAIMS:
            raise InvalidTransition(OrderStatus.PROCESSING.value, back_to.value, order_id)
        return await self._compare_and_set(order_id, OrderStatus.PROCESSING, back_to, None)

    async def set_notification_message(self, order_id: str, chat_id: str, message_id: int) -> None:
        await execute_update(
            """UPDATE orders SET notification_chat_id = %s, notification_message_id = %s,
               updated_at = CURRENT_TIMESTAMP WHERE order_id = %s""",
            (str(chat_id), message_id, order_id)
        )

    async def _compare_and_set(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        provider_details: Optional[Dict[str, Any]],
    ) -> bool:
        try:
            updated = await execute_update(
                """UPDATE orders
                   SET status = %s,
                       provider_details = provider_details || %s::jsonb,
                       completed_at = CASE WHEN %s THEN CURRENT_TIMESTAMP ELSE completed_at END,
                       updated_at = CURRENT_TIMESTAMP
                   WHERE order_id = %s AND status = %s""",
                (
                    target.value,
                    json.dumps(provider_details or {}),
                    target is OrderStatus.DONE,
                    order_id,
                    expected.value,
                )
            )
        except (psycopg2.Error, asyncio.TimeoutError) as e:
            logger.error(f"❌ ORDER_STATUS_WRITE_FAILED: {order_id} {expected.value} -> {target.value}: {e}")
            raise PersistenceFailure(f"Status update {expected.value} -> {target.value} failed: {e}", order_id) from e

        if updated == 1:
            logger.info(f"🔁 ORDER_STATUS: {order_id} {expected.value} -> {target.value}")
            return True
        logger.warning(f"⚠️ ORDER_STATUS_CAS_MISS: {order_id} is no longer {expected.value} (wanted {target.value})")
        return False


# ====================================================================
# WALLET LEDGER
# ====================================================================

@dataclass(frozen=True)
class CreditResult:
    new_balance: Decimal
    already_applied: bool = False


class PostgresWalletLedger:
    """
    Per-user USD balances with atomic server-side increments

    The audit row and the balance change share one transaction. The unique
    (order_id, entry_type) key makes a second credit for the same order a
    no-op instead of a double credit.
    """

    async def credit(self, user_id: str, amount_usd: Decimal, order_id: str) -> CreditResult:
        if amount_usd is None or amount_usd <= 0:
            raise CreditingFailure(f"Invalid credit amount {amount_usd}", order_id)

        def _credit(cursor) -> CreditResult:
            cursor.execute(
                """INSERT INTO wallet_ledger (order_id, user_id, entry_type, amount_usd)
                   VALUES (%s, %s, 'credit', %s)
                   ON CONFLICT (order_id, entry_type) DO NOTHING
                   RETURNING id""",
                (order_id, user_id, amount_usd)
            )
            entry = cursor.fetchone()
            if entry is None:
                cursor.execute("SELECT balance_usd FROM wallets WHERE user_id = %s", (user_id,))
                row = cursor.fetchone()
                return CreditResult(Decimal(row['balance_usd']) if row else Decimal('0'), already_applied=True)

            cursor.execute(
                """INSERT INTO wallets (user_id, balance_usd) VALUES (%s, %s)
                   ON CONFLICT (user_id) DO UPDATE
                   SET balance_usd = wallets.balance_usd + EXCLUDED.balance_usd,
                       updated_at = CURRENT_TIMESTAMP
                   RETURNING balance_usd""",
                (user_id, amount_usd)
            )
            new_balance = Decimal(cursor.fetchone()['balance_usd'])
            cursor.execute(
                "UPDATE wallet_ledger SET balance_after = %s WHERE id = %s",
                (new_balance, entry['id'])
            )
            return CreditResult(new_balance)

        try:
            result = await run_in_transaction(_credit)
        except asyncio.TimeoutError:
            return await self._credit_after_timeout(user_id, amount_usd, order_id)
        except psycopg2.Error as e:
            logger.error(f"❌ WALLET_CREDIT_FAILED: ${amount_usd} to {user_id} for {order_id}: {e}")
            raise CreditingFailure(f"Ledger credit failed: {e}", order_id) from e

        if result.already_applied:
            logger.info(f"✅ WALLET_CREDIT_DUPLICATE: {order_id} already credited to {user_id} - balance untouched")
        else:
            logger.info(f"✅ WALLET_CREDIT_SUCCESS: ${amount_usd} credited to {user_id} | order {order_id} | new balance ${result.new_balance}")
        return result

    async def _credit_after_timeout(self, user_id: str, amount_usd: Decimal, order_id: str) -> CreditResult:
        """
        The wait timed out but the worker thread may still commit

        A credit row that is already visible means the transaction went
        through. Anything else is reported as unknown, never as a failure.
        """
        logger.error(f"⏱️ WALLET_CREDIT_TIMEOUT: ${amount_usd} to {user_id} for {order_id} - checking ledger")
        try:
            if await self.has_credit(order_id):
                balance = await self.get_balance(user_id)
                logger.warning(f"✅ WALLET_CREDIT_COMMITTED_LATE: {order_id} credited despite the timeout")
                return CreditResult(balance)
        except (psycopg2.Error, asyncio.TimeoutError) as e:
            logger.error(f"❌ Ledger re-check for {order_id} failed: {e}")
        raise LedgerOutcomeUnknown(f"Credit of ${amount_usd} timed out and may still commit", order_id)

    async def debit(self, user_id: str, amount_usd: Decimal, order_id: str) -> Decimal:
        """
        Atomically deduct a wallet purchase; never drives the balance below zero

        order_id must be generated server-side for this purchase. A second
        debit under the same order_id is refused, never treated as paid.

        Raises:
            InsufficientBalance: the balance does not cover amount_usd
            LedgerConflict: order_id already carries a debit
            PersistenceFailure: the transaction failed and was rolled back
            LedgerOutcomeUnknown: the transaction timed out and may still commit
        """
        if amount_usd is None or amount_usd <= 0:
            raise ValueError(f"Invalid debit amount {amount_usd}")

        def _debit(cursor) -> Decimal:
            cursor.execute(
                """INSERT INTO wallet_ledger (order_id, user_id, entry_type, amount_usd)
                   VALUES (%s, %s, 'debit', %s)
                   ON CONFLICT (order_id, entry_type) DO NOTHING
                   RETURNING id""",
                (order_id, user_id, amount_usd)
            )
            entry = cursor.fetchone()
            if entry is None:
                raise LedgerConflict(f"Order {order_id} already has a wallet debit", order_id)

            cursor.execute(
                """UPDATE wallets
                   SET balance_usd = balance_usd - %s, updated_at = CURRENT_TIMESTAMP
                   WHERE user_id = %s AND balance_usd >= %s
                   RETURNING balance_usd""",
                (amount_usd, user_id, amount_usd)
            )
            row = cursor.fetchone()
            if row is None:
                # Rolls back the audit row as well
                raise InsufficientBalance(f"Insufficient balance for ${amount_usd}", order_id)

            new_balance = Decimal(row['balance_usd'])
            cursor.execute("UPDATE wallet_ledger SET balance_after = %s WHERE id = %s", (new_balance, entry['id']))
            return new_balance

        try:
            new_balance = await run_in_transaction(_debit)
        except InsufficientBalance:
            logger.warning(f"🚫 DEBIT_PROTECTION: {user_id} cannot cover ${amount_usd} for {order_id}")
            raise
        except LedgerConflict:
            logger.error(f"🛡️ DEBIT_CONFLICT: {order_id} already debited - refusing {user_id} ${amount_usd}")
            raise
        except asyncio.TimeoutError:
            logger.error(f"⏱️ DEBIT_TIMEOUT: ${amount_usd} from {user_id} for {order_id} - outcome unknown")
            raise LedgerOutcomeUnknown(f"Debit of ${amount_usd} timed out and may still commit", order_id)
        except psycopg2.Error as e:
            logger.error(f"❌ DEBIT_FAILED: ${amount_usd} from {user_id} for {order_id}: {e}")
            raise PersistenceFailure(f"Wallet debit failed: {e}", order_id) from e

        logger.info(f"✅ DEBIT_SUCCESS: ${amount_usd} debited from {user_id} | order {order_id} | new balance ${new_balance}")
        return new_balance

    async def has_credit(self, order_id: str) -> bool:
        rows = await execute_query(
            "SELECT 1 FROM wallet_ledger WHERE order_id = %s AND entry_type = 'credit'",
            (order_id,)
        )
        return bool(rows)

    async def get_balance(self, user_id: str) -> Decimal:
        rows = await execute_query("SELECT balance_usd FROM wallets WHERE user_id = %s", (user_id,))
        return Decimal(rows[0]['balance_usd']) if rows else Decimal('0.00')

    async def user_exists(self, user_id: str) -> bool:
        rows = await execute_query("SELECT 1 FROM users WHERE user_id = %s", (user_id,))
        return bool(rows)

    async def get_user_id_by_session_token(self, session_token: str) -> Optional[str]:
        rows = await execute_query("SELECT user_id FROM users WHERE session_token = %s", (session_token,))
        return rows[0]['user_id'] if rows else None


# ====================================================================
# SITE CONFIGURATION
# ====================================================================

async def get_site_exchange_rate() -> Optional[Decimal]:
    """Stored VES-per-USD rate, None when not configured"""
    rows = await execute_query("SELECT exchange_rate_ves FROM site_config WHERE id = 1")
    if not rows or rows[0].get('exchange_rate_ves') is None:
        return None
    return Decimal(rows[0]['exchange_rate_ves'])
