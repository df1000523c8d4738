"""Database Engine & Transactions — async connection pool, transaction handles, error mapping.

Invariants:
    - One async engine per Application (created in Application.start())
    - All SQLAlchemy exceptions mapped to DatabaseError (core/errors.py)
    - A Transaction walks NONE → STARTED → COMMITTED | ROLLED_BACK exactly once
    - Commit / rollback listeners run strictly after the physical commit / rollback
    - A Transaction belongs to the request that started it and is never cached

Design Decisions:
    - pool_pre_ping for stale connection detection; pool sizing only for
      server databases (SQLite pools take no size arguments)
    - Transaction wraps AsyncConnection + AsyncTransaction instead of an ORM
      session: queries are SQLAlchemy Core statements built from model definitions
"""

import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

from sqlalchemy import MetaData, text
from sqlalchemy.exc import (
    DataError, DBAPIError, IntegrityError, OperationalError, SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import (
    AsyncConnection, AsyncEngine, AsyncTransaction, create_async_engine,
)

from keel.core.domain_types import TransactionState
from keel.core.errors import DatabaseError
from keel.core.events import EventEmitter, Listener

logger = logging.getLogger(__name__)


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Map SQLAlchemy exceptions raised inside the block to DatabaseError."""
    try:
        yield
    except IntegrityError as e:
        logger.error(f"DB integrity error: {e}")
        status = 400 if "not null" in str(e.orig).lower() else 409
        raise DatabaseError("Integrity constraint violated", operation, status) from e
    except DataError as e:
        logger.error(f"DB data error: {e}")
        raise DatabaseError("Invalid data", operation, 400) from e
    except OperationalError as e:
        logger.error(f"DB operational error: {e}")
        raise DatabaseError("Connection or operational error", operation, 503) from e
    except DBAPIError as e:
        logger.error(f"DB driver error: {e}")
        raise DatabaseError("Database driver error", operation, 500) from e
    except SQLAlchemyError as e:
        logger.error(f"SQLAlchemy error: {e}")
        raise DatabaseError("Database operation failed", operation, 500) from e


class Transaction:
    """A single request-scoped database transaction with commit/rollback listeners."""

    def __init__(self, connection: AsyncConnection):
        self.connection = connection
        self.state = TransactionState.NONE
        self.events = EventEmitter()
        self._transaction: AsyncTransaction | None = None

    def __repr__(self) -> str:
        return f"<Transaction {self.state.value}>"

    async def start(self) -> "Transaction":
        if self.state is not TransactionState.NONE:
            raise RuntimeError(f"Transaction already {self.state.value}")
        with translate_errors("begin"):
            self._transaction = await self.connection.begin()
        self.state = TransactionState.STARTED
        return self

    def on_commit(self, listener: Listener) -> Listener:
        return self.events.on("commit", listener)

    def on_rollback(self, listener: Listener) -> Listener:
        return self.events.on("rollback", listener)

    async def execute(self, statement: Any) -> Any:
        self._require_started("execute")
        with translate_errors("query"):
            return await self.connection.execute(statement)

    async def commit(self) -> None:
        self._require_started("commit")
        with translate_errors("commit"):
            await self._transaction.commit()
        self.state = TransactionState.COMMITTED
        await self.events.emit("commit")

    async def rollback(self, error: BaseException | None = None) -> None:
        self._require_started("rollback")
        with translate_errors("rollback"):
            await self._transaction.rollback()
        self.state = TransactionState.ROLLED_BACK
        await self.events.emit("rollback", error)

    async def close(self) -> None:
        await self.connection.close()

    def _require_started(self, operation: str) -> None:
        if self.state is not TransactionState.STARTED:
            raise RuntimeError(
                f"Cannot {operation}: transaction is {self.state.value}",
            )


class Database:
    """Owns the async engine; hands out autocommit connections and transactions."""

    def __init__(
        self,
        database_url: str,
        pool_size: int = 20,
        max_overflow: int = 10,
        echo: bool = False,
    ):
        kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
        if not database_url.startswith("sqlite"):
            kwargs.update(
                pool_size=pool_size, max_overflow=max_overflow, pool_recycle=3600,
            )
        self.engine: AsyncEngine = create_async_engine(database_url, **kwargs)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        """Connection in its own short transaction, committed on exit."""
        with translate_errors("execute"):
            async with self.engine.begin() as connection:
                yield connection

    async def start_transaction(self) -> Transaction:
        with translate_errors("connect"):
            connection = await self.engine.connect()
        transaction = Transaction(connection)
        try:
            await transaction.start()
        except Exception:
            await connection.close()
            raise
        return transaction

    async def create_all(self, metadata: MetaData) -> None:
        async with self.connect() as connection:
            await connection.run_sync(metadata.create_all)

    async def drop_all(self, metadata: MetaData) -> None:
        async with self.connect() as connection:
            await connection.run_sync(metadata.drop_all)

    async def health_check(self) -> bool:
        """Check database connectivity (for readiness probes)."""
        try:
            async with self.connect() as connection:
                await connection.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"DB health check failed: {e}")
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()
