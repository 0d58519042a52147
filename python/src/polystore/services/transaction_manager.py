"""
Transaction Manager

Enhanced transactions (timeout, commit retry, automatic rollback) on top of
an adapter's native transaction, and a compensating fallback for backends
that cannot commit several items atomically.

FallbackTransaction is a saga: operations run one by one at commit time
and executed ones are undone in reverse order when a later one fails.
Concurrent readers can observe the intermediate states.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

from ..config.logfire_config import get_logger, safe_logfire_error, safe_logfire_info
from ..db.errors import DatabaseError, ErrorKind, ErrorTranslatorRegistry, default_translators
from ..db.models import (
    DatabaseKey,
    DeleteOptions,
    FilterCondition,
    OperationType,
    PutOptions,
    TransactionOperation,
    UpdateInput,
    UpdateOptions,
    evaluate_condition,
)
from ..db.protocol import DataAccessLayer, Transaction

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_CLEANUP_INTERVAL = 300.0


class TransactionState(str, Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass
class TransactionOptions:
    timeout: float | None = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0
    enable_fallback: bool = True
    on_retry: Callable[[int, DatabaseError], Any] | None = None
    on_rollback: Callable[[str, DatabaseError | None], Any] | None = None


@dataclass
class TransactionContext:
    transaction_id: str
    provider: str
    start_time: datetime
    options: TransactionOptions
    state: TransactionState = TransactionState.ACTIVE
    operations: list[TransactionOperation] = field(default_factory=list)
    retry_count: int = 0
    last_error: DatabaseError | None = None
    started_at: float = field(default_factory=time.monotonic)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


# ---------------------------------------------------------------------------
# Fallback (compensating) transaction
# ---------------------------------------------------------------------------


@dataclass
class _Executed:
    operation: TransactionOperation
    key: DatabaseKey
    before: dict[str, Any] | None


class FallbackTransaction:
    """
    Transaction emulated with plain adapter calls.

    Mutations are queued until commit(). Before each one runs, the current
    item under its key is snapshotted so it can be restored.
    """

    def __init__(self, adapter: DataAccessLayer) -> None:
        self.id = _new_id("fallback_txn")
        self._adapter = adapter
        self._queued: list[TransactionOperation] = []
        self._active = True

    @property
    def operations(self) -> list[TransactionOperation]:
        return list(self._queued)

    def is_active(self) -> bool:
        return self._active

    def _ensure_active(self) -> None:
        if not self._active:
            raise DatabaseError(
                ErrorKind.TRANSACTION,
                f"Fallback transaction {self.id} is no longer active",
                provider=self._adapter.provider_type.value,
            )

    async def get(self, key: DatabaseKey) -> dict[str, Any] | None:
        self._ensure_active()
        return await self._adapter.get(key)

    async def put(self, data: dict[str, Any], condition: FilterCondition | None = None) -> None:
        self._ensure_active()
        self._queued.append(TransactionOperation.put(data, condition))

    async def update(self, update_input: UpdateInput) -> None:
        self._ensure_active()
        self._queued.append(TransactionOperation.update(update_input))

    async def delete(self, key: DatabaseKey, condition: FilterCondition | None = None) -> None:
        self._ensure_active()
        self._queued.append(TransactionOperation.delete(key, condition))

    async def condition_check(self, key: DatabaseKey, condition: FilterCondition) -> None:
        self._ensure_active()
        self._queued.append(TransactionOperation.condition_check(key, condition))

    async def _execute(self, operation: TransactionOperation) -> _Executed | None:
        key = operation.target_key()

        if operation.type is OperationType.CONDITION_CHECK:
            item = await self._adapter.get(key)
            if not evaluate_condition(item, operation.condition):
                raise DatabaseError(
                    ErrorKind.CONDITIONAL_CHECK_FAILED,
                    f"Condition check failed on {operation.condition.field}",
                    provider=self._adapter.provider_type.value,
                )
            return None

        before = await self._adapter.get(key)

        if operation.type is OperationType.PUT:
            options = PutOptions(condition=operation.condition) if operation.condition else None
            await self._adapter.put(operation.data, options)
        elif operation.type is OperationType.UPDATE:
            condition = operation.condition or operation.update_input.condition
            await self._adapter.update(operation.update_input, UpdateOptions(condition=condition))
        elif operation.type is OperationType.DELETE:
            if before is None and operation.condition is None:
                return None
            options = DeleteOptions(condition=operation.condition) if operation.condition else None
            await self._adapter.delete(key, options)
        return _Executed(operation, key, before)

    async def _compensate(self, executed: list[_Executed]) -> None:
        for step in reversed(executed):
            try:
                if step.before is None:
                    await self._adapter.delete(step.key)
                else:
                    await self._adapter.put(step.before)
            except Exception as exc:
                logger.error(
                    f"Compensation for {step.operation.type.value} on {step.key} in {self.id} failed: {exc}"
                )
                safe_logfire_error("fallback compensation failed", transaction_id=self.id)

    async def commit(self) -> None:
        self._ensure_active()
        executed: list[_Executed] = []
        try:
            for operation in self._queued:
                step = await self._execute(operation)
                if step is not None:
                    executed.append(step)
        except Exception:
            logger.warning(
                f"Fallback transaction {self.id} failed after {len(executed)} operation(s); compensating"
            )
            self._active = False
            await self._compensate(executed)
            raise
        self._active = False

    async def rollback(self) -> None:
        # Nothing has run before commit(); dropping the queue is enough.
        self._queued.clear()
        self._active = False


# ---------------------------------------------------------------------------
# Enhanced transaction
# ---------------------------------------------------------------------------


class EnhancedTransaction:
    """Native or fallback transaction plus state tracking, timeout and commit retry."""

    def __init__(
        self,
        adapter: DataAccessLayer,
        native: Transaction,
        options: TransactionOptions | None = None,
        translate: Callable[[BaseException], DatabaseError] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._adapter = adapter
        self._native = native
        self._translate = translate or (
            lambda exc: default_translators().translate(exc, adapter.provider_type.value)
        )
        self._sleep = sleep
        self.context = TransactionContext(
            transaction_id=_new_id("txn"),
            provider=adapter.provider_type.value,
            start_time=datetime.now(timezone.utc),
            options=options or TransactionOptions(),
        )
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._timeout_task: asyncio.Task | None = None
        self._setup_timeout()

    # -- Introspection -----------------------------------------------------

    @property
    def id(self) -> str:
        return self.context.transaction_id

    @property
    def state(self) -> TransactionState:
        return self.context.state

    @property
    def native(self) -> Transaction:
        return self._native

    @property
    def is_fallback(self) -> bool:
        return isinstance(self._native, FallbackTransaction)

    def get_operations(self) -> list[TransactionOperation]:
        return list(self.context.operations)

    def is_active(self) -> bool:
        return self.context.state is TransactionState.ACTIVE and self._native.is_active()

    def age(self) -> float:
        return time.monotonic() - self.context.started_at

    # -- Timeout -----------------------------------------------------------

    def _setup_timeout(self) -> None:
        timeout = self.context.options.timeout
        if not timeout:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timeout_handle = loop.call_later(timeout, self._on_timeout)

    def _clear_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if not self.is_active():
            return
        self.context.last_error = DatabaseError(
            ErrorKind.TRANSACTION,
            f"Transaction {self.id} timed out after {self.context.options.timeout}s",
            provider=self.context.provider,
        )
        logger.warning(f"Transaction {self.id} timed out; rolling back")
        self._timeout_task = asyncio.get_running_loop().create_task(self._rollback_after_timeout())

    async def _rollback_after_timeout(self) -> None:
        try:
            await self.rollback("timeout", self.context.last_error)
        except Exception as exc:
            logger.error(f"Failed to roll back timed out transaction {self.id}: {exc}")

    # -- Operations --------------------------------------------------------

    def _validate_active(self) -> None:
        if not self.is_active():
            raise DatabaseError(
                ErrorKind.TRANSACTION,
                f"Transaction {self.id} is not active (state: {self.context.state.value})",
                provider=self.context.provider,
            )

    def _error(self, exc: BaseException) -> DatabaseError:
        return exc if isinstance(exc, DatabaseError) else self._translate(exc)

    async def _forward(self, call: Callable[[], Awaitable[T]], operation: TransactionOperation | None) -> T:
        self._validate_active()
        try:
            result = await call()
        except DatabaseError:
            raise
        except Exception as exc:
            raise self._error(exc) from exc
        if operation is not None:
            self.context.operations.append(operation)
        return result

    async def get(self, key: DatabaseKey) -> dict[str, Any] | None:
        return await self._forward(lambda: self._native.get(key), None)

    async def put(self, data: dict[str, Any]) -> None:
        await self._forward(lambda: self._native.put(data), TransactionOperation.put(data))

    async def update(self, update_input: UpdateInput) -> None:
        await self._forward(
            lambda: self._native.update(update_input), TransactionOperation.update(update_input)
        )

    async def delete(self, key: DatabaseKey) -> None:
        await self._forward(lambda: self._native.delete(key), TransactionOperation.delete(key))

    async def condition_check(self, key: DatabaseKey, condition: FilterCondition) -> None:
        await self._forward(
            lambda: self._native.condition_check(key, condition),
            TransactionOperation.condition_check(key, condition),
        )

    # -- Commit / rollback -------------------------------------------------

    async def commit(self) -> None:
        """
        Commit the native transaction, retrying retryable failures.

        Raises:
            DatabaseError: the commit error, after an automatic rollback attempt.
        """
        self._validate_active()
        self._clear_timeout()
        options = self.context.options

        attempt = 0
        while True:
            try:
                await self._native.commit()
                break
            except Exception as exc:
                error = self._error(exc)
                can_retry = (
                    error.retryable
                    and attempt < options.max_retries
                    and self._native.is_active()
                )
                if not can_retry:
                    await self._fail(error)
                    if error is exc:
                        raise
                    raise error from exc

                attempt += 1
                self.context.retry_count += 1
                logger.warning(f"Commit of {self.id} failed ({error.code}); retry {attempt}/{options.max_retries}")
                if options.on_retry is not None:
                    await _maybe_await(options.on_retry(attempt, error))
                if options.retry_delay > 0:
                    await self._sleep(options.retry_delay)

        self.context.state = TransactionState.COMMITTED
        logger.debug(f"Transaction {self.id} committed ({len(self.context.operations)} operations)")
        safe_logfire_info("transaction committed", transaction_id=self.id, provider=self.context.provider)

    async def _fail(self, error: DatabaseError) -> None:
        self.context.state = TransactionState.FAILED
        self.context.last_error = error
        logger.error(f"Transaction {self.id} failed: {error.code} {error.message}")
        try:
            await self._rollback_native("commit failed", error)
        except Exception as rollback_error:
            logger.error(f"Failed to roll back {self.id} after commit failure: {rollback_error}")

    async def _rollback_native(self, reason: str, error: DatabaseError | None) -> None:
        if self.context.options.on_rollback is not None:
            await _maybe_await(self.context.options.on_rollback(reason, error))
        await self._native.rollback()

    async def rollback(self, reason: str = "manual rollback", error: DatabaseError | None = None) -> None:
        if self.context.state is TransactionState.ROLLED_BACK:
            return
        if self.context.state is TransactionState.COMMITTED:
            raise DatabaseError(
                ErrorKind.TRANSACTION,
                f"Transaction {self.id} is already committed",
                provider=self.context.provider,
            )

        self._clear_timeout()
        try:
            await self._rollback_native(reason, error or self.context.last_error)
        except Exception as exc:
            self.context.state = TransactionState.FAILED
            raise self._error(exc) from exc
        self.context.state = TransactionState.ROLLED_BACK
        logger.info(f"Transaction {self.id} rolled back ({reason})")


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class TransactionManager:
    """
    Creates and tracks EnhancedTransactions.

    A sweep task, started on the first begin_transaction() inside a running
    loop, rolls back transactions older than twice their timeout.
    """

    def __init__(
        self,
        translators: ErrorTranslatorRegistry | None = None,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
    ) -> None:
        self._translators = translators or default_translators()
        self.cleanup_interval = cleanup_interval
        self._active: dict[str, EnhancedTransaction] = {}
        self._cleanup_task: asyncio.Task | None = None

    def _translator_for(self, adapter: DataAccessLayer) -> Callable[[BaseException], DatabaseError]:
        provider = adapter.provider_type.value
        return lambda exc: self._translators.translate(exc, provider)

    async def begin_transaction(
        self, adapter: DataAccessLayer, options: TransactionOptions | None = None
    ) -> EnhancedTransaction:
        options = options or TransactionOptions()
        translate = self._translator_for(adapter)
        provider = adapter.provider_type.value
        self._ensure_cleanup_task()

        native: Transaction
        if adapter.supports_transactions:
            try:
                native = await adapter.begin_transaction(options)
            except Exception as exc:
                error = translate(exc)
                if not options.enable_fallback:
                    raise error from exc
                logger.warning(f"Native transaction on {provider} unavailable ({error.code}); using fallback")
                native = FallbackTransaction(adapter)
        elif options.enable_fallback:
            logger.info(f"{provider} does not support multi-item transactions; using fallback")
            native = FallbackTransaction(adapter)
        else:
            raise DatabaseError(
                ErrorKind.TRANSACTION,
                f"Provider {provider} does not support transactions and fallback is disabled",
                provider=provider,
            )

        transaction = EnhancedTransaction(adapter, native, options, translate)
        self._active[transaction.id] = transaction
        logger.debug(f"Began transaction {transaction.id} on {provider} (fallback={transaction.is_fallback})")
        return transaction

    async def execute_transaction(self, transaction: EnhancedTransaction) -> None:
        try:
            await transaction.commit()
        finally:
            self._active.pop(transaction.id, None)

    async def rollback_transaction(
        self,
        transaction: EnhancedTransaction,
        reason: str = "manual rollback",
        error: DatabaseError | None = None,
    ) -> None:
        try:
            await transaction.rollback(reason, error)
        finally:
            self._active.pop(transaction.id, None)

    def get_active_transactions(self) -> list[EnhancedTransaction]:
        return [t for t in self._active.values() if t.is_active()]

    async def cleanup_expired_transactions(self) -> int:
        """Roll back transactions older than twice their timeout. A timeout of 0 or None never expires."""
        expired = []
        for transaction in list(self._active.values()):
            timeout = transaction.context.options.timeout
            if timeout and transaction.age() > 2 * timeout:
                expired.append(transaction)
        for transaction in expired:
            try:
                if transaction.state is TransactionState.ACTIVE:
                    await transaction.rollback("expired")
            except Exception as exc:
                logger.error(f"Failed to roll back expired transaction {transaction.id}: {exc}")
            finally:
                self._active.pop(transaction.id, None)
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired transaction(s)")
        return len(expired)

    def _ensure_cleanup_task(self) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.cleanup_expired_transactions()
            except Exception as exc:
                logger.error(f"Error during transaction cleanup: {exc}")

    async def close(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None

    async def run_in_transaction(
        self,
        adapter: DataAccessLayer,
        fn: Callable[[EnhancedTransaction], Awaitable[T]],
        options: TransactionOptions | None = None,
    ) -> T:
        """Begin, run fn(txn), commit; roll back if fn raises."""
        transaction = await self.begin_transaction(adapter, options)
        try:
            result = await fn(transaction)
        except Exception as exc:
            if transaction.state is TransactionState.ACTIVE:
                error = exc if isinstance(exc, DatabaseError) else None
                try:
                    await self.rollback_transaction(transaction, "error in transaction body", error)
                except Exception as rollback_error:
                    logger.error(f"Rollback of {transaction.id} failed: {rollback_error}")
            raise
        await self.execute_transaction(transaction)
        return result
