"""
Ledger Service - posting, undo and ledger views for B2B customer accounts

Every mutation follows the same pattern:
1. Validate and classify the input before storage is touched
2. Take the per-customer lock and the customer row lock (SELECT ... FOR UPDATE)
3. Write the transaction / void it, run inventory transitions
4. Update the cached running balance, due counts and checkpoints
5. Commit once, or roll back everything

The customer's ``version`` column is bumped on each write; a concurrent
writer that loaded an older version gets ConcurrentModificationError.
"""
from __future__ import annotations

from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from lpg_ledger.core.config import settings
from lpg_ledger.core.exceptions import (
    AlreadyVoidedError,
    ConcurrentModificationError,
    CustomerNotFoundError,
    InsufficientInventoryError,
    InventoryReversalFailedError,
    ReplayInconsistencyError,
    TransactionNotFoundError,
    ValidationException,
)
from lpg_ledger.core.locks import customer_lock
from lpg_ledger.core.logging import get_logger, log_async_operation
from lpg_ledger.db.models.customer import Customer, CustomerCylinderDue
from lpg_ledger.db.models.transaction import LedgerTransaction, TransactionType
from lpg_ledger.db.models.transaction_item import ItemKind, TransactionItem
from lpg_ledger.domain.ledger.balance import (
    CENT,
    ZERO,
    BalanceRow,
    balance_impact,
    balance_status,
    running_balances,
    safe_decimal,
    settle_sale,
    summarize,
    to_display_balance,
)
from lpg_ledger.domain.ledger.classifier import (
    classify_item,
    classify_persisted,
    cylinder_display_name,
    kind_badges,
    validate_items,
)
from lpg_ledger.domain.ledger.dues import apply_delta, reverse_delta, touched_types
from lpg_ledger.domain.ledger.inventory import TransitionResult, failures, plan_reversal, plan_transitions
from lpg_ledger.domain.ledger.schemas import PaymentInfo
from lpg_ledger.domain.services.inventory import BaseInventoryExecutor, get_inventory_executor
from lpg_ledger.domain.services.replay_service import ReplayService

logger = get_logger(__name__)

_MONEY_ONLY = {
    TransactionType.PAYMENT,
    TransactionType.ADJUSTMENT,
    TransactionType.CREDIT_NOTE,
}

DateLike = Union[date, datetime, None]


def _money(value: Any, field: str) -> Optional[Decimal]:
    """Parse an incoming amount, rounded to cents; None stays None"""
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationException(f"Invalid amount: {value}", field=field)
    if not amount.is_finite():
        raise ValidationException(f"Invalid amount: {value}", field=field)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _line_total(item: Any, kind: ItemKind) -> Decimal:
    """Money value of one item within its bucket"""
    if kind == ItemKind.SALE:
        if item.total_price is not None:
            return _money(item.total_price, "total_price")
        if item.price_per_item is not None:
            return _money(Decimal(str(item.price_per_item)) * item.quantity, "price_per_item")
        return ZERO
    if kind == ItemKind.BUYBACK:
        if item.buyback_total is not None:
            return _money(item.buyback_total, "buyback_total")
        if item.total_price is not None:
            return _money(item.total_price, "total_price")
        return ZERO
    return ZERO


def _window_start(value: DateLike) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _window_end(value: DateLike) -> Optional[datetime]:
    """Inclusive end of a date window: a bare date covers the whole day"""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.time() == time.min:
            return value.replace(hour=23, minute=59, second=59, microsecond=999999)
        return value
    return datetime.combine(value, time.max)


class LedgerService:
    """Customer ledger operations bound to one database session"""

    def __init__(self, db: AsyncSession, inventory_executor: Optional[BaseInventoryExecutor] = None):
        self.db = db
        self.replay = ReplayService(db)
        self.inventory = inventory_executor or get_inventory_executor(db)
        self.fully_paid_tolerance = Decimal(str(settings.FULLY_PAID_TOLERANCE))
        self.balance_tolerance = Decimal(str(settings.LEDGER_BALANCE_TOLERANCE))

    # ==================== Lookups ====================

    async def get_customer(self, customer_id: int, for_update: bool = False) -> Customer:
        query = (
            select(Customer)
            .where(Customer.id == customer_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        customer = result.scalar_one_or_none()
        if not customer:
            raise CustomerNotFoundError(customer_id)
        return customer

    async def get_transaction(self, transaction_id: int, for_update: bool = False) -> LedgerTransaction:
        query = (
            select(LedgerTransaction)
            .where(LedgerTransaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        transaction = result.scalar_one_or_none()
        if not transaction:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    async def list_customer_ids(self) -> list[int]:
        result = await self.db.execute(select(Customer.id).order_by(Customer.id))
        return list(result.scalars().all())

    async def _next_bill_sno(self, customer_id: int) -> int:
        result = await self.db.execute(
            select(func.max(LedgerTransaction.bill_sno))
            .where(LedgerTransaction.customer_id == customer_id)
        )
        return (result.scalar() or 0) + 1

    async def _count_transactions(self, customer_id: int) -> int:
        result = await self.db.execute(
            select(func.count(LedgerTransaction.id))
            .where(LedgerTransaction.customer_id == customer_id)
        )
        return result.scalar() or 0

    # ==================== Customers ====================

    @log_async_operation("create_customer")
    async def create_customer(self, name: str) -> Customer:
        name = (name or "").strip()
        if not name:
            raise ValidationException("Customer name is required", field="name")

        customer = Customer(name=name, ledger_balance=Decimal("0.00"))
        self.db.add(customer)
        await self.db.commit()
        await self.db.refresh(customer)
        logger.info("Customer created", extra_data={"customer_id": customer.id})
        return customer

    def _store_due_counts(self, customer: Customer, counts: dict[str, int], prune: bool = False) -> None:
        """Write due counts into the customer's cache rows.

        With ``prune`` the counts are authoritative and types missing from
        them are dropped.
        """
        rows = {due.cylinder_type: due for due in customer.cylinder_dues}
        for cylinder_type, count in counts.items():
            row = rows.get(cylinder_type)
            if row is None:
                customer.cylinder_dues.append(
                    CustomerCylinderDue(cylinder_type=cylinder_type, count=count)
                )
            elif row.count != count:
                row.count = count
        if prune:
            for cylinder_type, row in rows.items():
                if cylinder_type not in counts:
                    customer.cylinder_dues.remove(row)

    # ==================== Posting ====================

    def _validate_posting(
        self,
        transaction_type: TransactionType,
        items: list[Any],
        kinds: list[ItemKind],
        amount: Optional[Decimal],
    ) -> None:
        if transaction_type in _MONEY_ONLY:
            if items:
                raise ValidationException(
                    f"{transaction_type.value} transactions do not carry items",
                    field="items",
                )
            if amount is None:
                raise ValidationException(
                    f"{transaction_type.value} requires an amount",
                    field="payment_info.amount",
                )
            if transaction_type == TransactionType.ADJUSTMENT:
                if amount == ZERO:
                    raise ValidationException("Adjustment amount cannot be zero", field="payment_info.amount")
            elif amount <= ZERO:
                raise ValidationException(
                    f"{transaction_type.value} amount must be positive",
                    field="payment_info.amount",
                )
            return

        if not items:
            raise ValidationException(
                f"{transaction_type.value} requires at least one item",
                field="items",
            )
        if amount is not None and amount < ZERO:
            raise ValidationException("Transaction amount cannot be negative", field="payment_info.amount")

        for index, item in enumerate(items):
            if not item.cylinder_type and not item.product_name:
                raise ValidationException(
                    "Item needs a cylinder_type or a product_name",
                    field=f"items[{index}]",
                )

        if transaction_type in (TransactionType.BUYBACK, TransactionType.RETURN_EMPTY):
            for index, item in enumerate(items):
                if not item.cylinder_type:
                    raise ValidationException(
                        f"{transaction_type.value} cannot carry accessories; post a SALE",
                        field=f"items[{index}]",
                    )
            if ItemKind.SALE in kinds:
                raise ValidationException(
                    f"{transaction_type.value} cannot deliver priced cylinders; post a SALE",
                    field="items",
                )

    def _record_untracked_returns(self, transaction: LedgerTransaction, results: list[TransitionResult]) -> None:
        """Remember returned units that never left WITH_CUSTOMER so undo only puts back what was taken"""
        rows = {row.position: row for row in transaction.items}
        for result in results:
            transition = result.transition
            if result.taken is None or result.taken >= transition.quantity:
                continue
            row = rows.get(transition.item_position)
            if row is None:
                continue
            row.untracked_quantity = transition.quantity - result.taken
            logger.info(
                "Return accepted beyond tracked stock",
                extra_data={
                    "transaction_id": transaction.id,
                    "cylinder_type": transition.cylinder_type,
                    "quantity": transition.quantity,
                    "untracked": row.untracked_quantity,
                },
            )

    def _build_items(self, items: list[Any], kinds: list[ItemKind]) -> list[TransactionItem]:
        rows = []
        for position, (item, kind) in enumerate(zip(items, kinds)):
            line_total = _line_total(item, kind)
            rows.append(TransactionItem(
                position=position,
                item_kind=kind,
                cylinder_type=item.cylinder_type,
                product_name=item.product_name,
                quantity=item.quantity,
                untracked_quantity=0,
                price_per_item=_money(item.price_per_item, f"items[{position}].price_per_item"),
                total_price=line_total if kind == ItemKind.SALE else _money(item.total_price, f"items[{position}].total_price"),
                remaining_kg=item.remaining_kg,
                buyback_rate=item.buyback_rate,
                buyback_total=line_total if kind == ItemKind.BUYBACK else None,
            ))
        return rows

    @log_async_operation("post_transaction")
    async def post_transaction(
        self,
        customer_id: int,
        transaction_type: Union[TransactionType, str],
        items: Optional[Iterable[Any]] = None,
        payment_info: Optional[PaymentInfo] = None,
        created_by: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Post a new transaction for a customer.

        Returns:
            transaction_id, bill_sno, balance_impact, new_running_balance,
            display_balance, balance_status, payment_status, due_counts and
            warnings (over-returns, non-fatal).
        """
        try:
            transaction_type = TransactionType(transaction_type)
        except ValueError:
            raise ValidationException(
                f"Unknown transaction type: {transaction_type}",
                field="transaction_type",
            )
        items = list(items or [])
        payment_info = payment_info or PaymentInfo()

        validate_items(items)
        kinds = [classify_item(item) for item in items]
        amount = _money(payment_info.amount, "payment_info.amount")
        self._validate_posting(transaction_type, items, kinds, amount)

        item_rows = self._build_items(items, kinds)
        sale_total = sum((row.total_price or ZERO for row in item_rows if row.item_kind == ItemKind.SALE), ZERO)
        buyback_credit = sum((row.buyback_total or ZERO for row in item_rows if row.item_kind == ItemKind.BUYBACK), ZERO)

        if amount is not None:
            total_amount = amount
        elif transaction_type == TransactionType.SALE:
            total_amount = sale_total
        elif transaction_type == TransactionType.BUYBACK:
            total_amount = buyback_credit
        else:
            total_amount = ZERO

        now = datetime.utcnow()
        transaction = LedgerTransaction(
            customer_id=customer_id,
            transaction_type=transaction_type,
            business_date=payment_info.business_date or now,
            created_at=now,
            total_amount=total_amount,
            payment_method=payment_info.payment_method,
            payment_reference=payment_info.payment_reference,
            notes=payment_info.notes,
            created_by=created_by,
            voided=False,
            items=item_rows,
        )
        if transaction_type == TransactionType.SALE:
            settlement = settle_sale(
                total_amount,
                paid_amount=_money(payment_info.paid_amount, "payment_info.paid_amount") or ZERO,
                buyback_credit=buyback_credit,
                tolerance=self.fully_paid_tolerance,
            )
            transaction.paid_amount = settlement.paid_amount
            transaction.unpaid_amount = settlement.unpaid_amount
            transaction.payment_status = settlement.payment_status

        async with customer_lock(customer_id):
            try:
                customer = await self.get_customer(customer_id, for_update=True)
                transaction.bill_sno = await self._next_bill_sno(customer_id)
                self.db.add(transaction)
                await self.db.flush()

                classified = classify_persisted(transaction.items)

                # 1. Inventory
                results = await self.inventory.execute(plan_transitions(transaction_type, classified))
                failed = failures(results)
                if failed:
                    raise InsufficientInventoryError(failed, customer_id)
                self._record_untracked_returns(transaction, results)

                # 2. Running balance from the checkpointed history
                balance_before = await self.replay.balance_before(customer_id, transaction.order_key)
                cached = safe_decimal(customer.ledger_balance, field="ledger_balance")
                if abs(cached - balance_before) > self.balance_tolerance:
                    logger.warning(
                        "Cached ledger balance differs from history, using history",
                        extra_data={
                            "customer_id": customer_id,
                            "cached_balance": str(cached),
                            "history_balance": str(balance_before),
                        },
                    )
                impact = balance_impact(transaction)
                new_balance = balance_before + impact

                # 3. Due counts
                due_update = apply_delta(customer.due_counts(), transaction, classified)
                self._store_due_counts(customer, due_update.counts)

                # 4. Checkpoint
                position = await self._count_transactions(customer_id)
                if self.replay.is_checkpoint_position(position):
                    self.replay.add_checkpoint(
                        customer_id, BalanceRow(transaction, impact, new_balance), position
                    )

                customer.ledger_balance = new_balance
                customer.updated_at = datetime.utcnow()
                await self.db.commit()
            except StaleDataError as e:
                await self.db.rollback()
                raise ConcurrentModificationError(customer_id) from e
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            "Transaction posted",
            extra_data={
                "customer_id": customer_id,
                "transaction_id": transaction.id,
                "transaction_type": transaction_type.value,
                "balance_impact": str(impact),
                "running_balance": str(new_balance),
                "inventory_executor": self.inventory.executor_name,
            },
        )
        display = to_display_balance(new_balance)
        return {
            "transaction_id": transaction.id,
            "bill_sno": transaction.bill_sno,
            "transaction_type": transaction_type.value,
            "total_amount": total_amount,
            "payment_status": transaction.payment_status.value if transaction.payment_status else None,
            "balance_impact": impact,
            "new_running_balance": new_balance,
            "display_balance": display,
            "balance_status": balance_status(display),
            "due_counts": due_update.counts,
            "warnings": [warning.to_dict() for warning in due_update.warnings],
        }

    # ==================== Undo ====================

    @log_async_operation("undo_transaction")
    async def undo_transaction(
        self,
        transaction_id: int,
        reason: Optional[str] = None,
        voided_by: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Void a posted transaction and replay the customer's history.

        The due counts and running balance stored afterwards come from the
        full replay, so posting then undoing restores them exactly.
        """
        transaction = await self.get_transaction(transaction_id)
        if transaction.voided:
            raise AlreadyVoidedError(transaction_id, transaction.voided_at)
        customer_id = transaction.customer_id

        async with customer_lock(customer_id):
            try:
                customer = await self.get_customer(customer_id, for_update=True)
                transaction = await self.get_transaction(transaction_id, for_update=True)
                if transaction.voided:
                    raise AlreadyVoidedError(transaction_id, transaction.voided_at)

                classified = classify_persisted(transaction.items)
                reversed_impact = balance_impact(transaction)
                inverse = reverse_delta(customer.due_counts(), transaction, classified)
                for warning in inverse.warnings:
                    logger.warning("Undo clamped a due count", extra_data=warning.to_dict())

                results = await self.inventory.execute(
                    plan_reversal(transaction.transaction_type, classified)
                )
                failed = failures(results)
                if failed:
                    raise InventoryReversalFailedError(transaction_id, failed)

                transaction.voided = True
                transaction.voided_by = voided_by
                transaction.voided_at = datetime.utcnow()
                transaction.void_reason = reason or settings.DEFAULT_VOID_REASON
                await self.db.flush()

                await self.replay.invalidate_checkpoints(customer_id, transaction.order_key)
                replayed = await self.replay.replay(customer_id)
                written = await self.replay.write_checkpoints(
                    customer_id, replayed.rows, transaction.order_key
                )

                counts = replayed.dues.counts
                for cylinder_type in touched_types(classified):
                    if inverse.counts.get(cylinder_type, 0) != counts.get(cylinder_type, 0):
                        logger.info(
                            "Incremental undo differs from replay, replay kept",
                            extra_data={
                                "customer_id": customer_id,
                                "cylinder_type": cylinder_type,
                                "incremental": inverse.counts.get(cylinder_type, 0),
                                "replayed": counts.get(cylinder_type, 0),
                            },
                        )
                self._store_due_counts(customer, counts, prune=True)
                customer.ledger_balance = replayed.running_balance
                customer.updated_at = datetime.utcnow()
                await self.db.commit()
            except StaleDataError as e:
                await self.db.rollback()
                raise ConcurrentModificationError(customer_id) from e
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            "Transaction voided",
            extra_data={
                "customer_id": customer_id,
                "transaction_id": transaction_id,
                "reversed_balance_impact": str(reversed_impact),
                "checkpoints_rebuilt": written,
            },
        )
        return {
            "transaction_id": transaction_id,
            "reversed_balance_impact": reversed_impact,
            "new_running_balance": replayed.running_balance,
            "updated_due_counts": counts,
            "void_reason": transaction.void_reason,
            "warnings": [warning.to_dict() for warning in inverse.warnings],
        }

    # ==================== Queries ====================

    def _serialize_transaction(self, row: BalanceRow) -> dict[str, Any]:
        transaction = row.transaction
        classified = classify_persisted(transaction.items)
        return {
            "id": transaction.id,
            "bill_sno": transaction.bill_sno,
            "transaction_type": transaction.transaction_type.value,
            "status": transaction.status.value,
            "business_date": transaction.business_date,
            "created_at": transaction.created_at,
            "total_amount": safe_decimal(transaction.total_amount, field="total_amount", transaction_id=transaction.id),
            "paid_amount": transaction.paid_amount,
            "unpaid_amount": transaction.unpaid_amount,
            "payment_status": transaction.payment_status.value if transaction.payment_status else None,
            "payment_method": transaction.payment_method.value if transaction.payment_method else None,
            "payment_reference": transaction.payment_reference,
            "notes": transaction.notes,
            "created_by": transaction.created_by,
            "voided": transaction.voided,
            "voided_by": transaction.voided_by,
            "voided_at": transaction.voided_at,
            "void_reason": transaction.void_reason,
            "badges": kind_badges(classified, transaction.transaction_type.value),
            "balance_impact": row.impact,
            "running_balance": row.running_balance,
            "display_balance": row.display_balance,
            "items": [
                {
                    "position": item.position,
                    "item_kind": item.item_kind.value if item.item_kind else classify_item(item).value,
                    "cylinder_type": item.cylinder_type,
                    "display_name": cylinder_display_name(item.cylinder_type) if item.cylinder_type else item.product_name,
                    "product_name": item.product_name,
                    "quantity": item.quantity,
                    "price_per_item": item.price_per_item,
                    "total_price": item.total_price,
                    "remaining_kg": item.remaining_kg,
                    "buyback_rate": item.buyback_rate,
                    "buyback_total": item.buyback_total,
                }
                for item in transaction.items
            ],
        }

    async def get_ledger(
        self,
        customer_id: int,
        start_date: DateLike = None,
        end_date: DateLike = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Ledger view of a customer, optionally restricted to a business-date window.

        Balances are computed over the whole window before it is paginated,
        newest first; the starting balance comes from history preceding the
        window's earliest transaction.
        """
        limit = limit or settings.DEFAULT_PAGE_SIZE
        if page < 1:
            raise ValidationException("page must be at least 1", field="page")
        if limit < 1:
            raise ValidationException("limit must be at least 1", field="limit")
        limit = min(limit, settings.MAX_PAGE_SIZE)

        start = _window_start(start_date)
        end = _window_end(end_date)
        if start and end and start > end:
            raise ValidationException("start_date must not be after end_date", field="start_date")

        await self.get_customer(customer_id)

        query = select(LedgerTransaction).where(LedgerTransaction.customer_id == customer_id)
        if start:
            query = query.where(LedgerTransaction.business_date >= start)
        if end:
            query = query.where(LedgerTransaction.business_date <= end)
        result = await self.db.execute(
            query.order_by(LedgerTransaction.created_at, LedgerTransaction.id)
        )
        window = list(result.scalars().all())

        deadline = self.replay.deadline(customer_id)
        starting_balance = ZERO
        if window:
            starting_balance = await self.replay.balance_before(customer_id, window[0].order_key, deadline)
        rows = running_balances(window, starting_balance, deadline)
        summary = summarize(rows, starting_balance)

        newest_first = list(reversed(rows))
        total = len(newest_first)
        offset = (page - 1) * limit
        page_rows = newest_first[offset:offset + limit]

        return {
            "customer_id": customer_id,
            "summary": {
                "starting_balance": summary.starting_balance,
                "ending_balance": summary.ending_balance,
                "net_balance": summary.net_balance,
                "total_in": summary.total_in,
                "total_out": summary.total_out,
                "display_balance": summary.display_balance,
                "balance_status": summary.balance_status,
                "transaction_count": summary.transaction_count,
            },
            "transactions": [self._serialize_transaction(row) for row in page_rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def get_cylinder_dues(self, customer_id: int) -> dict[str, int]:
        customer = await self.get_customer(customer_id)
        return customer.due_counts()

    async def reconcile(self, customer_id: int, as_of: DateLike = None) -> dict[str, Any]:
        """
        Compare the cached balance and due counts with a fresh replay.

        Read-only. With ``as_of`` only transactions dated up to the end of
        that business day are counted in the calculated balance.
        """
        customer = await self.get_customer(customer_id)
        replayed = await self.replay.replay(customer_id, verify=False)

        checkpoints_verified = True
        inconsistency = None
        try:
            await self.replay.verify_checkpoints(customer_id, replayed.rows)
        except ReplayInconsistencyError as e:
            checkpoints_verified = False
            inconsistency = e.details

        cutoff = _window_end(as_of)
        rows = replayed.rows
        if cutoff is not None:
            counted = [row.transaction for row in rows if row.transaction.business_date <= cutoff]
            rows = running_balances(counted, ZERO, self.replay.deadline(customer_id))

        totals = {transaction_type.value: ZERO for transaction_type in TransactionType}
        for row in rows:
            transaction = row.transaction
            if transaction.voided:
                continue
            totals[transaction.transaction_type.value] += safe_decimal(
                transaction.total_amount, field="total_amount", transaction_id=transaction.id
            )

        calculated = rows[-1].running_balance if rows else ZERO
        system = safe_decimal(customer.ledger_balance, field="ledger_balance")
        difference = system - calculated
        due_counts = customer.due_counts()
        result = {
            "customer_id": customer_id,
            "customer_name": customer.name,
            "as_of": cutoff,
            "calculated_balance": calculated,
            "system_balance": system,
            "difference": difference,
            "is_balanced": abs(difference) <= self.balance_tolerance,
            "display_balance": to_display_balance(calculated),
            "balance_status": balance_status(to_display_balance(calculated)),
            "totals_by_type": totals,
            "transaction_count": len(rows),
            "due_counts": due_counts,
            "replayed_due_counts": replayed.dues.counts,
            "due_counts_match": due_counts == replayed.dues.counts,
            "checkpoints_verified": checkpoints_verified,
            "inconsistency": inconsistency,
        }
        if not result["is_balanced"] or not result["due_counts_match"] or not checkpoints_verified:
            logger.warning(
                "Customer ledger out of balance",
                extra_data={
                    "customer_id": customer_id,
                    "difference": str(difference),
                    "due_counts_match": result["due_counts_match"],
                    "checkpoints_verified": checkpoints_verified,
                },
            )
        return result

    # ==================== Repair ====================

    @log_async_operation("rebuild_customer_state")
    async def rebuild_customer_state(self, customer_id: int) -> dict[str, Any]:
        """Rewrite the cached balance, due counts and all checkpoints from a full replay"""
        async with customer_lock(customer_id):
            try:
                customer = await self.get_customer(customer_id, for_update=True)
                previous_balance = safe_decimal(customer.ledger_balance, field="ledger_balance")
                previous_dues = customer.due_counts()

                await self.replay.invalidate_checkpoints(customer_id)
                replayed = await self.replay.replay(customer_id, verify=False)
                written = await self.replay.write_checkpoints(customer_id, replayed.rows)

                self._store_due_counts(customer, replayed.dues.counts, prune=True)
                customer.ledger_balance = replayed.running_balance
                customer.updated_at = datetime.utcnow()
                await self.db.commit()
            except StaleDataError as e:
                await self.db.rollback()
                raise ConcurrentModificationError(customer_id) from e
            except Exception:
                await self.db.rollback()
                raise

        return {
            "customer_id": customer_id,
            "previous_balance": previous_balance,
            "running_balance": replayed.running_balance,
            "previous_due_counts": previous_dues,
            "due_counts": replayed.dues.counts,
            "checkpoints_written": written,
            "transactions_replayed": len(replayed.rows),
        }
