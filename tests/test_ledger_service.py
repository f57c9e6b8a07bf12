"""
Tests for LedgerService: posting, undo and the atomicity guarantees around them.

These tests use the in-memory SQLite async session fixture (db_session).
"""
from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from lpg_ledger.core.exceptions import (
    AlreadyVoidedError,
    ConcurrentModificationError,
    CustomerNotFoundError,
    ErrorCode,
    InsufficientInventoryError,
    InventoryReversalFailedError,
    TransactionNotFoundError,
    ValidationException,
)
from lpg_ledger.db.models.stock import CylinderStatus, CylinderStock
from lpg_ledger.db.models.transaction import LedgerTransaction, PaymentMethod, TransactionType
from lpg_ledger.db.models.transaction_item import ItemKind, TransactionItem
from lpg_ledger.domain.ledger.schemas import PaymentInfo, TransactionItemIn

DOMESTIC = "DOMESTIC_11_8KG"
COMMERCIAL = "COMMERCIAL_45_4KG"


async def _running_balance(service, customer_id) -> Decimal:
    ledger = await service.get_ledger(customer_id, limit=100)
    return ledger["summary"]["ending_balance"]


# ============================================================================
# Scenarios
# ============================================================================

@pytest.mark.unit
@pytest.mark.parametrize("cylinder_type", [DOMESTIC, "DOMESTIC"])
async def test_ledger_scenarios(ledger_service, customer_factory, items, cylinder_type):
    customer = await customer_factory()

    # 1. Unpaid sale of 5 domestic cylinders
    sale = await ledger_service.post_transaction(
        customer.id, TransactionType.SALE, [items.sale(cylinder_type, 5, "500")]
    )
    assert sale["total_amount"] == Decimal("2500")
    assert sale["payment_status"] == "UNPAID"
    assert sale["balance_impact"] == Decimal("2500")
    assert sale["new_running_balance"] == Decimal("2500")
    assert sale["due_counts"] == {cylinder_type: 5}
    assert sale["balance_status"] == "Customer owes this amount"

    # 2. Buyback of 3 at 60%, 900 credited
    buyback = await ledger_service.post_transaction(
        customer.id, TransactionType.BUYBACK, [items.buyback(cylinder_type, 3, "0.6", total="900")]
    )
    assert buyback["balance_impact"] == Decimal("-900")
    assert buyback["new_running_balance"] == Decimal("1600")
    assert buyback["due_counts"] == {cylinder_type: 2}

    # 3. Undo the buyback
    undo = await ledger_service.undo_transaction(buyback["transaction_id"])
    assert undo["reversed_balance_impact"] == Decimal("-900")
    assert undo["new_running_balance"] == Decimal("2500")
    assert undo["updated_due_counts"] == {cylinder_type: 5}
    assert undo["void_reason"] == "Transaction reversed by admin"
    assert await ledger_service.get_cylinder_dues(customer.id) == {cylinder_type: 5}

    # 4. Payment settles the account
    payment = await ledger_service.post_transaction(
        customer.id,
        TransactionType.PAYMENT,
        payment_info=PaymentInfo(amount=Decimal("2500"), payment_method=PaymentMethod.CASH),
    )
    assert payment["balance_impact"] == Decimal("-2500")
    assert payment["new_running_balance"] == 0
    assert payment["balance_status"] == "Balance settled"
    assert payment["payment_status"] is None

    # 5. Over-return clamps and still commits
    await ledger_service.post_transaction(
        customer.id, TransactionType.BUYBACK, [items.buyback(cylinder_type, 3, "0.6", total="900")]
    )
    over = await ledger_service.post_transaction(
        customer.id, TransactionType.RETURN_EMPTY, [items.ret(cylinder_type, 10)]
    )
    assert over["due_counts"] == {cylinder_type: 0}
    assert over["balance_impact"] == 0
    assert len(over["warnings"]) == 1
    assert over["warnings"][0]["code"] == "OVER_RETURN"
    assert over["warnings"][0]["due_before"] == 2
    assert over["warnings"][0]["excess"] == 8

    stored = await ledger_service.get_transaction(over["transaction_id"])
    assert stored.voided is False


@pytest.mark.unit
async def test_sale_with_buyback_credit_and_partial_payment(ledger_service, customer_factory, items):
    customer = await customer_factory()

    result = await ledger_service.post_transaction(
        customer.id,
        TransactionType.SALE,
        [
            items.sale(DOMESTIC, 4, "500"),
            items.buyback(DOMESTIC, 1, "0.6", total="300"),
            TransactionItemIn(product_name="Regulator", quantity=1, price_per_item=Decimal("200")),
        ],
        PaymentInfo(paid_amount=Decimal("1000")),
    )

    assert result["total_amount"] == Decimal("2200")
    assert result["payment_status"] == "PARTIAL"
    # 2200 - 300 credit - 1000 paid
    assert result["balance_impact"] == Decimal("900")
    assert result["due_counts"] == {DOMESTIC: 3}

    transaction = await ledger_service.get_transaction(result["transaction_id"])
    assert [item.item_kind for item in transaction.items] == [ItemKind.SALE, ItemKind.BUYBACK, ItemKind.SALE]
    assert transaction.items[1].buyback_total == Decimal("300")
    assert transaction.unpaid_amount == Decimal("900")


@pytest.mark.unit
async def test_fully_paid_sale_has_no_balance_impact(ledger_service, customer_factory, items):
    customer = await customer_factory()

    result = await ledger_service.post_transaction(
        customer.id,
        TransactionType.SALE,
        [items.sale(DOMESTIC, 2, "500")],
        PaymentInfo(paid_amount=Decimal("1000"), payment_method=PaymentMethod.BANK_TRANSFER),
    )

    assert result["payment_status"] == "FULLY_PAID"
    assert result["balance_impact"] == 0
    assert result["due_counts"] == {DOMESTIC: 2}


@pytest.mark.unit
async def test_bill_numbers_are_sequential_per_customer(ledger_service, customer_factory, items):
    first = await customer_factory("First Agency")
    second = await customer_factory("Second Agency")

    a1 = await ledger_service.post_transaction(first.id, TransactionType.SALE, [items.sale()])
    b1 = await ledger_service.post_transaction(second.id, TransactionType.SALE, [items.sale()])
    a2 = await ledger_service.post_transaction(first.id, TransactionType.SALE, [items.sale()])

    assert (a1["bill_sno"], a2["bill_sno"], b1["bill_sno"]) == (1, 2, 1)


# ============================================================================
# Undo
# ============================================================================

@pytest.mark.unit
async def test_undo_restores_state_exactly(ledger_service, customer_factory, items):
    customer = await customer_factory()
    await ledger_service.post_transaction(customer.id, TransactionType.SALE, [items.sale(DOMESTIC, 2, "500")])
    await ledger_service.post_transaction(customer.id, TransactionType.RETURN_EMPTY, [items.ret(DOMESTIC, 1)])

    before_balance = await _running_balance(ledger_service, customer.id)
    before_dues = await ledger_service.get_cylinder_dues(customer.id)

    posted = await ledger_service.post_transaction(
        customer.id,
        TransactionType.SALE,
        [items.sale(DOMESTIC, 3, "500"), items.sale(COMMERCIAL, 1, "2000"), items.ret(DOMESTIC, 5)],
    )
    # 1 due + 3 delivered - 5 returned -> clamped
    assert posted["due_counts"][DOMESTIC] == 0
    assert posted["warnings"]

    await ledger_service.undo_transaction(posted["transaction_id"], reason="Wrong customer", voided_by="admin")

    assert await _running_balance(ledger_service, customer.id) == before_balance
    assert await ledger_service.get_cylinder_dues(customer.id) == before_dues

    voided = await ledger_service.get_transaction(posted["transaction_id"])
    assert voided.voided is True
    assert voided.void_reason == "Wrong customer"
    assert voided.voided_by == "admin"
    assert voided.voided_at is not None


@pytest.mark.unit
async def test_undo_twice_raises_already_voided(ledger_service, customer_factory, items):
    customer = await customer_factory()
    posted = await ledger_service.post_transaction(customer.id, TransactionType.SALE, [items.sale()])
    await ledger_service.undo_transaction(posted["transaction_id"])

    with pytest.raises(AlreadyVoidedError) as exc_info:
        await ledger_service.undo_transaction(posted["transaction_id"])

    assert exc_info.value.error_code == ErrorCode.TRANSACTION_ALREADY_VOIDED
    assert exc_info.value.status_code == 409


@pytest.mark.unit
async def test_undo_missing_transaction(ledger_service):
    with pytest.raises(TransactionNotFoundError):
        await ledger_service.undo_transaction(999)


@pytest.mark.unit
async def test_voided_transaction_stays_in_ledger_with_zero_impact(ledger_service, customer_factory, items):
    customer = await customer_factory()
    posted = await ledger_service.post_transaction(customer.id, TransactionType.SALE, [items.sale(DOMESTIC, 1, "500")])
    await ledger_service.undo_transaction(posted["transaction_id"])

    ledger = await ledger_service.get_ledger(customer.id)

    entry = ledger["transactions"][0]
    assert entry["status"] == "VOIDED"
    assert entry["balance_impact"] == 0
    assert ledger["summary"]["ending_balance"] == 0


# ============================================================================
# Validation and failures
# ============================================================================

@pytest.mark.unit
async def test_negative_quantity_rejected_before_storage(ledger_service, customer_factory, db_session):
    customer = await customer_factory()

    with pytest.raises(ValidationException):
        await ledger_service.post_transaction(
            customer.id,
            TransactionType.SALE,
            [TransactionItemIn(cylinder_type=DOMESTIC, quantity=-2, price_per_item=Decimal("500"))],
        )

    result = await db_session.execute(select(LedgerTransaction))
    assert result.scalars().all() == []


@pytest.mark.unit
@pytest.mark.parametrize(
    "transaction_type,payment_info",
    [
        (TransactionType.PAYMENT, None),
        (TransactionType.PAYMENT, PaymentInfo(amount=Decimal("-5"))),
        (TransactionType.CREDIT_NOTE, PaymentInfo(amount=Decimal("0"))),
        (TransactionType.ADJUSTMENT, PaymentInfo(amount=Decimal("0"))),
        (TransactionType.SALE, None),
        (TransactionType.RETURN_EMPTY, None),
    ],
)
async def test_posting_validation(ledger_service, customer_factory, transaction_type, payment_info):
    customer = await customer_factory()

    with pytest.raises(ValidationException):
        await ledger_service.post_transaction(customer.id, transaction_type, [], payment_info)


@pytest.mark.unit
async def test_unknown_transaction_type(ledger_service, customer_factory):
    customer = await customer_factory()

    with pytest.raises(ValidationException) as exc_info:
        await ledger_service.post_transaction(customer.id, "RENTAL", [])

    assert exc_info.value.details["field"] == "transaction_type"


@pytest.mark.unit
async def test_post_for_missing_customer(ledger_service, items):
    with pytest.raises(CustomerNotFoundError):
        await ledger_service.post_transaction(404, TransactionType.SALE, [items.sale()])


@pytest.mark.unit
@pytest.mark.parametrize("transaction_type", [TransactionType.RETURN_EMPTY, TransactionType.BUYBACK])
async def test_returns_cannot_hand_out_accessories(
    stock_ledger_service, customer_factory, stock_factory, db_session, items, transaction_type
):
    customer = await customer_factory()
    await stock_factory(product_name="Regulator", count=5)
    cylinder = items.ret(DOMESTIC, 1) if transaction_type == TransactionType.RETURN_EMPTY \
        else items.buyback(DOMESTIC, 1, "0.6")

    with pytest.raises(ValidationException) as exc_info:
        await stock_ledger_service.post_transaction(
            customer.id, transaction_type, [cylinder, TransactionItemIn(product_name="Regulator", quantity=1)]
        )

    assert exc_info.value.details["field"] == "items[1]"
    assert (await db_session.execute(select(LedgerTransaction))).scalars().all() == []


@pytest.mark.unit
async def test_adjustment_can_be_negative(ledger_service, customer_factory):
    customer = await customer_factory()

    result = await ledger_service.post_transaction(
        customer.id,
        TransactionType.ADJUSTMENT,
        payment_info=PaymentInfo(amount=Decimal("-150"), notes="Missed delivery charge"),
    )

    assert result["balance_impact"] == Decimal("150")


@pytest.mark.unit
async def test_insufficient_inventory_rolls_back(stock_ledger_service, customer_factory, stock_factory, db_session, items):
    customer = await customer_factory()
    customer_id = customer.id
    await stock_factory(cylinder_type=DOMESTIC, status=CylinderStatus.FULL, count=3)

    with pytest.raises(InsufficientInventoryError) as exc_info:
        await stock_ledger_service.post_transaction(customer_id, TransactionType.SALE, [items.sale(DOMESTIC, 5, "500")])

    assert exc_info.value.error_code == ErrorCode.INSUFFICIENT_INVENTORY
    assert exc_info.value.details["failures"][0]["item"] == DOMESTIC
    assert (await db_session.execute(select(LedgerTransaction))).scalars().all() == []
    assert (await db_session.execute(select(TransactionItem))).scalars().all() == []
    assert await stock_ledger_service.get_cylinder_dues(customer_id) == {}
    assert await _running_balance(stock_ledger_service, customer_id) == 0


@pytest.mark.unit
async def test_inventory_reversal_failure_aborts_undo(stock_ledger_service, customer_factory, stock_factory, db_session, items):
    customer = await customer_factory()
    customer_id = customer.id
    await stock_factory(cylinder_type=DOMESTIC, status=CylinderStatus.FULL, count=10)
    posted = await stock_ledger_service.post_transaction(
        customer_id, TransactionType.SALE, [items.sale(DOMESTIC, 5, "500")]
    )

    # Cylinders left the books elsewhere; they cannot go back to FULL
    with_customer = (await db_session.execute(
        select(CylinderStock)
        .where(CylinderStock.cylinder_type == DOMESTIC)
        .where(CylinderStock.status == CylinderStatus.WITH_CUSTOMER)
    )).scalar_one()
    with_customer.count = 1
    await db_session.commit()

    with pytest.raises(InventoryReversalFailedError) as exc_info:
        await stock_ledger_service.undo_transaction(posted["transaction_id"])

    assert exc_info.value.details["transaction_id"] == posted["transaction_id"]
    transaction = await stock_ledger_service.get_transaction(posted["transaction_id"])
    assert transaction.voided is False
    assert await stock_ledger_service.get_cylinder_dues(customer_id) == {DOMESTIC: 5}
    assert await _running_balance(stock_ledger_service, customer_id) == Decimal("2500")


async def _stock_counts(db_session) -> dict[CylinderStatus, int]:
    rows = (await db_session.execute(
        select(CylinderStock).where(CylinderStock.cylinder_type == DOMESTIC)
    )).scalars().all()
    return {row.status: row.count for row in rows}


@pytest.mark.unit
async def test_undo_of_untracked_return_restores_stock_exactly(
    stock_ledger_service, customer_factory, stock_factory, db_session, items
):
    customer = await customer_factory()
    await stock_factory(cylinder_type=DOMESTIC, status=CylinderStatus.FULL, count=10)
    await stock_ledger_service.post_transaction(customer.id, TransactionType.SALE, [items.sale(DOMESTIC, 2, "500")])
    before = await _stock_counts(db_session)

    # 5 empties back, only 2 were ever tracked as with the customer
    returned = await stock_ledger_service.post_transaction(
        customer.id, TransactionType.RETURN_EMPTY, [items.ret(DOMESTIC, 5)]
    )
    after_return = await _stock_counts(db_session)
    assert after_return[CylinderStatus.WITH_CUSTOMER] == 0
    assert after_return[CylinderStatus.EMPTY] == 5
    transaction = await stock_ledger_service.get_transaction(returned["transaction_id"])
    assert transaction.items[0].untracked_quantity == 3

    await stock_ledger_service.undo_transaction(returned["transaction_id"])

    restored = await _stock_counts(db_session)
    assert restored[CylinderStatus.FULL] == before[CylinderStatus.FULL]
    assert restored[CylinderStatus.WITH_CUSTOMER] == before[CylinderStatus.WITH_CUSTOMER]
    assert restored.get(CylinderStatus.EMPTY, 0) == 0


@pytest.mark.unit
async def test_stale_version_raises_concurrent_modification(ledger_service, customer_factory, db_session, items):
    customer = await customer_factory()
    customer_id = customer.id

    with patch.object(db_session, "commit", AsyncMock(side_effect=StaleDataError("version mismatch"))):
        with pytest.raises(ConcurrentModificationError) as exc_info:
            await ledger_service.post_transaction(customer_id, TransactionType.SALE, [items.sale()])

    assert exc_info.value.status_code == 409
    assert exc_info.value.details["customer_id"] == customer_id
    assert (await db_session.execute(select(LedgerTransaction))).scalars().all() == []


@pytest.mark.unit
async def test_customer_version_increments_on_each_write(ledger_service, customer_factory, items):
    customer = await customer_factory()
    initial = customer.version

    await ledger_service.post_transaction(customer.id, TransactionType.SALE, [items.sale()])
    await ledger_service.post_transaction(
        customer.id, TransactionType.PAYMENT, payment_info=PaymentInfo(amount=Decimal("100"))
    )

    refreshed = await ledger_service.get_customer(customer.id)
    assert refreshed.version == initial + 2


@pytest.mark.unit
async def test_create_customer(ledger_service):
    customer = await ledger_service.create_customer("  Sunrise Hotel ")

    assert customer.id is not None
    assert customer.name == "Sunrise Hotel"
    assert customer.ledger_balance == 0

    with pytest.raises(ValidationException):
        await ledger_service.create_customer("   ")

