from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from stockkeeper.database import create_db_engine, unit_of_work
from stockkeeper.exceptions import ContentionError, ErrorCode
from stockkeeper.models.inventory_log import InventoryAction
from stockkeeper.models.product import Product
from stockkeeper.services import ledger_service, stock_service


def _counters(session_factory, product_id):
    db = session_factory()
    try:
        p = db.get(Product, product_id)
        return p.on_hand_stock, p.reserved_stock
    finally:
        db.close()


class TestReserve:
    def test_reserve_ship_scenario(self, test_db, make_product):
        product = make_product(stock=10)
        opening = ledger_service.list_entries(test_db, product.id)
        assert [e.action for e in opening] == [InventoryAction.PURCHASE_IN]

        first = stock_service.reserve(test_db, product.id, 4)
        assert first.success
        assert first.snapshot.reserved == 4
        assert first.snapshot.available == 6

        second = stock_service.reserve(test_db, product.id, 7)
        assert not second.success
        assert second.code == ErrorCode.INSUFFICIENT_STOCK
        assert second.failed_items[0].available == 6
        assert "only 6 available" in second.message

        shipped = stock_service.deduct(test_db, product.id, 4)
        assert shipped.snapshot.on_hand == 6
        assert shipped.snapshot.reserved == 0

        entries = ledger_service.list_entries(test_db, product.id)[1:]
        assert [(e.action, e.quantity_change, e.reserved_change) for e in entries] == [
            (InventoryAction.RESERVATION, 0, 4),
            (InventoryAction.SALE_OUT, -4, -4),
        ]
        assert ledger_service.replay(test_db, product.id).on_hand == 6

    def test_missing_product(self, test_db):
        result = stock_service.reserve(test_db, "nope", 1)
        assert result.code == ErrorCode.NOT_FOUND

    def test_inactive_product(self, test_db, make_product):
        product = make_product(stock=5)
        product.is_active = False
        test_db.commit()
        result = stock_service.reserve(test_db, product.id, 1)
        assert result.code == ErrorCode.INACTIVE

    @pytest.mark.parametrize("qty", [0, -3])
    def test_non_positive_quantity(self, test_db, make_product, qty):
        product = make_product(stock=5)
        assert stock_service.reserve(test_db, product.id, qty).code == ErrorCode.INVALID_ARGUMENT

    def test_batch_is_all_or_nothing(self, test_db, make_product):
        a = make_product(stock=10)
        b = make_product(stock=3)
        result = stock_service.reserve_batch(test_db, [(a.id, 2), (b.id, 5)])

        assert not result.success
        assert [f.product_id for f in result.failed_items] == [b.id]
        test_db.expire_all()
        assert test_db.get(Product, a.id).reserved_stock == 0
        assert test_db.get(Product, b.id).reserved_stock == 0
        assert len(ledger_service.list_entries(test_db, a.id)) == 1

    def test_batch_reports_every_failing_line(self, test_db, make_product):
        a = make_product(stock=1)
        b = make_product(stock=0)
        result = stock_service.reserve_batch(test_db, [(a.id, 2), (b.id, 1), ("ghost", 1)])
        reasons = {f.product_id: f.reason for f in result.failed_items}
        assert reasons == {
            a.id: ErrorCode.INSUFFICIENT_STOCK,
            b.id: ErrorCode.INSUFFICIENT_STOCK,
            "ghost": ErrorCode.NOT_FOUND,
        }

    def test_batch_merges_duplicate_lines(self, test_db, make_product):
        a = make_product(stock=5)
        result = stock_service.reserve_batch(test_db, [(a.id, 2), (a.id, 3)])
        assert result.success
        assert result.snapshot.reserved == 5

    def test_concurrent_reservations_never_oversell(self, test_db, session_factory, make_product):
        product_id = make_product(stock=10).id
        test_db.commit()

        def attempt(_):
            db = session_factory()
            try:
                return stock_service.reserve(db, product_id, 2).success
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(8)))

        assert outcomes.count(True) == 5
        assert _counters(session_factory, product_id) == (10, 10)

    def test_lock_timeout_is_contention_not_shortage(self, test_db, db_url, make_product):
        product_id = make_product(stock=10).id
        impatient = create_db_engine(db_url, lock_timeout=0.2)
        other = sessionmaker(bind=impatient)()
        try:
            with pytest.raises(ContentionError):
                with unit_of_work(test_db):
                    stock_service.lock_products(test_db, [product_id])
                    stock_service.reserve(other, product_id, 1)
        finally:
            test_db.rollback()
            other.close()
            impatient.dispose()

    def test_open_read_does_not_block_reservations(self, test_db, db_url, make_product):
        browsed = make_product(stock=10)
        wanted_id = make_product(stock=10).id
        impatient = create_db_engine(db_url, lock_timeout=0.3)
        other = sessionmaker(bind=impatient)()
        try:
            # test_db keeps its read transaction open across the reservation
            assert test_db.get(Product, browsed.id).on_hand_stock == 10
            assert test_db.in_transaction()
            result = stock_service.reserve(other, wanted_id, 3)
            assert result.success
            assert result.snapshot.reserved == 3
        finally:
            other.close()
            impatient.dispose()

    def test_overlapping_batches_in_opposite_order(self, test_db, session_factory, make_product):
        a_id = make_product(stock=15).id
        b_id = make_product(stock=15).id
        test_db.commit()

        def attempt(i):
            lines = [(a_id, 2), (b_id, 2)] if i % 2 else [(b_id, 2), (a_id, 2)]
            db = session_factory()
            try:
                return stock_service.reserve_batch(db, lines).success
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(attempt, range(12)))

        assert outcomes.count(True) == 7
        assert _counters(session_factory, a_id) == (15, 14)
        assert _counters(session_factory, b_id) == (15, 14)

    def test_mixed_operations_keep_counters_consistent(self, test_db, session_factory, make_product):
        product_id = make_product(stock=20).id
        test_db.commit()
        operations = [
            (stock_service.reserve, 3), (stock_service.deduct, 2), (stock_service.release, 1),
            (stock_service.reserve, 4), (stock_service.deduct, 3), (stock_service.reserve, 5),
            (stock_service.release, 2), (stock_service.deduct, 4), (stock_service.reserve, 6),
            (stock_service.reserve, 2), (stock_service.deduct, 1), (stock_service.release, 3),
        ] * 2

        def run(op):
            func, quantity = op
            db = session_factory()
            try:
                return func(db, product_id, quantity)
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(run, operations))

        assert all(r.success or r.code == ErrorCode.INSUFFICIENT_STOCK for r in results)
        on_hand, reserved = _counters(session_factory, product_id)
        assert 0 <= reserved <= on_hand
        test_db.rollback()
        replayed = ledger_service.replay(test_db, product_id)
        assert (replayed.on_hand, replayed.reserved) == (on_hand, reserved)
        assert ledger_service.reconcile(test_db, product_id).consistent


class TestReleaseAndDeduct:
    def test_release_is_floored(self, test_db, make_product):
        product = make_product(stock=10)
        stock_service.reserve(test_db, product.id, 3)
        result = stock_service.release(test_db, product.id, 5)
        assert result.success
        assert result.snapshot.reserved == 0
        last = ledger_service.list_entries(test_db, product.id)[-1]
        assert last.action == InventoryAction.RESERVATION_RELEASE
        assert last.reserved_change == -3

    def test_release_nothing_reserved_writes_no_entry(self, test_db, make_product):
        product = make_product(stock=10)
        result = stock_service.release(test_db, product.id, 2)
        assert result.success
        assert result.ledger_ids == []

    def test_release_missing_product(self, test_db):
        assert stock_service.release(test_db, "nope", 1).code == ErrorCode.NOT_FOUND

    def test_deduct_is_floored(self, test_db, make_product):
        product = make_product(stock=3)
        stock_service.reserve(test_db, product.id, 2)
        result = stock_service.deduct(test_db, product.id, 5)
        assert (result.snapshot.on_hand, result.snapshot.reserved) == (0, 0)
        last = ledger_service.list_entries(test_db, product.id)[-1]
        assert last.quantity_change == -3
        assert ledger_service.replay(test_db, product.id).on_hand == 0


class TestAdminOperations:
    def test_add_stock_rejects_non_positive(self, test_db, make_product):
        product = make_product(stock=0)
        assert stock_service.add_stock(test_db, product.id, 0).code == ErrorCode.INVALID_ARGUMENT

    def test_add_stock_updates_cost_and_value(self, test_db, make_product):
        product = make_product(stock=0)
        result = stock_service.add_stock(test_db, product.id, 4, unit_cost=Decimal("2.50"), reference_number="PO-7")
        assert result.snapshot.on_hand == 4
        test_db.expire_all()
        p = test_db.get(Product, product.id)
        assert p.unit_cost == Decimal("2.50")
        assert p.last_restocked_at is not None
        entry = ledger_service.list_entries(test_db, product.id)[-1]
        assert entry.total_value == Decimal("10.00")
        assert entry.reference_number == "PO-7"

    def test_adjust_down_clamps_reservations(self, test_db, make_product):
        product = make_product(stock=10)
        stock_service.reserve(test_db, product.id, 6)
        result = stock_service.adjust_to(test_db, product.id, 4, reason="stock take")
        assert (result.snapshot.on_hand, result.snapshot.reserved) == (4, 4)
        entry = ledger_service.list_entries(test_db, product.id)[-1]
        assert entry.action == InventoryAction.ADJUSTMENT_SUB
        assert entry.quantity_change == -6

    def test_adjust_negative_target_clamps_to_zero(self, test_db, make_product):
        product = make_product(stock=5)
        result = stock_service.adjust_to(test_db, product.id, -2)
        assert result.snapshot.on_hand == 0

    def test_adjust_up(self, test_db, make_product):
        product = make_product(stock=5)
        stock_service.adjust_to(test_db, product.id, 9)
        entry = ledger_service.list_entries(test_db, product.id)[-1]
        assert (entry.action, entry.quantity_change) == (InventoryAction.ADJUSTMENT_ADD, 4)

    def test_adjust_to_same_value_is_a_no_op(self, test_db, make_product):
        product = make_product(stock=5)
        result = stock_service.adjust_to(test_db, product.id, 5)
        assert result.success and result.ledger_ids == []

    def test_damage_leaves_reservations_alone(self, test_db, make_product):
        product = make_product(stock=10)
        stock_service.reserve(test_db, product.id, 3)
        result = stock_service.record_damage(test_db, product.id, 4, "dropped")
        assert (result.snapshot.on_hand, result.snapshot.reserved) == (6, 3)
        assert ledger_service.list_entries(test_db, product.id)[-1].action == InventoryAction.DAMAGE_OUT

    def test_damage_floors_at_zero(self, test_db, make_product):
        product = make_product(stock=2)
        result = stock_service.record_damage(test_db, product.id, 5, "flood")
        assert result.snapshot.on_hand == 0

    def test_return_adds_stock(self, test_db, make_product):
        product = make_product(stock=2)
        result = stock_service.record_return(test_db, product.id, 1, order_id="order-9")
        assert result.snapshot.on_hand == 3
        entry = ledger_service.list_entries(test_db, product.id)[-1]
        assert entry.action == InventoryAction.RETURN_IN
        assert entry.reference_number == "order-9"

    def test_transfer_out_takes_only_unreserved_stock(self, test_db, make_product):
        product = make_product(stock=10)
        stock_service.reserve(test_db, product.id, 6)

        refused = stock_service.record_transfer_out(test_db, product.id, 5, destination="WH-EAST")
        assert refused.code == ErrorCode.INSUFFICIENT_STOCK
        assert refused.failed_items[0].available == 4

        result = stock_service.record_transfer_out(test_db, product.id, 4, destination="WH-EAST")
        assert (result.snapshot.on_hand, result.snapshot.reserved, result.snapshot.available) == (6, 6, 0)
        entry = ledger_service.list_entries(test_db, product.id)[-1]
        assert (entry.action, entry.quantity_change, entry.reference_number) == (InventoryAction.TRANSFER_OUT, -4, "WH-EAST")
        assert ledger_service.reconcile(test_db, product.id).consistent

    def test_transfer_in_adds_stock(self, test_db, make_product):
        product = make_product(stock=1)
        result = stock_service.record_transfer_in(test_db, product.id, 5, source="WH-WEST")
        assert result.snapshot.on_hand == 6
        entry = ledger_service.list_entries(test_db, product.id)[-1]
        assert entry.action == InventoryAction.TRANSFER_IN
        assert entry.reason == "Transferred in from WH-WEST"


class TestLedgerAtomicity:
    def test_failed_ledger_write_aborts_counter_change(self, test_db, session_factory, make_product, monkeypatch):
        product_id = make_product(stock=10).id

        def boom(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(ledger_service, "record_entry", boom)
        with pytest.raises(RuntimeError):
            stock_service.add_stock(test_db, product_id, 5)
        with pytest.raises(RuntimeError):
            stock_service.reserve(test_db, product_id, 2)

        assert _counters(session_factory, product_id) == (10, 0)
        assert ledger_service.replay(test_db, product_id).entry_count == 1
