"""
Movement ledger tests.

The invariant checked throughout: a product's stock level equals the signed
sum of the ledger lines that reference it, and never goes negative.
"""
import threading
from datetime import datetime

import pytest

from kardex.errors import Forbidden, InsufficientStock, NotFound, SessionConflict, StockConflict, ValidationError
from kardex.models.movement import MovementConcept, MovementDetail, MovementHeader, MovementType
from kardex.models.operator import OperatorRole
from kardex.models.product import Product
from kardex.schemas.movement import MovementLine
from kardex.services import audit_service, ledger_service, stock_service


def snapshot(db):
    """Everything a rejected operation must leave untouched."""
    db.expire_all()
    products = {p.id: (p.stock_level, p.price) for p in db.query(Product).all()}
    headers = {h.id: (h.type, h.reason, h.total_cost_impact) for h in db.query(MovementHeader).all()}
    details = {d.id: (d.movement_id, d.product_id, d.quantity, d.unit_cost) for d in db.query(MovementDetail).all()}
    return products, headers, details


# --- create_movement ---

def test_create_in_movement_adds_stock_and_totals_cost(db, make_product, move, stock_of):
    product = make_product()

    header = move("IN", (product.id, 10, 5.0), reason="Factura 123", concept=MovementConcept.PURCHASE)

    assert stock_of(product.id) == 10
    assert header.type == MovementType.IN
    assert header.concept == MovementConcept.PURCHASE
    assert header.total_cost_impact == 50.0
    assert header.details[0].total_cost == 50.0
    assert header.display_reason == "[Compra] Factura 123"


def test_create_out_movement_removes_stock(db, make_product, move, stock_of):
    product = make_product()
    move("IN", (product.id, 10, 5.0))

    move("OUT", (product.id, 4, 5.0))

    assert stock_of(product.id) == 6


def test_reason_is_stored_verbatim(db, make_product, move):
    product = make_product()

    header = move("IN", (product.id, 1, 1.0), reason="[Compra] proveedor  ACME ")

    assert ledger_service.get_movement(db, header.id).reason == "[Compra] proveedor  ACME "


def test_in_with_new_price_overwrites_product_price(db, actor, make_product):
    product = make_product(price=10.0)

    ledger_service.create_movement(
        db, actor.id, "IN", "", [MovementLine(product_id=product.id, quantity=2, unit_cost=4.0, new_price=15.0)]
    )

    assert db.get(Product, product.id, populate_existing=True).price == 15.0


def test_out_exceeding_stock_is_rejected_atomically(db, make_product, move, stock_of):
    a = make_product("A-1")
    b = make_product("B-1")
    move("IN", (a.id, 5, 1.0), (b.id, 1, 1.0))
    before = snapshot(db)

    # First line fits, second does not: nothing may be written
    with pytest.raises(InsufficientStock) as exc:
        move("OUT", (a.id, 3, 1.0), (b.id, 2, 1.0))

    assert exc.value.product_id == b.id
    assert snapshot(db) == before


def test_lines_for_same_product_are_checked_together(db, make_product, move, stock_of):
    product = make_product()
    move("IN", (product.id, 5, 1.0))

    with pytest.raises(InsufficientStock):
        move("OUT", (product.id, 3, 1.0), (product.id, 3, 1.0))

    assert stock_of(product.id) == 5


@pytest.mark.parametrize(
    "line, movement_type",
    [
        (MovementLine(product_id="p", quantity=0, unit_cost=1.0), "IN"),
        (MovementLine(product_id="p", quantity=-2, unit_cost=1.0), "IN"),
        (MovementLine(product_id="p", quantity=1, unit_cost=-1.0), "IN"),
        (MovementLine(product_id="p", quantity=1, unit_cost=1.0, new_price=9.0), "OUT"),
        (MovementLine(product_id="", quantity=1, unit_cost=1.0), "IN"),
    ],
)
def test_invalid_lines_are_rejected(db, actor, make_product, line, movement_type):
    product = make_product()
    if line.product_id:
        line.product_id = product.id
    before = snapshot(db)

    with pytest.raises(ValidationError):
        ledger_service.create_movement(db, actor.id, movement_type, "", [line])

    assert snapshot(db) == before


def test_movement_without_lines_is_rejected(db, actor):
    with pytest.raises(ValidationError):
        ledger_service.create_movement(db, actor.id, "IN", "", [])


def test_unknown_product_is_not_found(db, actor):
    with pytest.raises(NotFound):
        ledger_service.create_movement(db, actor.id, "IN", "", [MovementLine(product_id="nope", quantity=1)])


def test_concept_must_match_direction(db, make_product, move):
    product = make_product()
    move("IN", (product.id, 5, 1.0))

    with pytest.raises(ValidationError):
        move("OUT", (product.id, 1, 1.0), concept=MovementConcept.PURCHASE)
    with pytest.raises(ValidationError):
        move("IN", (product.id, 1, 1.0), concept=MovementConcept.GIFT)

    header = move("OUT", (product.id, 1, 1.0), concept=MovementConcept.GIFT)
    assert header.concept == MovementConcept.GIFT


def test_unknown_movement_type(db, make_product, move):
    product = make_product()

    with pytest.raises(ValidationError):
        move("SIDEWAYS", (product.id, 1, 1.0))


# --- delete_movement ---

def test_scenario_a_delete_of_consumed_entry_is_rejected(db, actor, make_product, move, stock_of):
    product = make_product()
    first = move("IN", (product.id, 10, 5.0))
    move("OUT", (product.id, 4, 5.0))
    before = snapshot(db)

    with pytest.raises(InsufficientStock) as exc:
        ledger_service.delete_movement(db, first.id, actor.id)

    assert isinstance(exc.value, StockConflict)
    assert stock_of(product.id) == 6
    assert snapshot(db) == before


def test_delete_reverses_and_recreate_restores(db, actor, make_product, move, stock_of):
    product = make_product()
    move("IN", (product.id, 10, 5.0))
    out = move("OUT", (product.id, 4, 5.0))

    ledger_service.delete_movement(db, out.id, actor.id)
    assert stock_of(product.id) == 10
    assert ledger_service.get_movement(db, out.id) is None
    assert db.query(MovementDetail).filter(MovementDetail.movement_id == out.id).count() == 0

    move("OUT", (product.id, 4, 5.0))
    assert stock_of(product.id) == 6


def test_delete_unknown_movement(db, actor):
    with pytest.raises(NotFound):
        ledger_service.delete_movement(db, "missing", actor.id)


# --- update_movement ---

def test_update_reverses_old_lines_and_applies_new_ones(db, actor, make_product, move, stock_of):
    a = make_product("A-1")
    b = make_product("B-1")
    header = move("IN", (a.id, 10, 2.0))

    ledger_service.update_movement(
        db, header.id, actor.id, "IN", "corrected",
        [MovementLine(product_id=a.id, quantity=4, unit_cost=2.0), MovementLine(product_id=b.id, quantity=3, unit_cost=1.0)],
    )

    assert stock_of(a.id) == 4
    assert stock_of(b.id) == 3
    updated = ledger_service.get_movement(db, header.id)
    assert updated.reason == "corrected"
    assert updated.total_cost_impact == 11.0
    assert sorted(d.quantity for d in updated.details) == [3, 4]
    assert stock_service.verify_stock_levels(db) == []


def test_update_is_netted_per_product(db, actor, make_product, move, stock_of):
    product = make_product()
    header = move("IN", (product.id, 10, 1.0))
    move("OUT", (product.id, 8, 1.0))

    # Reversing 10 alone would go to -8, but the replacement brings 12 back in
    ledger_service.update_movement(
        db, header.id, actor.id, "IN", "", [MovementLine(product_id=product.id, quantity=12, unit_cost=1.0)]
    )

    assert stock_of(product.id) == 4


def test_update_that_would_go_negative_restores_everything(db, actor, make_product, move):
    product = make_product()
    header = move("IN", (product.id, 10, 1.0))
    move("OUT", (product.id, 8, 1.0))
    before = snapshot(db)

    with pytest.raises(StockConflict):
        ledger_service.update_movement(
            db, header.id, actor.id, "IN", "", [MovementLine(product_id=product.id, quantity=5, unit_cost=1.0)]
        )

    assert snapshot(db) == before


def test_update_out_beyond_stock_is_insufficient(db, actor, make_product, move, stock_of):
    product = make_product()
    move("IN", (product.id, 5, 1.0))
    out = move("OUT", (product.id, 2, 1.0))

    with pytest.raises(InsufficientStock) as exc:
        ledger_service.update_movement(
            db, out.id, actor.id, "OUT", "", [MovementLine(product_id=product.id, quantity=6, unit_cost=1.0)]
        )

    assert not isinstance(exc.value, StockConflict)
    assert stock_of(product.id) == 3


def test_update_can_flip_direction(db, actor, make_product, move, stock_of):
    product = make_product()
    move("IN", (product.id, 5, 1.0))
    out = move("OUT", (product.id, 2, 1.0))

    ledger_service.update_movement(
        db, out.id, actor.id, "IN", "", [MovementLine(product_id=product.id, quantity=2, unit_cost=1.0)]
    )

    assert stock_of(product.id) == 7


# --- delete_movement_detail ---

def test_delete_detail_reverses_only_that_line(db, actor, make_product, move, stock_of):
    a = make_product("A-1")
    b = make_product("B-1")
    header = move("IN", (a.id, 4, 2.0), (b.id, 6, 3.0))
    detail_b = next(d for d in header.details if d.product_id == b.id)

    remaining = ledger_service.delete_movement_detail(db, detail_b.id, actor.id)

    assert stock_of(a.id) == 4
    assert stock_of(b.id) == 0
    assert remaining.id == header.id
    assert remaining.total_cost_impact == 8.0
    assert len(remaining.details) == 1


def test_delete_last_detail_removes_header(db, actor, make_product, move):
    product = make_product()
    header = move("IN", (product.id, 4, 2.0))
    header_id = header.id
    detail_id = header.details[0].id

    assert ledger_service.delete_movement_detail(db, detail_id, actor.id) is None
    assert ledger_service.get_movement(db, header_id) is None


def test_delete_detail_guarded_against_negative(db, actor, make_product, move, stock_of):
    product = make_product()
    header = move("IN", (product.id, 4, 2.0))
    move("OUT", (product.id, 3, 2.0))

    with pytest.raises(StockConflict):
        ledger_service.delete_movement_detail(db, header.details[0].id, actor.id)

    assert stock_of(product.id) == 1


# --- audit-owned movements ---

def test_movements_of_closed_session_are_immutable(db, actor, make_product, move):
    product = make_product()
    move("IN", (product.id, 5, 1.0))
    session = audit_service.start_session(db, actor.id)
    _, header = audit_service.adjust_single(db, session.id, actor.id, product.id, 7)
    audit_service.finalize_session(db, session.id, actor.id, {})

    with pytest.raises(SessionConflict):
        ledger_service.delete_movement(db, header.id, actor.id)
    with pytest.raises(SessionConflict):
        ledger_service.update_movement(
            db, header.id, actor.id, "IN", "", [MovementLine(product_id=product.id, quantity=1, unit_cost=1.0)]
        )
    with pytest.raises(SessionConflict):
        ledger_service.delete_movement_detail(db, header.details[0].id, actor.id)


def test_cannot_attach_movement_to_closed_session(db, actor, make_product, move):
    product = make_product()
    session = audit_service.start_session(db, actor.id)
    audit_service.cancel_session(db, session.id, actor.id)

    with pytest.raises(SessionConflict):
        move("IN", (product.id, 1, 1.0), audit_session_id=session.id)


# --- concurrency ---

def test_scenario_c_interleaved_outs_one_wins(session_factory, actor, make_product, move, stock_of):
    product = make_product()
    move("IN", (product.id, 10, 1.0))

    first = session_factory()
    second = session_factory()
    try:
        # Both sessions have read the product at stock 10
        assert first.get(Product, product.id).stock_level == 10
        assert second.get(Product, product.id).stock_level == 10

        line = [MovementLine(product_id=product.id, quantity=6, unit_cost=1.0)]
        ledger_service.create_movement(first, actor.id, "OUT", "", line)
        with pytest.raises(InsufficientStock):
            ledger_service.create_movement(second, actor.id, "OUT", "", line)
    finally:
        first.close()
        second.close()

    assert stock_of(product.id) == 4


def test_scenario_c_concurrent_outs_one_wins(session_factory, actor, make_product, move, stock_of):
    product = make_product()
    move("IN", (product.id, 10, 1.0))
    actor_id, product_id = actor.id, product.id

    barrier = threading.Barrier(2)
    outcomes = []

    def sell_six():
        session = session_factory()
        try:
            line = [MovementLine(product_id=product_id, quantity=6, unit_cost=1.0)]
            barrier.wait()
            ledger_service.create_movement(session, actor_id, "OUT", "", line)
            outcomes.append("ok")
        except InsufficientStock as e:
            outcomes.append(e.code)
        finally:
            session.close()

    threads = [threading.Thread(target=sell_six) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(outcomes) == ["INSUFFICIENT_STOCK", "ok"]
    assert stock_of(product.id) == 4


# --- invariant over a sequence ---

def test_stock_equals_ledger_sum_after_mixed_operations(db, actor, make_product, move, stock_of):
    a = make_product("A-1")
    b = make_product("B-1")
    m1 = move("IN", (a.id, 10, 1.0), (b.id, 5, 2.0))
    m2 = move("OUT", (a.id, 3, 1.0))
    m3 = move("OUT", (b.id, 2, 2.0), (a.id, 1, 1.0))
    ledger_service.update_movement(
        db, m2.id, actor.id, "OUT", "", [MovementLine(product_id=a.id, quantity=5, unit_cost=1.0)]
    )
    detail_b = next(d.id for d in m3.details if d.product_id == b.id)
    ledger_service.delete_movement_detail(db, detail_b, actor.id)
    with pytest.raises(InsufficientStock):
        move("OUT", (b.id, 6, 2.0))
    ledger_service.delete_movement(db, m3.id, actor.id)
    move("IN", (b.id, 1, 2.0))

    assert stock_service.verify_stock_levels(db) == []
    assert stock_of(a.id) == 5
    assert stock_of(b.id) == 6
    assert ledger_service.get_movement(db, m1.id) is not None


# --- read side ---

def test_list_movements_filters(db, make_product, move):
    a = make_product("A-1")
    b = make_product("B-1")
    move("IN", (a.id, 5, 1.0), date=datetime(2024, 1, 1))
    move("IN", (b.id, 5, 1.0), date=datetime(2024, 1, 2))
    move("OUT", (a.id, 1, 1.0), date=datetime(2024, 1, 3))

    assert len(ledger_service.list_movements(db)) == 3
    assert [m.type for m in ledger_service.list_movements(db, product_id=a.id)] == [MovementType.OUT, MovementType.IN]
    assert len(ledger_service.list_movements(db, movement_type=MovementType.IN)) == 2


def test_product_kardex_running_balance(db, make_product, move):
    product = make_product()
    move("IN", (product.id, 10, 5.0), date=datetime(2024, 1, 1), reason="first")
    move("OUT", (product.id, 4, 5.0), date=datetime(2024, 1, 2))
    move("IN", (product.id, 2, 6.0), date=datetime(2024, 1, 3))

    kardex = ledger_service.get_product_kardex(db, product.id)

    assert [e["quantity"] for e in kardex] == [10, -4, 2]
    assert [e["balance_after"] for e in kardex] == [10, 6, 8]
    assert kardex[0]["reason"] == "first"


def test_kardex_unknown_product(db):
    with pytest.raises(NotFound):
        ledger_service.get_product_kardex(db, "missing")


def test_kardex_orders_same_date_by_recording(db, make_product, move):
    product = make_product()
    same_day = datetime(2024, 5, 1)
    move("IN", (product.id, 3, 1.0), date=same_day)
    move("OUT", (product.id, 2, 1.0), date=same_day)
    move("IN", (product.id, 4, 1.0), date=same_day)

    kardex = ledger_service.get_product_kardex(db, product.id)

    assert [e["quantity"] for e in kardex] == [3, -2, 4]
    assert [e["balance_after"] for e in kardex] == [3, 1, 5]


def test_movements_get_increasing_sequence_numbers(make_product, move):
    product = make_product()
    headers = [move("IN", (product.id, 1, 1.0)) for _ in range(3)]

    seqs = [h.seq for h in headers]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == 3


# --- who may write ---

def test_viewer_cannot_record_movements(db, make_operator, make_product):
    viewer = make_operator("viewer", role=OperatorRole.VIEWER)
    product = make_product()
    line = [MovementLine(product_id=product.id, quantity=1, unit_cost=1.0)]

    with pytest.raises(Forbidden):
        ledger_service.create_movement(db, viewer.id, "IN", "", line)
    assert db.query(MovementHeader).count() == 0


def test_auditor_cannot_edit_ledger_directly(db, make_operator, make_product, move):
    auditor = make_operator("auditor", role=OperatorRole.AUDITOR)
    product = make_product()
    header = move("IN", (product.id, 5, 1.0))

    with pytest.raises(Forbidden):
        ledger_service.delete_movement(db, header.id, auditor.id)
    with pytest.raises(Forbidden):
        ledger_service.delete_movement_detail(db, header.details[0].id, auditor.id)
    with pytest.raises(Forbidden):
        ledger_service.update_movement(
            db, header.id, auditor.id, "IN", "", [MovementLine(product_id=product.id, quantity=1, unit_cost=1.0)]
        )


def test_unknown_actor_is_forbidden(db, make_product):
    product = make_product()
    line = [MovementLine(product_id=product.id, quantity=1, unit_cost=1.0)]

    with pytest.raises(Forbidden):
        ledger_service.create_movement(db, "ghost", "IN", "", line)
    with pytest.raises(ValidationError):
        ledger_service.create_movement(db, "", "IN", "", line)
