import threading
import uuid
from decimal import Decimal
from itertools import product

import pytest
from sqlalchemy import select

from app.surplus.core.error_catalog import AppError, ErrorCatalog
from app.surplus.db.models import AuditLogEntry, Material, MaterialAllocation, Notification, TransferRequest
from app.surplus.repos.materials import MaterialRepository
from app.surplus.services.audit import AuditRecorder
from app.surplus.services.notifications import Notifier
from app.surplus.services.transfers import TransferDraft, TransferListFilters, TransferWorkflowEngine, WorkflowResult
from tests.surplus_helpers import PURPOSE, build_exchange, create_material, identity_for


def _requester(exchange):
    return identity_for(exchange.requester_user, exchange.requester)


def _owner_admin(exchange):
    return identity_for(exchange.owner_admin, exchange.owner)


def _request(engine, exchange, material, quantity="10", purpose=PURPOSE, comment=None):
    result = engine.create_transfer_request(
        _requester(exchange),
        TransferDraft(
            material_id=str(material.id),
            quantity_requested=Decimal(quantity),
            purpose=purpose,
            comment=comment,
        ),
    )
    assert result.ok, (result.error, result.details)
    return result.transfer


def _material_state(db_session, material_id):
    db_session.expire_all()
    material = db_session.get(Material, material_id)
    return material.quantity, material.status


def test_create_request_leaves_inventory_untouched(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    engine = TransferWorkflowEngine(db_session)

    transfer = _request(engine, exchange, material, "10", comment="Needed for the pilot line")

    assert transfer.status == "PENDING"
    assert transfer.from_organization_id == exchange.owner.id
    assert transfer.to_organization_id == exchange.requester.id
    assert transfer.requested_by == exchange.requester_user.id
    assert transfer.quantity_requested == Decimal("10")
    comments = engine.get_comments(transfer)
    assert [(row.comment_type, row.comment) for row in comments] == [("REQUEST", "Needed for the pilot line")]
    assert _material_state(db_session, material.id) == (Decimal("100"), "AVAILABLE")
    assert MaterialRepository(db_session).get_allocations(material.id) == []


@pytest.mark.parametrize(
    "case, expected",
    [
        ("missing_material", "MATERIAL_NOT_FOUND"),
        ("other_category", "FORBIDDEN"),
        ("own_material", "VALIDATION_ERROR"),
        ("zero_quantity", "VALIDATION_ERROR"),
        ("short_purpose", "VALIDATION_ERROR"),
        ("not_surplus", "MATERIAL_UNAVAILABLE"),
        ("too_much", "INSUFFICIENT_QUANTITY"),
    ],
)
def test_create_request_validation(client, db_session, case, expected):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    private = create_material(db_session, exchange.owner, exchange.owner_admin, is_surplus=False)
    identity = _requester(exchange)
    draft = TransferDraft(material_id=str(material.id), quantity_requested=Decimal("10"), purpose=PURPOSE)

    if case == "missing_material":
        draft.material_id = str(uuid.uuid4())
    elif case == "other_category":
        identity = identity_for(exchange.outsider_admin, exchange.outsider)
    elif case == "own_material":
        identity = _owner_admin(exchange)
    elif case == "zero_quantity":
        draft.quantity_requested = Decimal("0")
    elif case == "short_purpose":
        draft.purpose = "need it"
    elif case == "not_surplus":
        draft.material_id = str(private.id)
    elif case == "too_much":
        draft.quantity_requested = Decimal("100.5")

    result = TransferWorkflowEngine(db_session).create_transfer_request(identity, draft)

    assert not result.ok
    assert result.error.code == expected
    assert db_session.scalars(select(TransferRequest)).all() == []


def _drive(engine, exchange, material, status):
    transfer = _request(engine, exchange, material, "1")
    transfer_id = str(transfer.id)
    if status in {"APPROVED", "COMPLETED"}:
        assert engine.approve(_owner_admin(exchange), transfer_id).ok
    if status == "COMPLETED":
        assert engine.complete(_requester(exchange), transfer_id).ok
    if status == "REJECTED":
        assert engine.reject(_owner_admin(exchange), transfer_id, "not this quarter").ok
    if status == "CANCELLED":
        assert engine.cancel(_requester(exchange), transfer_id).ok
    return transfer_id


def _attempt(engine, exchange, transition, transfer_id) -> WorkflowResult:
    if transition == "approve":
        return engine.approve(_owner_admin(exchange), transfer_id)
    if transition == "reject":
        return engine.reject(_owner_admin(exchange), transfer_id, "not needed anymore")
    if transition == "cancel":
        return engine.cancel(_requester(exchange), transfer_id)
    return engine.complete(_requester(exchange), transfer_id)


ALLOWED = {
    ("PENDING", "approve"): "APPROVED",
    ("PENDING", "reject"): "REJECTED",
    ("PENDING", "cancel"): "CANCELLED",
    ("APPROVED", "complete"): "COMPLETED",
    ("APPROVED", "cancel"): "CANCELLED",
}


@pytest.mark.parametrize(
    "status, transition",
    list(product(["PENDING", "APPROVED", "REJECTED", "COMPLETED", "CANCELLED"], ["approve", "reject", "cancel", "complete"])),
)
def test_only_listed_transitions_succeed(client, db_session, status, transition):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    engine = TransferWorkflowEngine(db_session)
    transfer_id = _drive(engine, exchange, material, status)
    db_session.expire_all()
    before = db_session.get(TransferRequest, uuid.UUID(transfer_id))
    updated_at = before.updated_at
    version = before.version

    result = _attempt(engine, exchange, transition, transfer_id)

    db_session.expire_all()
    after = db_session.get(TransferRequest, uuid.UUID(transfer_id))
    if (status, transition) in ALLOWED:
        assert result.ok
        assert after.status == ALLOWED[(status, transition)]
    else:
        assert not result.ok
        assert result.error.code == "INVALID_TRANSFER_STATUS"
        assert result.retryable is True
        assert after.status == status
        assert after.updated_at == updated_at
        assert after.version == version


@pytest.mark.parametrize("status", ["REJECTED", "COMPLETED", "CANCELLED"])
def test_terminal_states_fail_the_same_way_every_time(client, db_session, status):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    engine = TransferWorkflowEngine(db_session)
    transfer_id = _drive(engine, exchange, material, status)
    quantity_before = _material_state(db_session, material.id)

    for transition in ["approve", "reject", "cancel", "complete"] * 2:
        result = _attempt(engine, exchange, transition, transfer_id)
        assert not result.ok
        assert result.error.code == "INVALID_TRANSFER_STATUS"

    assert _material_state(db_session, material.id) == quantity_before


def test_reject_requires_comment(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin)
    engine = TransferWorkflowEngine(db_session)
    transfer = _request(engine, exchange, material)

    result = engine.reject(_owner_admin(exchange), str(transfer.id), "   ")

    assert not result.ok
    assert result.error.code == "VALIDATION_ERROR"
    db_session.expire_all()
    assert db_session.get(TransferRequest, transfer.id).status == "PENDING"


def test_unknown_transfer_is_not_found(client, db_session):
    exchange = build_exchange(db_session)
    engine = TransferWorkflowEngine(db_session)

    for result in [
        engine.approve(_owner_admin(exchange), str(uuid.uuid4())),
        engine.cancel(_requester(exchange), "not-a-uuid"),
    ]:
        assert not result.ok
        assert result.error.code == "TRANSFER_NOT_FOUND"
        with pytest.raises(AppError):
            result.unwrap()


def test_approval_checks_gate_before_status(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin)
    engine = TransferWorkflowEngine(db_session)
    transfer_id = _drive(engine, exchange, material, "COMPLETED")

    result = engine.approve(_requester(exchange), transfer_id)

    assert result.error.code == "FORBIDDEN"
    assert result.details == {"action": "APPROVE_TRANSFER", "rule": "cross_organization_mutation"}


def test_approval_fails_when_material_no_longer_eligible(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin)
    engine = TransferWorkflowEngine(db_session)
    transfer = _request(engine, exchange, material)
    material = db_session.get(Material, material.id)
    material.is_surplus = False
    db_session.commit()

    result = engine.approve(_owner_admin(exchange), str(transfer.id))

    assert result.error.code == "MATERIAL_UNAVAILABLE"
    db_session.expire_all()
    assert db_session.get(TransferRequest, transfer.id).status == "PENDING"


def test_insufficient_quantity_leaves_request_pending(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="50")
    engine = TransferWorkflowEngine(db_session)
    first = _request(engine, exchange, material, "40")
    second = _request(engine, exchange, material, "40")

    assert engine.approve(_owner_admin(exchange), str(first.id)).ok
    result = engine.approve(_owner_admin(exchange), str(second.id))

    assert result.error.code == "INSUFFICIENT_QUANTITY"
    assert result.retryable is True
    assert result.details == {"available": Decimal("10"), "requested": Decimal("40")}
    db_session.expire_all()
    assert db_session.get(TransferRequest, second.id).status == "PENDING"
    assert _material_state(db_session, material.id) == (Decimal("10"), "AVAILABLE")


def test_partial_allocations_share_one_material(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    engine = TransferWorkflowEngine(db_session)
    first = _request(engine, exchange, material, "30")
    second = _request(engine, exchange, material, "50")
    third = _request(engine, exchange, material, "20")

    for transfer in [first, second, third]:
        assert engine.approve(_owner_admin(exchange), str(transfer.id)).ok
    assert _material_state(db_session, material.id) == (Decimal("0"), "RESERVED")

    assert engine.cancel(_requester(exchange), str(second.id), "Plans changed").ok
    assert _material_state(db_session, material.id) == (Decimal("50"), "AVAILABLE")

    assert engine.complete(_requester(exchange), str(first.id)).ok
    assert _material_state(db_session, material.id) == (Decimal("50"), "AVAILABLE")

    allocated = MaterialRepository(db_session).allocated_total(material.id)
    assert allocated == Decimal("50")
    assert allocated + Decimal("50") == Decimal("100")


def test_complete_creates_received_material(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="25", estimated_cost="3.5")
    engine = TransferWorkflowEngine(db_session)
    transfer = _request(engine, exchange, material, "25")
    assert engine.approve(_owner_admin(exchange), str(transfer.id)).ok

    result = engine.complete(_requester(exchange), str(transfer.id), "Received in good order")

    assert result.ok
    assert result.transfer.status == "COMPLETED"
    assert result.transfer.completed_at is not None
    assert _material_state(db_session, material.id) == (Decimal("0"), "TRANSFERRED")
    received = db_session.scalars(select(Material).where(Material.source_transfer_id == transfer.id)).one()
    assert received.organization_id == exchange.requester.id
    assert received.quantity == received.listed_quantity == Decimal("25")
    assert received.is_surplus is False
    assert received.status == "AVAILABLE"
    assert received.estimated_cost == Decimal("3.5")
    assert received.notes == "Transferred from Owner x"
    comment_types = [row.comment_type for row in engine.get_comments(result.transfer)]
    assert comment_types == ["REQUEST", "APPROVAL", "COMPLETION"]


def test_owner_admin_may_complete_and_cancel(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    engine = TransferWorkflowEngine(db_session)
    completed_id = _drive(engine, exchange, material, "APPROVED")
    cancelled_id = _drive(engine, exchange, material, "APPROVED")

    assert engine.complete(_owner_admin(exchange), completed_id).ok
    assert engine.cancel(_owner_admin(exchange), cancelled_id).ok

    colleague = identity_for(exchange.owner_user, exchange.owner)
    pending_id = _drive(engine, exchange, material, "PENDING")
    result = engine.cancel(colleague, pending_id)
    assert result.error.code == "FORBIDDEN"


@pytest.mark.parametrize("quantity, requests, each, expected_ok", [("100", 2, "60", 1), ("100", 4, "30", 3)])
def test_concurrent_approvals_never_over_allocate(client, db_session, session_factory, quantity, requests, each, expected_ok):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity=quantity)
    engine = TransferWorkflowEngine(db_session)
    transfer_ids = [str(_request(engine, exchange, material, each).id) for _ in range(requests)]
    approver = _owner_admin(exchange)
    barrier = threading.Barrier(requests)
    outcomes = {}

    def approve(transfer_id):
        db = session_factory()
        try:
            barrier.wait(timeout=10)
            result = TransferWorkflowEngine(db).approve(approver, transfer_id)
            outcomes[transfer_id] = "ok" if result.ok else result.error.code
        finally:
            db.close()

    threads = [threading.Thread(target=approve, args=(transfer_id,)) for transfer_id in transfer_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(outcomes) == requests
    assert list(outcomes.values()).count("ok") == expected_ok
    assert set(outcomes.values()) <= {"ok", "INSUFFICIENT_QUANTITY"}
    remaining = Decimal(quantity) - Decimal(each) * expected_ok
    assert _material_state(db_session, material.id)[0] == remaining
    allocated = MaterialRepository(db_session).allocated_total(material.id)
    assert allocated + remaining == Decimal(quantity)
    statuses = db_session.scalars(select(TransferRequest.status)).all()
    assert statuses.count("APPROVED") == expected_ok
    assert statuses.count("PENDING") == requests - expected_ok


def _race(session_factory, *calls):
    barrier = threading.Barrier(len(calls))
    outcomes = []

    def run(call):
        db = session_factory()
        try:
            barrier.wait(timeout=10)
            result = call(TransferWorkflowEngine(db))
            outcomes.append("ok" if result.ok else result.error.code)
        finally:
            db.close()

    threads = [threading.Thread(target=run, args=(call,)) for call in calls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return sorted(outcomes)


def test_losing_approval_on_exhausted_material_is_insufficient(client, db_session, session_factory):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    engine = TransferWorkflowEngine(db_session)
    whole = str(_request(engine, exchange, material, "100").id)
    part = str(_request(engine, exchange, material, "60").id)
    approver = _owner_admin(exchange)

    outcomes = _race(
        session_factory,
        lambda racer: racer.approve(approver, whole),
        lambda racer: racer.approve(approver, part),
    )

    assert outcomes == ["INSUFFICIENT_QUANTITY", "ok"]
    quantity, _ = _material_state(db_session, material.id)
    assert quantity in {Decimal("0"), Decimal("40")}
    assert MaterialRepository(db_session).allocated_total(material.id) + quantity == Decimal("100")


def test_approval_after_full_reservation_reports_insufficient_quantity(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="50")
    engine = TransferWorkflowEngine(db_session)
    first = str(_request(engine, exchange, material, "50").id)
    second = str(_request(engine, exchange, material, "5").id)
    assert engine.approve(_owner_admin(exchange), first).ok
    assert _material_state(db_session, material.id) == (Decimal("0"), "RESERVED")

    result = engine.approve(_owner_admin(exchange), second)

    assert result.error.code == "INSUFFICIENT_QUANTITY"
    assert result.retryable is True
    assert db_session.get(TransferRequest, uuid.UUID(second)).status == "PENDING"


def test_approve_and_reject_race_on_one_request(client, db_session, session_factory):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    transfer_id = str(_request(TransferWorkflowEngine(db_session), exchange, material, "10").id)
    approver = _owner_admin(exchange)

    outcomes = _race(
        session_factory,
        lambda racer: racer.approve(approver, transfer_id),
        lambda racer: racer.reject(approver, transfer_id, "duplicate request"),
    )

    assert outcomes == ["INVALID_TRANSFER_STATUS", "ok"]
    db_session.expire_all()
    transfer = db_session.get(TransferRequest, uuid.UUID(transfer_id))
    assert transfer.status in {"APPROVED", "REJECTED"}
    decisions = db_session.scalars(
        select(AuditLogEntry.action).where(
            AuditLogEntry.entity_id == transfer_id,
            AuditLogEntry.action.in_(["TRANSFER_APPROVED", "TRANSFER_REJECTED"]),
        )
    ).all()
    assert decisions == [f"TRANSFER_{transfer.status}"]


def test_cancel_after_sibling_completes_returns_stock_to_surplus(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    engine = TransferWorkflowEngine(db_session)
    completed = str(_request(engine, exchange, material, "60").id)
    cancelled = str(_request(engine, exchange, material, "40").id)
    assert engine.approve(_owner_admin(exchange), completed).ok
    assert engine.approve(_owner_admin(exchange), cancelled).ok

    assert engine.complete(_requester(exchange), completed).ok
    assert _material_state(db_session, material.id) == (Decimal("0"), "RESERVED")

    assert engine.cancel(_requester(exchange), cancelled).ok
    assert _material_state(db_session, material.id) == (Decimal("40"), "AVAILABLE")
    assert db_session.get(Material, material.id).is_surplus is True
    assert _request(engine, exchange, material, "10").status == "PENDING"


def test_last_completion_marks_material_transferred(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    engine = TransferWorkflowEngine(db_session)
    first = str(_request(engine, exchange, material, "60").id)
    second = str(_request(engine, exchange, material, "40").id)
    for transfer_id in (first, second):
        assert engine.approve(_owner_admin(exchange), transfer_id).ok

    assert engine.complete(_requester(exchange), first).ok
    assert engine.complete(_requester(exchange), second).ok

    assert _material_state(db_session, material.id) == (Decimal("0"), "TRANSFERRED")
    assert db_session.get(Material, material.id).is_surplus is False


class FailingAuditRecorder(AuditRecorder):
    def __init__(self, db, failing_action):
        super().__init__(db)
        self.failing_action = failing_action

    def record(self, payload):
        if payload.action == self.failing_action:
            raise AppError(ErrorCatalog.AUDIT_WRITE_FAILED, details={"action": payload.action})
        return super().record(payload)


def test_audit_failure_rolls_back_the_transition(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    transfer = _request(TransferWorkflowEngine(db_session), exchange, material, "10")
    engine = TransferWorkflowEngine(db_session, audit=FailingAuditRecorder(db_session, "TRANSFER_APPROVED"))

    with pytest.raises(AppError) as exc:
        engine.approve(_owner_admin(exchange), str(transfer.id))

    assert exc.value.error.code == "AUDIT_WRITE_FAILED"
    assert exc.value.retryable is True
    db_session.expire_all()
    assert db_session.get(TransferRequest, transfer.id).status == "PENDING"
    assert _material_state(db_session, material.id) == (Decimal("100"), "AVAILABLE")
    assert db_session.scalars(select(MaterialAllocation)).all() == []
    reserved = db_session.scalars(select(AuditLogEntry).where(AuditLogEntry.action == "MATERIAL_RESERVED")).all()
    assert reserved == []


def test_notifier_interface_cannot_be_instantiated():
    with pytest.raises(TypeError):
        Notifier()


class BrokenNotifier(Notifier):
    def __init__(self):
        self.calls = []

    def notify_transition(self, transfer, event):
        self.calls.append(event)
        raise RuntimeError("notification store unavailable")


def test_notifier_failure_does_not_roll_back(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    notifier = BrokenNotifier()
    engine = TransferWorkflowEngine(db_session, notifier=notifier)
    transfer = _request(engine, exchange, material, "10")

    result = engine.approve(_owner_admin(exchange), str(transfer.id))

    assert result.ok
    assert notifier.calls == ["REQUESTED", "APPROVED"]
    db_session.expire_all()
    assert db_session.get(TransferRequest, transfer.id).status == "APPROVED"
    assert _material_state(db_session, material.id) == (Decimal("90"), "AVAILABLE")


def test_transitions_notify_the_right_people(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    engine = TransferWorkflowEngine(db_session)
    transfer = _request(engine, exchange, material, "10")

    owner_admin_notes = db_session.scalars(select(Notification).where(Notification.user_id == exchange.owner_admin.id)).all()
    assert [note.title for note in owner_admin_notes] == ["New transfer request"]
    assert owner_admin_notes[0].related_entity_id == transfer.id
    assert db_session.scalars(select(Notification).where(Notification.user_id == exchange.owner_user.id)).all() == []

    assert engine.approve(_owner_admin(exchange), str(transfer.id)).ok
    requester_notes = db_session.scalars(
        select(Notification).where(Notification.organization_id == exchange.requester.id)
    ).all()
    assert {note.user_id for note in requester_notes} == {exchange.requester_admin.id, exchange.requester_user.id}
    assert {note.type for note in requester_notes} == {"success"}
    assert "10 kg of Steel beams" in requester_notes[0].message

    assert engine.cancel(_requester(exchange), str(transfer.id)).ok
    assert len(db_session.scalars(select(Notification)).all()) == 3


def test_list_and_get_transfers_are_party_scoped(client, db_session):
    exchange = build_exchange(db_session)
    material = create_material(db_session, exchange.owner, exchange.owner_admin, quantity="100")
    engine = TransferWorkflowEngine(db_session)
    pending = _request(engine, exchange, material, "5", purpose="Prototype tooling for spring")
    approved_id = _drive(engine, exchange, material, "APPROVED")

    owner = _owner_admin(exchange)
    rows, total = engine.list_transfers(owner, TransferListFilters(direction="incoming"))
    assert total == 2
    rows, total = engine.list_transfers(owner, TransferListFilters(direction="outgoing"))
    assert total == 0

    requester = _requester(exchange)
    rows, total = engine.list_transfers(requester, TransferListFilters(direction="outgoing", status="APPROVED"))
    assert [str(row.id) for row in rows] == [approved_id]
    rows, total = engine.list_transfers(requester, TransferListFilters(q="prototype"))
    assert [row.id for row in rows] == [pending.id]
    rows, total = engine.list_transfers(requester, TransferListFilters(q="steel"))
    assert total == 2

    outsider = identity_for(exchange.outsider_admin, exchange.outsider)
    rows, total = engine.list_transfers(outsider)
    assert total == 0
    with pytest.raises(AppError) as exc:
        engine.get_transfer(outsider, str(pending.id))
    assert exc.value.error.code == "FORBIDDEN"
    assert engine.get_transfer(requester, str(pending.id)).id == pending.id

    for filters in [TransferListFilters(direction="sideways"), TransferListFilters(status="LOST")]:
        with pytest.raises(AppError) as exc:
            engine.list_transfers(owner, filters)
        assert exc.value.error.code == "VALIDATION_ERROR"
    with pytest.raises(AppError):
        engine.list_transfers(owner, page_size=101)
