"""Sessions racing for the last units of stock, for the same part, and for a new number sequence.

These run against a file-backed SQLite database so that each session has its own
connection and sees only what the other has committed.
"""
import re
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from servicedesk.errors import InsufficientStock, InvalidStateTransition
from servicedesk.models.inventory import StockMovement
from servicedesk.models.org import Base
from servicedesk.models.part_usage import PartUsage
from servicedesk.models.reference import DocumentSequence
from servicedesk.models.service_ticket import ServiceTicket
from servicedesk.models.immutability import register_immutability_listeners
from servicedesk.services import parts_ledger, stock_ledger
from servicedesk.services.collaborators import Collaborators, SequenceNumberGenerator
from servicedesk.services.commands import AddPartCommand
from servicedesk.services.tickets import TicketService
from tests.test_utils_seed import seed_shop, create_command, stock_of, movements_for


@pytest.fixture()
def file_engine(tmp_path):
    eng = create_engine(
        f'sqlite+pysqlite:///{tmp_path / "desk.db"}',
        future=True,
        connect_args={'check_same_thread': False, 'timeout': 30},
    )
    Base.metadata.create_all(eng)
    register_immutability_listeners()
    yield eng
    eng.dispose()


@pytest.fixture()
def factory(file_engine):
    return sessionmaker(bind=file_engine, expire_on_commit=False, autoflush=False)


def _two_pending_spares(factory, clock):
    """One screen in stock, two tickets each waiting on it as an unapproved spare."""
    s = factory()
    shop = seed_shop(s, screen_stock=1)
    service = TicketService(s, clock=clock)
    tickets = []
    for _ in range(2):
        ticket = service.create_ticket(shop.scope, create_command(shop))
        part = service.add_part(shop.scope, AddPartCommand(ticket.id, shop.screen.id, 1, 5000, is_extra_spare=True))
        tickets.append((ticket.id, part.id))
    s.close()
    return shop, tickets


def test_second_approval_of_last_unit_is_refused(factory, clock):
    shop, [(t1, p1), (t2, p2)] = _two_pending_spares(factory, clock)
    a, b = factory(), factory()
    svc_a, svc_b = TicketService(a, clock=clock), TicketService(b, clock=clock)
    # both sides load their ticket before either approves
    svc_a.get_ticket(shop.scope, t1)
    svc_b.get_ticket(shop.scope, t2)

    svc_a.approve_part(shop.scope, t1, p1, PartUsage.APPROVAL_CUSTOMER)
    with pytest.raises(InsufficientStock) as exc:
        svc_b.approve_part(shop.scope, t2, p2, PartUsage.APPROVAL_CUSTOMER)
    assert exc.value.available == 0
    assert exc.value.required == 1

    check = factory()
    assert stock_of(check, shop.screen) == 0
    assert len(movements_for(check, shop.screen)) == 1
    assert check.get(PartUsage, p2).is_approved is False
    for s in (a, b, check):
        s.close()


def test_conditional_decrement_holds_without_read_check(factory, clock, monkeypatch):
    shop, [(t1, p1), (t2, p2)] = _two_pending_spares(factory, clock)
    a, b = factory(), factory()
    TicketService(a, clock=clock).approve_part(shop.scope, t1, p1, PartUsage.APPROVAL_PHONE)

    # pretend the availability read happened before the other approval committed
    monkeypatch.setattr(parts_ledger, '_require_available', lambda session, inventory, required: None)
    with pytest.raises(InsufficientStock):
        TicketService(b, clock=clock).approve_part(shop.scope, t2, p2, PartUsage.APPROVAL_PHONE)

    check = factory()
    assert stock_of(check, shop.screen) == 0
    assert [m.new_qty for m in movements_for(check, shop.screen)] == [0]
    for s in (a, b, check):
        s.close()


def test_parallel_decrements_never_oversell(factory):
    s = factory()
    shop = seed_shop(s, screen_stock=3)
    inventory_id, actor_id = shop.screen.id, shop.admin.id
    s.close()

    def take_one(_):
        session = factory()
        try:
            stock_ledger.adjust(session, inventory_id, -1, StockMovement.TYPE_SERVICE_USE, actor_id)
            session.commit()
            return True
        except InsufficientStock:
            session.rollback()
            return False
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(take_one, range(6)))

    assert results.count(True) == 3
    check = factory()
    assert stock_of(check, shop.screen) == 0
    assert sorted(m.new_qty for m in movements_for(check, shop.screen)) == [0, 1, 2]
    check.close()


def test_same_part_cannot_be_approved_twice_by_stale_sessions(factory, clock):
    s = factory()
    shop = seed_shop(s, screen_stock=5)
    service = TicketService(s, clock=clock)
    ticket = service.create_ticket(shop.scope, create_command(shop))
    part = service.add_part(shop.scope, AddPartCommand(ticket.id, shop.screen.id, 1, 5000, is_extra_spare=True))
    ticket_id, part_id = ticket.id, part.id
    s.close()

    a, b = factory(), factory()
    svc_a, svc_b = TicketService(a, clock=clock), TicketService(b, clock=clock)
    # b holds a copy of the part that still reads as unapproved
    held = svc_b.get_ticket(shop.scope, ticket_id)
    assert [p.is_approved for p in held.parts] == [False]

    svc_a.approve_part(shop.scope, ticket_id, part_id, PartUsage.APPROVAL_CUSTOMER)
    with pytest.raises(InvalidStateTransition):
        svc_b.approve_part(shop.scope, ticket_id, part_id, PartUsage.APPROVAL_PHONE)

    check = factory()
    assert stock_of(check, shop.screen) == 4
    assert [(m.movement_type, m.quantity) for m in movements_for(check, shop.screen)] == [('SERVICE_USE', 1)]
    assert check.get(PartUsage, part_id).approval_method == PartUsage.APPROVAL_CUSTOMER
    for sess in (a, b, check):
        sess.close()


def test_warranty_approval_races_regular_approval(factory, clock):
    s = factory()
    shop = seed_shop(s, screen_stock=5)
    service = TicketService(s, clock=clock)
    ticket = service.create_ticket(shop.scope, create_command(
        shop, is_warranty_repair=True, warranty_reason='Screen replaced last month'))
    part = service.add_part(shop.scope, AddPartCommand(ticket.id, shop.screen.id, 2, 5000, is_extra_spare=True))
    ticket_id, part_id = ticket.id, part.id
    s.close()

    a, b = factory(), factory()
    svc_a, svc_b = TicketService(a, clock=clock), TicketService(b, clock=clock)
    svc_b.get_ticket(shop.scope, ticket_id).parts
    svc_a.approve_part_for_warranty(shop.scope, ticket_id, part_id)
    with pytest.raises(InvalidStateTransition):
        svc_b.approve_part(shop.scope, ticket_id, part_id, PartUsage.APPROVAL_IN_PERSON)

    check = factory()
    assert stock_of(check, shop.screen) == 3
    assert check.get(PartUsage, part_id).approval_method == PartUsage.APPROVAL_WARRANTY
    for sess in (a, b, check):
        sess.close()


class _CreateElsewhereFirst(SequenceNumberGenerator):
    """After the first lookup finds no sequence row, another session creates and commits a ticket."""

    def __init__(self, factory, shop, clock):
        super().__init__()
        self.factory, self.shop, self.clock = factory, shop, clock
        self.raced = False

    def generate(self, session, company_id, document_type, branch_id):
        number = super().generate(session, company_id, document_type, branch_id)
        if not self.raced:
            self.raced = True
            other = self.factory()
            TicketService(other, clock=self.clock).create_ticket(self.shop.scope, create_command(self.shop))
            other.close()
        return number


def test_first_ticket_of_year_survives_concurrent_sequence_insert(factory, clock):
    s = factory()
    shop = seed_shop(s)
    s.close()

    a = factory()
    racing = _CreateElsewhereFirst(factory, shop, clock)
    service = TicketService(a, clock=clock, collaborators=Collaborators(numbers=racing))
    ticket = service.create_ticket(shop.scope, create_command(shop))
    assert racing.raced
    a.close()

    check = factory()
    numbers = check.execute(select(ServiceTicket.ticket_number).order_by(ServiceTicket.id)).scalars().all()
    assert len(numbers) == 2
    assert numbers[0].endswith('-000001')
    assert numbers[1] == ticket.ticket_number
    assert re.search(r'-000002-\d{2}$', ticket.ticket_number)
    assert check.execute(select(DocumentSequence.next_value)).scalars().all() == [3]
    check.close()
