"""
Shared fixtures for the gig ledger test suite

Key components:
1. A throwaway SQLite database per test (file-backed so concurrent sessions see each other)
2. FakeGateway and EventRecorder from the ledger test foundation
3. Fully wired services plus fixtures that drive a conversation to an agreed price
"""

import logging

import pytest
import pytest_asyncio

from database import Database
from services.application_tracker import ApplicationTracker
from services.escrow_orchestrator import EscrowOrchestrator
from services.event_bus import EventBus
from services.negotiation_engine import NegotiationEngine
from services.wallet_service import WalletService
from tests.ledger_test_foundation import FREELANCER, HIRING, EventRecorder, FakeGateway

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)
    await database.create_tables()
    yield database
    await database.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def event_bus(recorder):
    bus = EventBus()
    bus.subscribe(recorder)
    return bus


@pytest.fixture
def wallets(db, event_bus, gateway):
    return WalletService(db, event_bus, gateway)


@pytest.fixture
def negotiations(db, event_bus):
    return NegotiationEngine(db, event_bus)


@pytest.fixture
def applications(db, event_bus):
    return ApplicationTracker(db, event_bus)


@pytest.fixture
def escrow(db, event_bus, gateway, wallets, applications):
    return EscrowOrchestrator(db, event_bus, gateway, wallets, applications)


@pytest_asyncio.fixture
async def conversation(negotiations):
    return await negotiations.open_conversation(
        FREELANCER.user_id, HIRING.user_id, gig_id="gig_1", title="Logo design"
    )


@pytest_asyncio.fixture
async def agreed_conversation(negotiations, conversation):
    """Freelancer proposes 5000, hiring counters 4500, freelancer accepts"""
    await negotiations.propose(conversation.id, FREELANCER, 5000)
    await negotiations.counter(conversation.id, HIRING, 4500)
    await negotiations.accept(conversation.id, FREELANCER)
    return conversation


@pytest_asyncio.fixture
async def accepted_application(applications):
    await applications.submit_application("gig_1", FREELANCER, proposed_rate=5000, iterations=3)
    return await applications.accept_application("gig_1", FREELANCER.user_id)
