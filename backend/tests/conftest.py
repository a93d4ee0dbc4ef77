"""Shared fixtures: a throwaway sqlite file per test and a recording event bus."""

from datetime import timedelta
from decimal import Decimal

import pytest

from resolution import (
    BetEvent, BetType, EventDispatcher, ResolutionConfig, ResolutionCoordinator, StakeType,
)
from resolution.database import Database
from resolution.models import utc_now

STARTING_BALANCE = Decimal("100.00")


@pytest.fixture
def database(tmp_path):
    db = Database(str(tmp_path / "bets.db"))
    db.init_database()
    return db


@pytest.fixture
def events():
    """Every event published during the test, in order."""
    return []


@pytest.fixture
def dispatcher(events):
    dispatcher = EventDispatcher()
    dispatcher.subscribe(BetEvent, events.append)
    return dispatcher


@pytest.fixture
def config():
    return ResolutionConfig()


@pytest.fixture
def coordinator(database, dispatcher, config):
    return ResolutionCoordinator(database=database, dispatcher=dispatcher, config=config)


@pytest.fixture
def funded(coordinator):
    """Users with a starting balance."""
    users = ["alice", "bob", "carol", "dave"]
    for user_id in users:
        coordinator.deposit(user_id, STARTING_BALANCE)
    return users


@pytest.fixture
def make_bet(coordinator):
    """Factory for bets with sensible defaults."""
    def _make_bet(**overrides):
        params = {
            "title": "Will it rain on Saturday?",
            "creator_id": "alice",
            "bet_type": BetType.BINARY,
            "resolver_ids": ["judge1", "judge2"],
            "deadline": utc_now() + timedelta(days=1),
            "stake_type": StakeType.CREDIT,
            "stake_amount": Decimal("10.00"),
        }
        params.update(overrides)
        return coordinator.create_bet(**params)
    return _make_bet