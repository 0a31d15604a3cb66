"""
Shared fixtures for the lending core test suite
"""

import pytest

from core_lending.agreements import UserIdentity
from core_lending.storage import InMemoryStorage, SQLiteStorage
from core_lending.system import LendingSystem


BORROWER = UserIdentity(id="borrower-1", name="Asha Rao", email="asha@example.com")
LENDER = UserIdentity(id="lender-1", name="Vikram Shah", email="vikram@example.com")
OTHER_LENDER = UserIdentity(id="lender-2", name="Meera Iyer", email="meera@example.com")


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Each storage backend that supports atomic conditional updates"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(":memory:")
    yield backend
    backend.close()


@pytest.fixture
def system():
    """Lending system on in-memory storage"""
    lending_system = LendingSystem(storage=InMemoryStorage())
    yield lending_system
    lending_system.close()


@pytest.fixture
def borrower():
    return BORROWER


@pytest.fixture
def lender():
    return LENDER


@pytest.fixture
def other_lender():
    return OTHER_LENDER
