import os

# main builds a module-level app on import; keep it on the in-memory database
os.environ.setdefault("APP_ENV", "testing")

import pytest
from fastapi.testclient import TestClient

from config import TestingSettings
from main import create_app
from repositories import (
    SQLiteAccountRepository,
    SQLiteOperationTypeRepository,
    SQLiteTransactionRepository,
)
from services import AccountService, TransactionService
from storage import Database


@pytest.fixture
def settings():
    return TestingSettings()


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def db():
    database = Database(":memory:")
    database.migrate()
    SQLiteOperationTypeRepository(database).seed()
    yield database
    database.close()


@pytest.fixture
def account_repo(db):
    return SQLiteAccountRepository(db)


@pytest.fixture
def operation_type_repo(db):
    return SQLiteOperationTypeRepository(db)


@pytest.fixture
def transaction_repo(db):
    return SQLiteTransactionRepository(db)


@pytest.fixture
def account_service(account_repo):
    return AccountService(account_repo)


@pytest.fixture
def transaction_service(transaction_repo, account_repo, operation_type_repo):
    return TransactionService(transaction_repo, account_repo, operation_type_repo)


@pytest.fixture
def create_account(client):
    """Create an account over HTTP and return its id."""

    def _create(document_number: str = "12345678900") -> int:
        response = client.post("/accounts", json={"document_number": document_number})
        assert response.status_code == 201
        return response.json()["account_id"]

    return _create
