import os

# Settings are read once at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-ledgersync-tests")
os.environ.setdefault("QUICKBOOKS_CLIENT_ID", "test-client-id")
os.environ.setdefault("QUICKBOOKS_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("QUICKBOOKS_ENVIRONMENT", "sandbox")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
os.environ.setdefault("SYNC_BATCH_DELAY_SECONDS", "0")

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

from ledgersync.database import Base, SessionLocal, engine
from ledgersync.app.models import (
    QuickBooksConnection, StatementFile, StatementTransaction, User
)
from ledgersync.app.quickbooks.encryption import TokenEncryption


@pytest.fixture
def db():
    """Fresh schema per test on the shared in-memory engine."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def encryption():
    return TokenEncryption()


@pytest.fixture
def user(db):
    user = User(email="owner@example.com", full_name="Test Owner", is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def connection(db, user, encryption):
    connection = QuickBooksConnection(
        user_id=user.id,
        company_id="9130354",
        company_name="Sandbox Company",
        access_token=encryption.encrypt("access-token-1"),
        refresh_token=encryption.encrypt("refresh-token-1"),
        token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        is_active=True,
        connected_at=datetime.now(timezone.utc),
    )
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return connection


@pytest.fixture
def statement_file(db, user):
    statement_file = StatementFile(user_id=user.id, filename="january.pdf")
    db.add(statement_file)
    db.commit()
    db.refresh(statement_file)
    return statement_file


@pytest.fixture
def add_transaction(db, user, statement_file):
    """Factory for statement transactions in the fixture file."""
    def _add(**fields):
        values = {
            "user_id": user.id,
            "file_id": statement_file.id,
            "transaction_date": date(2024, 1, 15),
            "amount": Decimal("-45.67"),
            "description": "CARD PURCHASE",
            "normalized_merchant": None,
            "category": "Groceries",
            "subcategory": None,
            "confidence": 95,
        }
        values.update(fields)
        txn = StatementTransaction(**values)
        db.add(txn)
        db.commit()
        db.refresh(txn)
        return txn

    return _add


@pytest.fixture
def mock_provider():
    provider = Mock()
    provider.get_authorization_url = Mock(return_value="https://appcenter.intuit.com/connect/oauth2?x=1")
    provider.exchange_code_for_token = AsyncMock(return_value={
        "access_token": "access-token-new",
        "refresh_token": "refresh-token-new",
        "expires_in": 3600,
        "token_type": "bearer",
    })
    provider.refresh_access_token = AsyncMock(return_value={
        "access_token": "access-token-2",
        "refresh_token": "refresh-token-2",
        "expires_in": 3600,
    })
    provider.revoke_token = AsyncMock(return_value=True)
    return provider
