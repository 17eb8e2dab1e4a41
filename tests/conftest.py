"""
Shared test fixtures.

Sets up an isolated test database so tests never touch
the real database. Tables are created before and dropped
after every test, so no test data persists.
"""

from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ledger_core.models import Base, Contact, ContactType, AccountType
from ledger_core.schemas.ledger import AccountCreate
from ledger_core.services.ledger_service import LedgerService


# Use SQLite for tests — no external database needed.
# A file database (rather than :memory:) lets the scheduler
# and operation tests open several sessions on the same data.
TEST_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
)

TestSessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
)


@pytest.fixture(autouse=True)
def setup_database():
    """
    Create all tables before each test, drop them after.

    autouse=True means every test gets this automatically.
    This ensures each test starts with a clean database.
    """
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    """Provide a database session for direct service testing."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def session_factory():
    """Session factory for code that opens its own units of work."""
    return TestSessionLocal


@pytest.fixture
def chart(db_session):
    """
    A small committed chart of accounts.

    Codes are chosen so each account is the default (lowest
    code) of its type.
    """
    service = LedgerService(db_session)

    def make(code, name, account_type, opening_balance="0"):
        return service.create_account(AccountCreate(
            code=code,
            name=name,
            account_type=account_type,
            opening_balance=opening_balance,
        ))

    accounts = SimpleNamespace(
        bank=make("1000", "Operating Bank", AccountType.BANK),
        receivable=make("1200", "Accounts Receivable", AccountType.ACCOUNTS_RECEIVABLE),
        payable=make("2000", "Accounts Payable", AccountType.ACCOUNTS_PAYABLE),
        tax=make("2200", "Sales Tax Payable", AccountType.OTHER_CURRENT_LIABILITIES),
        equity=make("3000", "Owner Equity", AccountType.EQUITY),
        income=make("4000", "Service Income", AccountType.INCOME),
        expense=make("5000", "Office Expenses", AccountType.EXPENSES),
    )
    db_session.commit()
    return accounts


@pytest.fixture
def customer(db_session):
    contact = Contact(name="Acme Corp", contact_type=ContactType.CUSTOMER)
    db_session.add(contact)
    db_session.commit()
    return contact


@pytest.fixture
def vendor(db_session):
    contact = Contact(name="Paper Supplies Ltd", contact_type=ContactType.VENDOR)
    db_session.add(contact)
    db_session.commit()
    return contact
