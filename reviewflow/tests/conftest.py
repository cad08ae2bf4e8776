"""
Shared fixtures: sqlite database, encryption key and seeded businesses/reviews
"""

import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from reviewflow.core.encryption import encrypt_fields, generate_key, init_encryption, reset_encryption
from reviewflow.core.logging import setup_test_logging
from reviewflow.db.database import Base
from reviewflow.db.models import Business, Review, ReviewStatus, GOOGLE_CREDENTIAL_FIELDS, GOOGLE_TOKEN_FIELDS
from reviewflow.tests.fixtures.review_fixtures import OWNER_ID, PLAIN_CREDENTIALS

TEST_ENCRYPTION_KEY = generate_key()


def pytest_configure(config):
    setup_test_logging()


@pytest.fixture(autouse=True)
def encryption():
    """Process-wide encryption with a throwaway key"""
    service = init_encryption(key=TEST_ENCRYPTION_KEY, kid="test", previous_keys={})
    yield service
    reset_encryption()


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'reviewflow_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def test_db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_business(test_db, encryption):
    """Create a business; connected=True stores the encrypted credential bundle and tokens"""
    def _make(plan_id="pro", user_id=OWNER_ID, connected=True):
        business = Business(id=str(uuid.uuid4()), user_id=user_id, name="Sunrise Bakery", plan_id=plan_id)
        if connected:
            encrypted = encrypt_fields(PLAIN_CREDENTIALS, GOOGLE_CREDENTIAL_FIELDS + GOOGLE_TOKEN_FIELDS, encryption)
            for column, value in encrypted.items():
                setattr(business, column, value)
        test_db.add(business)
        test_db.commit()
        return business
    return _make


@pytest.fixture
def business(make_business):
    return make_business()


@pytest.fixture
def make_review(test_db):
    def _make(business, status=ReviewStatus.APPROVED, google_review_id="__auto__", **fields):
        if google_review_id == "__auto__":
            google_review_id = f"g-{uuid.uuid4()}"
        values = {
            "customer_name": "Jane Doe",
            "rating": 5,
            "review_text": "Lovely croissants and friendly staff.",
        }
        values.update(fields)
        review = Review(
            id=str(uuid.uuid4()),
            business_id=business.id,
            google_review_id=google_review_id,
            status=status.value,
            **values,
        )
        test_db.add(review)
        test_db.commit()
        return review
    return _make
