import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["QUEUE_WORKER_ENABLED"] = "false"

from unittest.mock import Mock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.database import Base  # noqa: E402
from app.models import QueueItem, Tenant  # noqa: E402
from app.services.booking_knowledge import load_booking_knowledge  # noqa: E402


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def tenant(db):
    tenant = Tenant(
        slug="demo-salon",
        name="Demo Salon",
        vertical="salon",
        phone_number_id="1000200030004000",
        owner_phone="15550001111",
        services=[],
    )
    db.add(tenant)
    db.commit()
    return tenant


@pytest.fixture
def make_item(db, tenant):
    """Insert a queue item directly, bypassing ingestion."""

    def _make(
        message_id,
        *,
        sent_at,
        sender="15551234567",
        content="hello",
        status="pending",
        priority="normal",
        created_at=None,
        scheduled_at=None,
        updated_at=None,
        retry_count=0,
        max_retries=3,
    ):
        created_at = created_at or sent_at
        item = QueueItem(
            tenant_id=tenant.id,
            message_id=message_id,
            from_number=sender,
            to_number=tenant.phone_number_id,
            content=content,
            priority=priority,
            status=status,
            retry_count=retry_count,
            max_retries=max_retries,
            scheduled_at=scheduled_at or created_at,
            sent_at=sent_at,
            created_at=created_at,
            updated_at=updated_at or created_at,
        )
        db.add(item)
        db.commit()
        return item

    return _make


@pytest.fixture(autouse=True)
def _fresh_knowledge():
    load_booking_knowledge.cache_clear()
    yield


@pytest.fixture
def build_envelope():
    """WhatsApp Cloud API webhook body with the given message/status objects."""

    def _build(messages=(), statuses=(), phone_number_id="1000200030004000"):
        return {
            "object": "whatsapp_business_account",
            "entry": [
                {
                    "id": "WABA_ID",
                    "changes": [
                        {
                            "field": "messages",
                            "value": {
                                "messaging_product": "whatsapp",
                                "metadata": {
                                    "display_phone_number": "15550009999",
                                    "phone_number_id": phone_number_id,
                                },
                                "contacts": [{"profile": {"name": "Customer"}, "wa_id": "15551234567"}],
                                "messages": list(messages),
                                "statuses": list(statuses),
                            },
                        }
                    ],
                }
            ],
        }

    return _build


@pytest.fixture
def text_event():
    def _event(message_id, body, timestamp, sender="15551234567"):
        return {"from": sender, "id": message_id, "timestamp": str(timestamp), "type": "text", "text": {"body": body}}

    return _event
