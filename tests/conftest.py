import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.core.logging import configure_logging
from app.database import build_engine, build_session_factory, init_db
from app.models.message_queue import QueuedMessage
from app.models.shop import User, Customer, Device, DeviceType, Brand, DeviceModel, ServiceType
from app.repositories.app_settings import SqlSettingsStore
from app.repositories.message_queue import SqlMessageQueueStore
from app.repositories.notifications import SqlNotificationStore
from app.services.catalog import ensure_default_catalog
from app.services.notification import NotificationService
from app.utils.time import utcnow

ADMIN_ID = uuid.UUID("123e4567-e89b-12d3-a456-426614174000")
TECHNICIAN_ID = uuid.UUID("123e4567-e89b-12d3-a456-426614174001")


@pytest.fixture(scope="session", autouse=True)
def logging_setup():
    configure_logging(level="DEBUG")

@pytest.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'notifications.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)

@pytest.fixture
def queue_store(session_factory):
    return SqlMessageQueueStore(session_factory, default_max_attempts=3)

@pytest.fixture
def notification_store(session_factory):
    return SqlNotificationStore(session_factory)

@pytest.fixture
def settings_store(session_factory):
    return SqlSettingsStore(session_factory)

@pytest.fixture
async def catalog(session_factory):
    await ensure_default_catalog(session_factory)

@pytest.fixture
async def users(session_factory):
    async with session_factory() as session:
        session.add_all([
            User(id=ADMIN_ID, username="admin", first_name="Abebe", last_name="Kebede",
                 email="admin@example.com", phone="0911123456", role="admin"),
            User(id=TECHNICIAN_ID, username="tech", first_name="Sara", last_name="Tesfaye",
                 email="tech@example.com", phone="0911123457", role="technician"),
        ])
        await session.commit()
    return {"admin": ADMIN_ID, "technician": TECHNICIAN_ID}

@pytest.fixture
async def device(session_factory):
    device_id = uuid.uuid4()
    async with session_factory() as session:
        customer = Customer(id=uuid.uuid4(), name="Almaz Bekele", phone="0912345678")
        device_type = DeviceType(id=uuid.uuid4(), name="Laptop")
        brand = Brand(id=uuid.uuid4(), name="Lenovo")
        model = DeviceModel(id=uuid.uuid4(), name="ThinkPad T14")
        service_type = ServiceType(id=uuid.uuid4(), name="Screen Replacement")
        session.add_all([customer, device_type, brand, model, service_type])
        session.add(Device(
            id=device_id,
            receipt_number="RCP-0001",
            customer_id=customer.id,
            device_type_id=device_type.id,
            brand_id=brand.id,
            model_id=model.id,
            service_type_id=service_type.id,
            problem_description="Cracked screen",
            status="in_progress",
            total_cost=2500,
        ))
        await session.commit()
    return device_id

@pytest.fixture
def notification_service(notification_store, queue_store):
    return NotificationService(notification_store, queue_store=queue_store)

@pytest.fixture
def age_messages(session_factory):
    """Spread ``created_at`` one minute apart, in the order given, so ordering is deterministic."""
    async def _age(messages):
        base = utcnow() - timedelta(hours=1)
        async with session_factory() as session:
            for i, message in enumerate(messages):
                await session.execute(
                    update(QueuedMessage)
                    .where(QueuedMessage.id == message.id)
                    .values(created_at=base + timedelta(minutes=i))
                )
            await session.commit()
    return _age
