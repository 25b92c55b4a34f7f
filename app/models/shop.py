"""Back-office tables owned by the host application.

The notification core only reads them: users for contact details and sender
display names, devices and their catalog entries to enrich device
notifications, app_settings for channel credentials.
"""
from sqlalchemy import Column, String, Text, TIMESTAMP, Numeric, ForeignKey, Uuid
from app.models.notification import Base
from app.utils.time import utcnow
import uuid


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    username = Column(String(100), nullable=False, unique=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    role = Column(String(20), nullable=False, default="technician")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    phone = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)


class DeviceType(Base):
    __tablename__ = "device_types"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)


class Brand(Base):
    __tablename__ = "brands"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)


class DeviceModel(Base):
    __tablename__ = "device_models"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)


class ServiceType(Base):
    __tablename__ = "service_types"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)


class Device(Base):
    __tablename__ = "devices"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    receipt_number = Column(String(50), nullable=True)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=True)
    device_type_id = Column(Uuid, ForeignKey("device_types.id"), nullable=True)
    brand_id = Column(Uuid, ForeignKey("brands.id"), nullable=True)
    model_id = Column(Uuid, ForeignKey("device_models.id"), nullable=True)
    service_type_id = Column(Uuid, ForeignKey("service_types.id"), nullable=True)
    problem_description = Column(Text, nullable=True)
    status = Column(String(30), nullable=False, default="registered")
    total_cost = Column(Numeric(12, 2), nullable=True)
    estimated_completion_date = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=utcnow)


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)
