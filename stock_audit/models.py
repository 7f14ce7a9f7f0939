from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import CITEXT, INET
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class PrincipalRole(str, Enum):
    SUPERUSER = 'SUPERUSER'
    SUPERVISOR = 'SUPERVISOR'
    SCANNER = 'SCANNER'


class AuditSessionStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'


class RackStatus(str, Enum):
    AVAILABLE = 'AVAILABLE'
    ASSIGNED = 'ASSIGNED'
    READY_FOR_APPROVAL = 'READY_FOR_APPROVAL'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'


class Location(Base):
    __tablename__ = 'locations'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Principal(Base):
    __tablename__ = 'principals'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    email: Mapped[str] = mapped_column(CITEXT(), nullable=False, unique=True)
    full_name: Mapped[str | None] = mapped_column(Text)
    role: Mapped[PrincipalRole] = mapped_column(SQLEnum(PrincipalRole, name='principal_role'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class AuditSession(Base):
    __tablename__ = 'audit_sessions'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('locations.id'), nullable=False)
    status: Mapped[AuditSessionStatus] = mapped_column(
        SQLEnum(AuditSessionStatus, name='audit_session_status'),
        nullable=False,
        default=AuditSessionStatus.ACTIVE,
        server_default='ACTIVE',
    )
    started_by_principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Rack(Base):
    __tablename__ = 'racks'
    __table_args__ = (
        UniqueConstraint('audit_session_id', 'rack_number', name='racks_session_number_key'),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    audit_session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('audit_sessions.id', ondelete='CASCADE'), nullable=False
    )
    location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('locations.id'), nullable=False)
    rack_number: Mapped[str] = mapped_column(Text, nullable=False)
    scanner_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    status: Mapped[RackStatus] = mapped_column(
        SQLEnum(RackStatus, name='rack_status'), nullable=False, default=RackStatus.AVAILABLE, server_default='AVAILABLE'
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class InventoryItem(Base):
    __tablename__ = 'inventory_items'
    __table_args__ = (
        UniqueConstraint('location_id', 'barcode', name='inventory_items_location_barcode_key'),
        CheckConstraint('char_length(item_code) = 5', name='inventory_items_item_code_length'),
        CheckConstraint('expected_quantity >= 0', name='inventory_items_expected_quantity_non_negative'),
        CheckConstraint('unit_cost >= 0', name='inventory_items_unit_cost_non_negative'),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('locations.id'), nullable=False)
    item_code: Mapped[str] = mapped_column(String(5), nullable=False)
    barcode: Mapped[str] = mapped_column(Text, nullable=False)
    brand: Mapped[str] = mapped_column(Text, nullable=False)
    item_name: Mapped[str] = mapped_column(Text, nullable=False)
    expected_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Scan(Base):
    __tablename__ = 'scans'
    __table_args__ = (
        UniqueConstraint('client_scan_id', name='scans_client_scan_id_key'),
        CheckConstraint('quantity = 1', name='scans_quantity_is_one'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    client_scan_id: Mapped[str] = mapped_column(String(64), nullable=False)
    barcode: Mapped[str] = mapped_column(String(12), nullable=False)
    rack_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('racks.id', ondelete='CASCADE'), nullable=False)
    audit_session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('audit_sessions.id', ondelete='CASCADE'), nullable=False
    )
    scanner_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    device_id: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    manual_entry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    actor_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    location_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('locations.id'))
    ip: Mapped[str | None] = mapped_column(INET)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
