from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class IdentityRow(Base):
    __tablename__ = "identities"

    # Insertion order doubles as enrollment order when the gallery is reloaded.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String(120), index=True)
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    descriptors: Mapped[list["DescriptorRow"]] = relationship(
        back_populates="identity",
        cascade="all, delete-orphan",
        order_by="DescriptorRow.position",
    )
    attendance: Mapped[list["AttendanceRow"]] = relationship(
        back_populates="identity",
        cascade="all, delete-orphan",
    )


class DescriptorRow(Base):
    __tablename__ = "identity_descriptors"
    __table_args__ = (UniqueConstraint("identity_id", "position", name="uq_descriptor_position"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_id: Mapped[str] = mapped_column(
        ForeignKey("identities.identity_id", ondelete="CASCADE"),
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer)
    dimension: Mapped[int] = mapped_column(Integer)
    vector: Mapped[bytes] = mapped_column(LargeBinary)

    identity: Mapped[IdentityRow] = relationship(back_populates="descriptors")


class AttendanceRow(Base):
    __tablename__ = "attendance_records"
    # One attendance row per identity per day; check-in races are settled here.
    __table_args__ = (UniqueConstraint("identity_id", "attendance_date", name="uq_attendance_identity_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_id: Mapped[str] = mapped_column(
        ForeignKey("identities.identity_id", ondelete="CASCADE"),
        index=True,
    )
    attendance_date: Mapped[date] = mapped_column(Date, index=True)
    check_in_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_out_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="present")
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    identity: Mapped[IdentityRow] = relationship(back_populates="attendance")
