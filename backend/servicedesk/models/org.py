from __future__ import annotations
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, ForeignKey, DateTime
from typing import Optional
from datetime import datetime

from servicedesk.utils.clock import utcnow

Base = declarative_base()

# --- Tenancy / staff ---
class Company(Base):
    __tablename__ = 'companies'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

class Branch(Base):
    __tablename__ = 'branches'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey('companies.id'), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    code: Mapped[str] = mapped_column(String(16), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

class User(Base):
    __tablename__ = 'users'
    ROLE_ADMIN = 'ADMIN'
    ROLE_MANAGER = 'MANAGER'
    ROLE_TECHNICIAN = 'TECHNICIAN'
    ROLE_RECEPTIONIST = 'RECEPTIONIST'
    ALL_ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_TECHNICIAN, ROLE_RECEPTIONIST)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey('companies.id'), nullable=False, index=True)
    branch_id: Mapped[Optional[int]] = mapped_column(ForeignKey('branches.id'), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default=ROLE_RECEPTIONIST)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
