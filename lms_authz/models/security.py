from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lms_authz.db.base import Base


class AccessRight(Base):
    __tablename__ = "access_rights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    domain: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    sensitivity_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sensitive_category: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_wildcardable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    parent_department_id: Mapped[str | None] = mapped_column(ForeignKey("departments.id"), nullable=True, index=True)
    require_explicit_membership: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_role_name: Mapped[str | None] = mapped_column(String(50), nullable=True)
    scope_kind: Mapped[str] = mapped_column(String(10), default="custom", nullable=False)
    department_id: Mapped[str | None] = mapped_column(ForeignKey("departments.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    rights: Mapped[list["RoleRight"]] = relationship(
        back_populates="role",
        cascade="all, delete-orphan",
    )


class RoleRight(Base):
    """Granted key; may be a wildcard, so it is not a foreign key into access_rights."""

    __tablename__ = "role_rights"

    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id"), primary_key=True)
    right_key: Mapped[str] = mapped_column(String(100), primary_key=True)

    role: Mapped[Role] = relationship(back_populates="rights")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("username"),
        UniqueConstraint("email"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    username: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # bcrypt hash; never selected into logs.
    escalation_password_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    memberships: Mapped[list["DepartmentMembership"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
    )


class DepartmentMembership(Base):
    __tablename__ = "department_memberships"
    __table_args__ = (UniqueConstraint("user_id", "department_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    department_id: Mapped[str] = mapped_column(ForeignKey("departments.id"), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    user: Mapped[User] = relationship(back_populates="memberships")
    roles: Mapped[list["MembershipRole"]] = relationship(
        back_populates="membership",
        cascade="all, delete-orphan",
    )


class MembershipRole(Base):
    __tablename__ = "membership_roles"

    membership_id: Mapped[int] = mapped_column(ForeignKey("department_memberships.id"), primary_key=True)
    role_name: Mapped[str] = mapped_column(String(50), primary_key=True, index=True)

    membership: Mapped[DepartmentMembership] = relationship(back_populates="roles")
