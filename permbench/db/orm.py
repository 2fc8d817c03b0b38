# (c) Copyright Datacraft, 2026
"""Business entities shared by both permission engines."""
from enum import Enum

from sqlalchemy import (
	String, ForeignKey, Index, UniqueConstraint, CheckConstraint, Integer,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class OwnerKind(str, Enum):
	"""Who owns a document. Exactly one kind per document."""
	DEPARTMENT = 'department'
	CUSTOMER = 'customer'


class User(Base):
	__tablename__ = "users"

	id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
	name: Mapped[str] = mapped_column(String(100), nullable=False)

	def __repr__(self):
		return f"User({self.id}: {self.name})"


class Customer(Base):
	__tablename__ = "customers"

	id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
	name: Mapped[str] = mapped_column(String(100), nullable=False)


class CustomerFollower(Base):
	"""A user following a customer; followers see the customer's documents."""

	__tablename__ = "customer_followers"

	id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
	customer_id: Mapped[int] = mapped_column(
		ForeignKey("customers.id", ondelete="CASCADE"),
		nullable=False,
	)
	user_id: Mapped[int] = mapped_column(
		ForeignKey("users.id", ondelete="CASCADE"),
		nullable=False,
	)

	__table_args__ = (
		UniqueConstraint("customer_id", "user_id", name="uq_customer_follower"),
		Index("idx_customer_follower_user", "user_id"),
	)


class Document(Base):
	"""A document owned by exactly one department or one customer.

	Visibility is never stored here; it is derived from the owner.
	"""

	__tablename__ = "documents"

	id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
	title: Mapped[str] = mapped_column(String(200), nullable=False)
	owner_kind: Mapped[str] = mapped_column(String(20), nullable=False)
	owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
	creator_id: Mapped[int | None] = mapped_column(
		ForeignKey("users.id", ondelete="SET NULL"),
		nullable=True,
	)

	__table_args__ = (
		Index("idx_document_owner", "owner_kind", "owner_id"),
		Index("idx_document_creator", "creator_id"),
		CheckConstraint(
			"owner_kind IN ('department', 'customer')",
			name="ck_document_owner_kind"
		),
	)

	def __repr__(self):
		return f"Document({self.id}: {self.owner_kind}:{self.owner_id})"


class DirectGrant(Base):
	"""An explicitly granted viewer, independent of ownership."""

	__tablename__ = "direct_grants"

	id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
	user_id: Mapped[int] = mapped_column(
		ForeignKey("users.id", ondelete="CASCADE"),
		nullable=False,
	)
	document_id: Mapped[int] = mapped_column(
		ForeignKey("documents.id", ondelete="CASCADE"),
		nullable=False,
	)

	__table_args__ = (
		UniqueConstraint("user_id", "document_id", name="uq_direct_grant"),
		Index("idx_direct_grant_document", "document_id"),
	)
