# (c) Copyright Datacraft, 2026
"""Pre-expanded viewer rows."""
from sqlalchemy import Integer, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from permbench.db.base import Base


class FlatACLRow(Base):
	"""
	``user_id`` may view ``document_id``.

	No foreign keys: a row pointing at a deleted user or document must stay
	visible so that verification can report it.
	"""

	__tablename__ = "flat_acl_rows"

	id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
	user_id: Mapped[int] = mapped_column(Integer, nullable=False)
	document_id: Mapped[int] = mapped_column(Integer, nullable=False)

	__table_args__ = (
		UniqueConstraint("user_id", "document_id", name="uq_flat_acl_row"),
		Index("idx_flat_acl_document", "document_id"),
	)

	def __repr__(self):
		return f"FlatACLRow(user={self.user_id}, document={self.document_id})"
