# (c) Copyright Datacraft, 2026
"""Department and organizational hierarchy models."""
from typing import List, TYPE_CHECKING

from sqlalchemy import (
	String, ForeignKey, Index, UniqueConstraint, CheckConstraint, Integer,
	select, update, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, Session

from permbench.errors import ValidationError

from .base import Base

if TYPE_CHECKING:
	from .orm import User


class Department(Base):
	"""Organizational department.

	Departments form an arena addressed by integer id; the tree is encoded
	only by ``parent_id`` back-references.
	"""

	__tablename__ = "departments"

	id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
	name: Mapped[str] = mapped_column(String(100), nullable=False)
	parent_id: Mapped[int | None] = mapped_column(
		ForeignKey("departments.id", ondelete="CASCADE"),
		nullable=True,
	)
	level: Mapped[int] = mapped_column(Integer, default=1)

	members: Mapped[List["DepartmentMember"]] = relationship(
		"DepartmentMember", back_populates="department", cascade="all, delete-orphan"
	)

	__table_args__ = (
		Index("idx_department_parent", "parent_id"),
		Index("idx_department_level", "level"),
		CheckConstraint("level >= 1", name="ck_department_level_positive"),
	)

	def __repr__(self):
		return f"Department({self.id}: {self.name}, level={self.level})"


class DepartmentMember(Base):
	"""Direct membership of a user in a department."""

	__tablename__ = "department_members"

	id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
	department_id: Mapped[int] = mapped_column(
		ForeignKey("departments.id", ondelete="CASCADE"),
		nullable=False,
	)
	user_id: Mapped[int] = mapped_column(
		ForeignKey("users.id", ondelete="CASCADE"),
		nullable=False,
	)

	department: Mapped["Department"] = relationship(
		"Department", back_populates="members"
	)
	user: Mapped["User"] = relationship("User")

	__table_args__ = (
		UniqueConstraint("user_id", "department_id", name="uq_department_member"),
		Index("idx_department_member_user", "user_id"),
		Index("idx_department_member_dept", "department_id"),
	)


def get_ancestor_ids(db: Session, department_id: int, max_levels: int) -> list[int]:
	"""Return ``department_id`` followed by its ancestors, nearest first.

	The walk stops after ``max_levels`` hops, and on a revisited id, so a
	corrupted parent chain cannot loop.
	"""
	chain: list[int] = []
	current: int | None = department_id
	while current is not None and len(chain) < max_levels:
		if current in chain:
			break
		chain.append(current)
		current = db.scalar(select(Department.parent_id).where(Department.id == current))
	return chain


def get_subtree_ids(db: Session, department_id: int, max_levels: int) -> list[int]:
	"""Return ``department_id`` and every descendant, breadth first."""
	subtree = [department_id]
	seen = {department_id}
	frontier = [department_id]
	for _ in range(max_levels):
		if not frontier:
			break
		children = db.scalars(
			select(Department.id).where(Department.parent_id.in_(frontier))
		).all()
		frontier = [c for c in children if c not in seen]
		seen.update(frontier)
		subtree.extend(frontier)
	return subtree


def get_subtree_member_ids(db: Session, department_ids: list[int]) -> set[int]:
	"""Users directly in any of ``department_ids``."""
	if not department_ids:
		return set()
	return set(db.scalars(
		select(DepartmentMember.user_id).where(
			DepartmentMember.department_id.in_(department_ids)
		)
	))


def get_tree_depth(db: Session) -> int:
	"""Deepest stored level, 0 for an empty forest."""
	return db.scalar(select(func.max(Department.level))) or 0


def get_root_id(db: Session, department_id: int, max_levels: int) -> int:
	"""Root of the tree ``department_id`` belongs to."""
	return get_ancestor_ids(db, department_id, max_levels)[-1]


def validate_reparent(
	db: Session,
	department_id: int,
	new_parent_id: int | None,
	max_levels: int,
) -> list[int]:
	"""Check that moving a department keeps the tree acyclic and shallow enough.

	Returns the ids of the moved subtree, ``department_id`` first.

	Raises:
		ValidationError: unknown department or parent, a parent inside the
			moved subtree, or a resulting depth beyond ``max_levels``.
	"""
	department = db.get(Department, department_id)
	if department is None:
		raise ValidationError(f"Unknown department {department_id}")

	new_level = 1
	if new_parent_id is not None:
		parent = db.get(Department, new_parent_id)
		if parent is None:
			raise ValidationError(f"Unknown parent department {new_parent_id}")
		new_level = parent.level + 1

	subtree = get_subtree_ids(db, department_id, max_levels)
	if new_parent_id is not None and new_parent_id in subtree:
		raise ValidationError(
			f"Department {new_parent_id} is inside the subtree of {department_id}"
		)

	deepest = db.scalar(
		select(func.max(Department.level)).where(Department.id.in_(subtree))
	)
	height = (deepest or department.level) - department.level
	if new_level + height > max_levels:
		raise ValidationError(
			f"Moving department {department_id} under {new_parent_id} "
			f"would exceed {max_levels} levels"
		)
	return subtree


def move_department(
	db: Session,
	department_id: int,
	new_parent_id: int | None,
	subtree: list[int],
) -> None:
	"""Re-point ``parent_id`` and shift the levels of the moved subtree."""
	department = db.get(Department, department_id)
	new_level = 1
	if new_parent_id is not None:
		new_level = db.get(Department, new_parent_id).level + 1
	delta = new_level - department.level

	department.parent_id = new_parent_id
	if delta:
		db.execute(
			update(Department)
			.where(Department.id.in_(subtree))
			.values(level=Department.level + delta)
		)
	db.flush()
