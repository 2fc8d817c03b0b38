# (c) Copyright Datacraft, 2026
"""Relationship tuples storage and management."""
import logging
from typing import Iterable

from pydantic import BaseModel, ConfigDict
from sqlalchemy import String, Integer, Index, UniqueConstraint, func, select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column, Session

from permbench.db.base import Base
from permbench.errors import ValidationError
from .schema import RelationshipGraph, create_default_graph

logger = logging.getLogger(__name__)


class RelationTuple(Base):
	"""
	Zanzibar-style relation tuple.

	Format: object#relation@subject
	Example: document:123#owner@user:456
	         department:7#member@department:9#member

	``subject_relation`` is the empty string for a concrete subject and the
	relation name for a userset pointer, so the unique constraint also covers
	concrete subjects.
	"""

	__tablename__ = "relation_tuples"

	id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

	# Object (resource being accessed)
	object_type: Mapped[str] = mapped_column(String(50), nullable=False)
	object_id: Mapped[str] = mapped_column(String(100), nullable=False)

	# Relation
	relation: Mapped[str] = mapped_column(String(50), nullable=False)

	# Subject (who has the relation)
	subject_type: Mapped[str] = mapped_column(String(50), nullable=False)
	subject_id: Mapped[str] = mapped_column(String(100), nullable=False)
	subject_relation: Mapped[str] = mapped_column(String(50), nullable=False, default='')

	__table_args__ = (
		UniqueConstraint(
			"object_type", "object_id", "relation",
			"subject_type", "subject_id", "subject_relation",
			name="uq_relation_tuple"
		),
		Index(
			"idx_tuple_object_relation",
			"object_type", "object_id", "relation"
		),
		Index(
			"idx_tuple_subject_relation",
			"subject_type", "subject_id", "relation"
		),
	)

	def __repr__(self):
		subject = f"{self.subject_type}:{self.subject_id}"
		if self.subject_relation:
			subject += f"#{self.subject_relation}"
		return f"{self.object_type}:{self.object_id}#{self.relation}@{subject}"

	def to_key(self) -> "TupleKey":
		return TupleKey(
			object_type=self.object_type,
			object_id=self.object_id,
			relation=self.relation,
			subject_type=self.subject_type,
			subject_id=self.subject_id,
			subject_relation=self.subject_relation or None,
		)


class TupleKey(BaseModel):
	"""Lightweight representation of a tuple for writes and checks."""
	model_config = ConfigDict(frozen=True)

	object_type: str
	object_id: str
	relation: str
	subject_type: str
	subject_id: str
	subject_relation: str | None = None

	def __hash__(self):
		return hash((
			self.object_type, self.object_id, self.relation,
			self.subject_type, self.subject_id, self.subject_relation or ''
		))

	def __str__(self):
		subject = f"{self.subject_type}:{self.subject_id}"
		if self.subject_relation:
			subject += f"#{self.subject_relation}"
		return f"{self.object_type}:{self.object_id}#{self.relation}@{subject}"

	@property
	def is_userset(self) -> bool:
		return bool(self.subject_relation)

	@classmethod
	def parse(cls, tuple_str: str) -> "TupleKey":
		"""
		Parse tuple from string format.

		Format: object_type:object_id#relation@subject_type:subject_id[#subject_relation]
		"""
		try:
			object_part, subject_part = tuple_str.split('@')

			obj_main, relation = object_part.split('#')
			object_type, object_id = obj_main.split(':', 1)

			subject_relation = None
			if '#' in subject_part:
				subj_main, subject_relation = subject_part.split('#')
			else:
				subj_main = subject_part
			subject_type, subject_id = subj_main.split(':', 1)
		except ValueError as e:
			raise ValidationError(f"Malformed tuple {tuple_str!r}") from e

		return cls(
			object_type=object_type,
			object_id=object_id,
			relation=relation,
			subject_type=subject_type,
			subject_id=subject_id,
			subject_relation=subject_relation,
		)


class RelationshipStore:
	"""
	Store and query relationship tuples.

	Bound to one session. ``write``/``delete`` commit; lookups never do.
	"""

	def __init__(self, db: Session, graph: RelationshipGraph | None = None):
		self.db = db
		self.graph = graph or create_default_graph()

	def write(self, key: TupleKey, commit: bool = True) -> bool:
		"""Write a relationship tuple.

		Returns False when the exact tuple already existed.

		Raises:
			ValidationError: the schema does not accept the tuple.
		"""
		self.graph.validate(key)
		if self.exists(key):
			return False

		self.db.add(self._to_row(key))
		if not commit:
			self.db.flush()
			return True
		try:
			self.db.commit()
		except IntegrityError:
			# concurrent writer inserted the same tuple first
			self.db.rollback()
			return False
		return True

	def write_batch(self, keys: Iterable[TupleKey]) -> int:
		"""Write tuples in one transaction, skipping duplicates.

		Every tuple is validated before anything is added.
		"""
		unique = list(dict.fromkeys(keys))
		for key in unique:
			self.graph.validate(key)

		count = 0
		for key in unique:
			if self.exists(key):
				continue
			self.db.add(self._to_row(key))
			count += 1
		self.db.commit()
		return count

	def delete(self, key: TupleKey, commit: bool = True) -> bool:
		"""Delete a specific tuple. Missing tuples are a no-op."""
		self.graph.validate(key)
		stmt = delete(RelationTuple).where(
			RelationTuple.object_type == key.object_type,
			RelationTuple.object_id == key.object_id,
			RelationTuple.relation == key.relation,
			RelationTuple.subject_type == key.subject_type,
			RelationTuple.subject_id == key.subject_id,
			RelationTuple.subject_relation == (key.subject_relation or ''),
		)
		result = self.db.execute(stmt)
		if commit:
			self.db.commit()
		return result.rowcount > 0

	def read(
		self,
		object_type: str | None = None,
		object_id: str | None = None,
		relation: str | None = None,
		subject_type: str | None = None,
		subject_id: str | None = None,
		limit: int = 1000,
	) -> list[TupleKey]:
		"""Read tuples matching the filters."""
		stmt = select(RelationTuple)

		if object_type:
			stmt = stmt.where(RelationTuple.object_type == object_type)
		if object_id:
			stmt = stmt.where(RelationTuple.object_id == object_id)
		if relation:
			stmt = stmt.where(RelationTuple.relation == relation)
		if subject_type:
			stmt = stmt.where(RelationTuple.subject_type == subject_type)
		if subject_id:
			stmt = stmt.where(RelationTuple.subject_id == subject_id)

		stmt = stmt.order_by(RelationTuple.id).limit(limit)
		return [row.to_key() for row in self.db.scalars(stmt)]

	def exists(self, key: TupleKey) -> bool:
		"""Check if a tuple exists."""
		return self.has_subject(
			object_type=key.object_type,
			object_id=key.object_id,
			relation=key.relation,
			subject_type=key.subject_type,
			subject_id=key.subject_id,
			subject_relation=key.subject_relation or '',
		)

	def has_subject(
		self,
		object_type: str,
		object_id: str,
		relation: str,
		subject_type: str,
		subject_id: str,
		subject_relation: str = '',
	) -> bool:
		stmt = select(RelationTuple.id).where(
			RelationTuple.object_type == object_type,
			RelationTuple.object_id == object_id,
			RelationTuple.relation == relation,
			RelationTuple.subject_type == subject_type,
			RelationTuple.subject_id == subject_id,
			RelationTuple.subject_relation == subject_relation,
		).limit(1)
		return self.db.scalar(stmt) is not None

	def get_usersets(
		self,
		object_type: str,
		object_id: str,
		relation: str,
	) -> list[tuple[str, str, str]]:
		"""Userset pointers ``(type, id, relation)`` stored on an object relation."""
		stmt = select(
			RelationTuple.subject_type,
			RelationTuple.subject_id,
			RelationTuple.subject_relation,
		).where(
			RelationTuple.object_type == object_type,
			RelationTuple.object_id == object_id,
			RelationTuple.relation == relation,
			RelationTuple.subject_relation != '',
		)
		return [tuple(row) for row in self.db.execute(stmt).all()]

	def get_subjects(
		self,
		object_type: str,
		object_id: str,
		relation: str,
	) -> list[tuple[str, str]]:
		"""Concrete subjects ``(type, id)`` with a relation to an object."""
		stmt = select(
			RelationTuple.subject_type,
			RelationTuple.subject_id,
		).where(
			RelationTuple.object_type == object_type,
			RelationTuple.object_id == object_id,
			RelationTuple.relation == relation,
			RelationTuple.subject_relation == '',
		)
		return [tuple(row) for row in self.db.execute(stmt).all()]

	def get_objects(
		self,
		subject_type: str,
		subject_ids: list[str],
		relation: str,
		object_type: str | None = None,
		subject_relation: str = '',
	) -> list[tuple[str, str]]:
		"""Objects ``(type, id)`` where any of the subjects has a relation."""
		if not subject_ids:
			return []
		stmt = select(
			RelationTuple.object_type,
			RelationTuple.object_id,
		).where(
			RelationTuple.subject_type == subject_type,
			RelationTuple.subject_id.in_(subject_ids),
			RelationTuple.relation == relation,
			RelationTuple.subject_relation == subject_relation,
		)
		if object_type:
			stmt = stmt.where(RelationTuple.object_type == object_type)
		return [tuple(row) for row in self.db.execute(stmt).all()]

	def count(self) -> int:
		return self.db.scalar(select(func.count()).select_from(RelationTuple)) or 0

	def stats(self) -> list[dict]:
		"""Tuple counts grouped by object type and relation."""
		stmt = select(
			RelationTuple.object_type,
			RelationTuple.relation,
			func.count().label('total_tuples'),
			func.count(RelationTuple.object_id.distinct()).label('unique_objects'),
			func.count(RelationTuple.subject_id.distinct()).label('unique_subjects'),
		).group_by(
			RelationTuple.object_type, RelationTuple.relation
		).order_by(
			RelationTuple.object_type, RelationTuple.relation
		)
		return [dict(row._mapping) for row in self.db.execute(stmt)]

	@staticmethod
	def _to_row(key: TupleKey) -> RelationTuple:
		return RelationTuple(
			object_type=key.object_type,
			object_id=key.object_id,
			relation=key.relation,
			subject_type=key.subject_type,
			subject_id=key.subject_id,
			subject_relation=key.subject_relation or '',
		)
