# (c) Copyright Datacraft, 2026
"""Benchmark-facing adapter over the tuple store and checker."""
import logging
from typing import Iterable

from sqlalchemy.orm import Session, sessionmaker

from permbench.changes import (
	EntityChange,
	MemberAdded,
	MemberRemoved,
	FollowerAdded,
	FollowerRemoved,
	DepartmentReparented,
	DocumentOwnerChanged,
)
from permbench.config import check_depth_for, get_settings
from permbench.db.departments import Department
from permbench.db.orm import OwnerKind
from permbench.errors import ValidationError
from permbench.utils import as_id, retry_transient, storage_errors
from .graph import RelationshipChecker
from .schema import ObjectType, Relations, RelationshipGraph, create_default_graph
from .tuples import RelationshipStore, TupleKey

logger = logging.getLogger(__name__)


def member_key(department_id: int, user_id: int) -> TupleKey:
	return TupleKey(
		object_type=ObjectType.DEPARTMENT.value,
		object_id=as_id(department_id),
		relation=Relations.MEMBER,
		subject_type=ObjectType.USER.value,
		subject_id=as_id(user_id),
	)


def subdepartment_key(parent_id: int, child_id: int) -> TupleKey:
	"""``department:<parent>#member@department:<child>#member``."""
	return TupleKey(
		object_type=ObjectType.DEPARTMENT.value,
		object_id=as_id(parent_id),
		relation=Relations.MEMBER,
		subject_type=ObjectType.DEPARTMENT.value,
		subject_id=as_id(child_id),
		subject_relation=Relations.MEMBER,
	)


def follower_key(customer_id: int, user_id: int) -> TupleKey:
	return TupleKey(
		object_type=ObjectType.CUSTOMER.value,
		object_id=as_id(customer_id),
		relation=Relations.FOLLOWER,
		subject_type=ObjectType.USER.value,
		subject_id=as_id(user_id),
	)


def owner_key(document_id: int, owner_kind: OwnerKind | str, owner_id: int) -> TupleKey:
	"""The ``owner_department``/``owner_customer`` tuple of a document."""
	if OwnerKind(owner_kind) == OwnerKind.DEPARTMENT:
		relation, subject_type = Relations.OWNER_DEPARTMENT, ObjectType.DEPARTMENT.value
	else:
		relation, subject_type = Relations.OWNER_CUSTOMER, ObjectType.CUSTOMER.value
	return TupleKey(
		object_type=ObjectType.DOCUMENT.value,
		object_id=as_id(document_id),
		relation=relation,
		subject_type=subject_type,
		subject_id=as_id(owner_id),
	)


def creator_key(document_id: int, user_id: int) -> TupleKey:
	return TupleKey(
		object_type=ObjectType.DOCUMENT.value,
		object_id=as_id(document_id),
		relation=Relations.OWNER,
		subject_type=ObjectType.USER.value,
		subject_id=as_id(user_id),
	)


def viewer_key(document_id: int, user_id: int) -> TupleKey:
	return TupleKey(
		object_type=ObjectType.DOCUMENT.value,
		object_id=as_id(document_id),
		relation=Relations.VIEWER,
		subject_type=ObjectType.USER.value,
		subject_id=as_id(user_id),
	)


class TupleEngine:
	"""
	Answers ``document#viewer`` checks by graph traversal.

	Every call opens its own session, so one instance is shared by all
	benchmark workers. Mutations are single tuple writes without fan-out and
	retry transient storage failures; checks do not retry.

	The department tree this engine sees is the one spelled by its own
	``department#member@department#member`` tuples, so re-parenting is
	validated against those edges and never against the entity tables.
	"""

	name = "tuple"

	def __init__(
		self,
		session_factory: sessionmaker[Session],
		graph: RelationshipGraph | None = None,
		max_depth: int | None = None,
		max_dept_levels: int | None = None,
		retry_attempts: int | None = None,
		retry_backoff_seconds: float | None = None,
	):
		settings = get_settings()
		self.session_factory = session_factory
		self.graph = graph or create_default_graph()
		self.max_dept_levels = max_dept_levels or settings.max_dept_levels
		self.max_depth = max_depth or check_depth_for(self.max_dept_levels)

		retry = retry_transient(
			attempts=retry_attempts or settings.retry_attempts,
			backoff_seconds=(
				settings.retry_backoff_seconds
				if retry_backoff_seconds is None else retry_backoff_seconds
			),
		)
		self.write = retry(self._write)
		self.delete = retry(self._delete)
		self.apply = retry(self._apply)

	def _checker(self, db: Session) -> RelationshipChecker:
		return RelationshipChecker(
			RelationshipStore(db, self.graph),
			self.graph,
			max_depth=self.max_depth,
		)

	def check(self, user_id: int, document_id: int) -> bool:
		with self.session_factory() as db, storage_errors():
			return self._checker(db).check(
				ObjectType.DOCUMENT.value, document_id, Relations.VIEWER, user_id
			)

	def check_batch(self, user_id: int, document_ids: Iterable[int]) -> dict[int, bool]:
		"""One session for the whole batch; each document is its own check."""
		with self.session_factory() as db, storage_errors():
			checker = self._checker(db)
			return {
				document_id: checker.check(
					ObjectType.DOCUMENT.value, document_id, Relations.VIEWER, user_id
				)
				for document_id in document_ids
			}

	def list_viewable_documents(self, user_id: int) -> set[int]:
		with self.session_factory() as db, storage_errors():
			return {int(i) for i in self._checker(db).list_viewable_documents(user_id)}

	def _write(self, key: TupleKey) -> bool:
		with self.session_factory() as db, storage_errors():
			return RelationshipStore(db, self.graph).write(key)

	def _delete(self, key: TupleKey) -> bool:
		with self.session_factory() as db, storage_errors():
			return RelationshipStore(db, self.graph).delete(key)

	def grant(self, user_id: int, document_id: int) -> bool:
		return self.write(viewer_key(document_id, user_id))

	def revoke(self, user_id: int, document_id: int) -> bool:
		return self.delete(viewer_key(document_id, user_id))

	def _apply(self, change: EntityChange) -> int:
		"""Translate an entity change into tuple writes; returns tuples changed."""
		with self.session_factory() as db, storage_errors():
			store = RelationshipStore(db, self.graph)
			match change:
				case MemberAdded(department_id=dept, user_id=user):
					changed = int(store.write(member_key(dept, user), commit=False))
				case MemberRemoved(department_id=dept, user_id=user):
					changed = int(store.delete(member_key(dept, user), commit=False))
				case FollowerAdded(customer_id=customer, user_id=user):
					changed = int(store.write(follower_key(customer, user), commit=False))
				case FollowerRemoved(customer_id=customer, user_id=user):
					changed = int(store.delete(follower_key(customer, user), commit=False))
				case DepartmentReparented():
					changed = self._reparent(db, store, change)
				case DocumentOwnerChanged():
					changed = self._change_owner(store, change)
				case _:
					raise TypeError(f"Unsupported change {change!r}")
			db.commit()
		logger.debug(f"Applied {change} to tuple store ({changed} tuples)")
		return changed

	def _parent_edges(self, store: RelationshipStore, department_id: int) -> list[TupleKey]:
		return [
			key for key in store.read(
				object_type=ObjectType.DEPARTMENT.value,
				relation=Relations.MEMBER,
				subject_type=ObjectType.DEPARTMENT.value,
				subject_id=as_id(department_id),
			)
			if key.subject_relation == Relations.MEMBER
		]

	def _ancestors(self, store: RelationshipStore, department_id: int) -> list[int]:
		"""``department_id`` and its tuple-store ancestors, nearest first.

		Stops one hop past ``max_dept_levels`` so an over-deep chain still
		reads as too deep.
		"""
		chain = [department_id]
		while len(chain) <= self.max_dept_levels:
			edges = self._parent_edges(store, chain[-1])
			if not edges:
				break
			parent = int(edges[0].object_id)
			if parent in chain:
				chain.append(parent)
				break
			chain.append(parent)
		return chain

	def _height(self, store: RelationshipStore, department_id: int) -> int:
		"""Levels below ``department_id`` in the tuple store."""
		height = 0
		seen = {as_id(department_id)}
		frontier = [as_id(department_id)]
		while frontier and height <= self.max_dept_levels:
			children = [
				subject_id
				for parent in frontier
				for subject_type, subject_id, relation in store.get_usersets(
					ObjectType.DEPARTMENT.value, parent, Relations.MEMBER
				)
				if subject_type == ObjectType.DEPARTMENT.value
				and relation == Relations.MEMBER
				and subject_id not in seen
			]
			if not children:
				break
			seen.update(children)
			frontier = children
			height += 1
		return height

	def _validate_reparent(self, db: Session, store: RelationshipStore, change: DepartmentReparented) -> None:
		if db.get(Department, change.department_id) is None:
			raise ValidationError(f"Unknown department {change.department_id}")

		new_level = 1
		if change.new_parent_id is not None:
			if db.get(Department, change.new_parent_id) is None:
				raise ValidationError(f"Unknown parent department {change.new_parent_id}")
			ancestors = self._ancestors(store, change.new_parent_id)
			if change.department_id in ancestors:
				raise ValidationError(
					f"Department {change.new_parent_id} is inside the subtree of {change.department_id}"
				)
			new_level = len(ancestors) + 1

		if new_level + self._height(store, change.department_id) > self.max_dept_levels:
			raise ValidationError(
				f"Moving department {change.department_id} under {change.new_parent_id} "
				f"would exceed {self.max_dept_levels} levels"
			)

	def _reparent(
		self,
		db: Session,
		store: RelationshipStore,
		change: DepartmentReparented,
	) -> int:
		self._validate_reparent(db, store, change)

		changed = 0
		for key in self._parent_edges(store, change.department_id):
			if change.new_parent_id is not None and key.object_id == as_id(change.new_parent_id):
				continue
			changed += int(store.delete(key, commit=False))

		if change.new_parent_id is not None:
			changed += int(store.write(
				subdepartment_key(change.new_parent_id, change.department_id),
				commit=False,
			))
		return changed

	def _change_owner(self, store: RelationshipStore, change: DocumentOwnerChanged) -> int:
		new_key = owner_key(change.document_id, change.owner_kind, change.owner_id)
		changed = 0
		for relation in (Relations.OWNER_DEPARTMENT, Relations.OWNER_CUSTOMER):
			for key in store.read(
				object_type=ObjectType.DOCUMENT.value,
				object_id=as_id(change.document_id),
				relation=relation,
			):
				if key != new_key:
					changed += int(store.delete(key, commit=False))
		changed += int(store.write(new_key, commit=False))
		return changed

	def count(self) -> int:
		with self.session_factory() as db, storage_errors():
			return RelationshipStore(db, self.graph).count()

	def storage_stats(self) -> dict:
		with self.session_factory() as db, storage_errors():
			store = RelationshipStore(db, self.graph)
			return {'tuples': store.count(), 'relations': store.stats()}
