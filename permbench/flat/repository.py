# (c) Copyright Datacraft, 2026
"""Flattened ACL: one row per (user, document) the user may view.

Checks are a single indexed lookup. The cost moves to writes: every change to
membership, following or ownership re-derives the affected rows, inside the
same transaction as the change itself.
"""
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator

from sqlalchemy import select, delete, insert, func, exists
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
from permbench.config import get_settings
from permbench.db.departments import (
	Department,
	DepartmentMember,
	get_ancestor_ids,
	get_root_id,
	get_subtree_ids,
	get_subtree_member_ids,
	move_department,
	validate_reparent,
)
from permbench.db.orm import (
	Customer, CustomerFollower, DirectGrant, Document, OwnerKind, User,
)
from permbench.errors import ConsistencyError, ValidationError
from permbench.utils import chunked, retry_transient, storage_errors
from .index import ViewerIndex
from .models import FlatACLRow

logger = logging.getLogger(__name__)

IN_CLAUSE_SIZE = 500

LockKey = tuple[str, int]


@dataclass
class ExpansionResult:
	"""What one re-expansion did to the flat table."""
	added: int = 0
	removed: int = 0
	pairs_examined: int = 0
	documents: int = 0
	users: int = 0

	@property
	def rows_touched(self) -> int:
		return self.added + self.removed


@dataclass(frozen=True)
class ConsistencyIssue:
	"""
	kind:
	- ``missing``: the user can view the document but has no row
	- ``extra``: a row exists for a user who cannot view the document
	- ``orphaned``: a row names a user or document that does not exist
	"""
	kind: str
	user_id: int
	document_id: int

	def __str__(self):
		return f"{self.kind}: user={self.user_id} document={self.document_id}"


@dataclass
class _Reach:
	"""Everything that can make one user a viewer."""
	user_id: int
	departments: set[int]
	customers: set[int]

	def sees(self, document: tuple, granted: bool) -> bool:
		_, owner_kind, owner_id, creator_id = document
		if granted or creator_id == self.user_id:
			return True
		if owner_kind == OwnerKind.DEPARTMENT.value:
			return owner_id in self.departments
		return owner_id in self.customers


class LockRegistry:
	"""Process-wide locks keyed by owner scope, e.g. ``("department", <root id>)``."""

	def __init__(self):
		self._guard = threading.Lock()
		self._locks: dict[LockKey, threading.Lock] = {}

	def get(self, key: LockKey) -> threading.Lock:
		with self._guard:
			lock = self._locks.get(key)
			if lock is None:
				lock = self._locks[key] = threading.Lock()
			return lock

	@contextmanager
	def hold(self, keys: Iterable[LockKey]) -> Iterator[None]:
		"""Acquire every key in sorted order so overlapping holders cannot deadlock."""
		locks = [self.get(key) for key in sorted(set(keys))]
		acquired = []
		try:
			for lock in locks:
				lock.acquire()
				acquired.append(lock)
			yield
		finally:
			for lock in reversed(acquired):
				lock.release()


_locks = LockRegistry()


class FlatACLRepository:
	"""
	Stores materialized ``(user_id, document_id)`` viewer rows.

	Every mutation runs in one transaction under the lock of each owner scope
	it touches, so no reader observes a half-expanded change and overlapping
	expansions cannot lose updates. Re-applying a change is a no-op.
	"""

	def __init__(
		self,
		session_factory: sessionmaker[Session],
		max_dept_levels: int | None = None,
		retry_attempts: int | None = None,
		retry_backoff_seconds: float | None = None,
		locks: LockRegistry | None = None,
	):
		settings = get_settings()
		self.session_factory = session_factory
		self.max_dept_levels = max_dept_levels or settings.max_dept_levels
		self.locks = locks or _locks

		retry = retry_transient(
			attempts=retry_attempts or settings.retry_attempts,
			backoff_seconds=(
				settings.retry_backoff_seconds
				if retry_backoff_seconds is None else retry_backoff_seconds
			),
		)
		self.apply = retry(self._apply)
		self.grant = retry(self._grant)
		self.revoke = retry(self._revoke)

	@contextmanager
	def _locked(self, lock_keys: Callable[[], list[LockKey]]) -> Iterator[None]:
		"""Hold the owner-scope locks of a change, re-reading them once held.

		A concurrent re-parent can move a department into another tree between
		reading its root and acquiring the lock. The keys are read again under
		the lock and widened until they stop changing.
		"""
		keys = set(lock_keys())
		while True:
			with self.locks.hold(keys):
				current = set(lock_keys())
				if current <= keys:
					yield
					return
			logger.debug(f"Lock scope moved from {sorted(keys)} to {sorted(current)}, retrying")
			keys |= current

	@contextmanager
	def _transaction(self) -> Iterator[Session]:
		with self.session_factory() as db, storage_errors():
			with db.begin():
				yield db

	def check(self, user_id: int, document_id: int) -> bool:
		"""Direct row lookup. Never retries."""
		with self.session_factory() as db, storage_errors():
			return bool(db.scalar(
				select(exists().where(
					FlatACLRow.user_id == user_id,
					FlatACLRow.document_id == document_id,
				))
			))

	def check_batch(self, user_id: int, document_ids: Iterable[int]) -> dict[int, bool]:
		"""One IN lookup per chunk of documents."""
		wanted = list(document_ids)
		found: set[int] = set()
		with self.session_factory() as db, storage_errors():
			for batch in chunked(sorted(set(wanted)), IN_CLAUSE_SIZE):
				found.update(db.scalars(select(FlatACLRow.document_id).where(
					FlatACLRow.user_id == user_id,
					FlatACLRow.document_id.in_(batch),
				)))
		return {document_id: document_id in found for document_id in wanted}

	def count_rows(self) -> int:
		with self.session_factory() as db, storage_errors():
			return db.scalar(select(func.count()).select_from(FlatACLRow)) or 0

	def rows_for_document(self, document_id: int) -> set[int]:
		with self.session_factory() as db, storage_errors():
			return set(db.scalars(
				select(FlatACLRow.user_id).where(FlatACLRow.document_id == document_id)
			))

	def list_viewable_documents(self, user_id: int) -> set[int]:
		with self.session_factory() as db, storage_errors():
			return set(db.scalars(
				select(FlatACLRow.document_id).where(FlatACLRow.user_id == user_id)
			))

	def stats(self) -> dict:
		with self.session_factory() as db, storage_errors():
			rows, users, documents = db.execute(
				select(
					func.count(),
					func.count(FlatACLRow.user_id.distinct()),
					func.count(FlatACLRow.document_id.distinct()),
				).select_from(FlatACLRow)
			).one()
		return {
			'rows': rows,
			'users': users,
			'documents': documents,
			'avg_rows_per_document': round(rows / documents, 2) if documents else 0.0,
		}

	def _grant(self, user_id: int, document_id: int) -> ExpansionResult:
		"""Record a direct grant and re-derive that single pair."""
		with self._locked(lambda: self._lock_keys_for_documents([document_id])):
			with self._transaction() as db:
				self._require(db, User, user_id)
				self._require(db, Document, document_id)
				if not self._grant_exists(db, user_id, document_id):
					db.add(DirectGrant(user_id=user_id, document_id=document_id))
					db.flush()
				return self._rederive_pairs(db, {user_id: {document_id}})

	def _revoke(self, user_id: int, document_id: int) -> ExpansionResult:
		"""Drop a direct grant. The row stays if another path still grants it."""
		with self._locked(lambda: self._lock_keys_for_documents([document_id])):
			with self._transaction() as db:
				db.execute(delete(DirectGrant).where(
					DirectGrant.user_id == user_id,
					DirectGrant.document_id == document_id,
				))
				return self._rederive_pairs(db, {user_id: {document_id}})

	def _apply(self, change: EntityChange) -> ExpansionResult:
		"""Apply a change to the entity tables and expand it atomically.

		Raises:
			ValidationError: the change references unknown entities or would
				break the department tree.
			ConsistencyError: stored rows for affected documents are orphaned.
		"""
		with self._locked(lambda: self._lock_keys(change)):
			with self._transaction() as db:
				self._mutate(db, change)
				result = self._expand(db, change)
		logger.debug(
			f"Applied {change}: +{result.added} -{result.removed} rows "
			f"({result.pairs_examined} pairs examined)"
		)
		return result

	def expand(self, change: EntityChange, session: Session | None = None) -> ExpansionResult:
		"""Re-derive every row a change already applied to the entity tables affects.

		With ``session`` the work joins the caller's transaction; otherwise it
		runs in its own, under the change's locks.
		"""
		if session is not None:
			return self._expand(session, change)
		with self._locked(lambda: self._lock_keys(change)):
			with self._transaction() as db:
				return self._expand(db, change)

	def _mutate(self, db: Session, change: EntityChange) -> None:
		match change:
			case MemberAdded(department_id=dept, user_id=user):
				self._require(db, Department, dept)
				self._require(db, User, user)
				if not db.scalar(select(exists().where(
					DepartmentMember.department_id == dept,
					DepartmentMember.user_id == user,
				))):
					db.add(DepartmentMember(department_id=dept, user_id=user))
			case MemberRemoved(department_id=dept, user_id=user):
				db.execute(delete(DepartmentMember).where(
					DepartmentMember.department_id == dept,
					DepartmentMember.user_id == user,
				))
			case FollowerAdded(customer_id=customer, user_id=user):
				self._require(db, Customer, customer)
				self._require(db, User, user)
				if not db.scalar(select(exists().where(
					CustomerFollower.customer_id == customer,
					CustomerFollower.user_id == user,
				))):
					db.add(CustomerFollower(customer_id=customer, user_id=user))
			case FollowerRemoved(customer_id=customer, user_id=user):
				db.execute(delete(CustomerFollower).where(
					CustomerFollower.customer_id == customer,
					CustomerFollower.user_id == user,
				))
			case DepartmentReparented(department_id=dept, new_parent_id=parent):
				subtree = validate_reparent(db, dept, parent, self.max_dept_levels)
				move_department(db, dept, parent, subtree)
			case DocumentOwnerChanged(document_id=doc_id, owner_kind=kind, owner_id=owner):
				document = self._require(db, Document, doc_id)
				kind = OwnerKind(kind)
				self._require(db, Department if kind == OwnerKind.DEPARTMENT else Customer, owner)
				document.owner_kind = kind.value
				document.owner_id = owner
			case _:
				raise TypeError(f"Unsupported change {change!r}")
		db.flush()

	def _expand(self, db: Session, change: EntityChange) -> ExpansionResult:
		match change:
			case MemberAdded(department_id=dept, user_id=user) | MemberRemoved(department_id=dept, user_id=user):
				owners = get_ancestor_ids(db, dept, self.max_dept_levels)
				docs = self._documents_owned_by(db, OwnerKind.DEPARTMENT, owners)
				return self._rederive_pairs(db, {user: docs})

			case FollowerAdded(customer_id=customer, user_id=user) | FollowerRemoved(customer_id=customer, user_id=user):
				docs = self._documents_owned_by(db, OwnerKind.CUSTOMER, [customer])
				return self._rederive_pairs(db, {user: docs})

			case DepartmentReparented(department_id=dept):
				# members of the moved subtree lose the old ancestors' documents,
				# which are exactly their current department-owned rows, and
				# gain the new ancestors' documents
				subtree = get_subtree_ids(db, dept, self.max_dept_levels)
				users = get_subtree_member_ids(db, subtree)
				new_owners = get_ancestor_ids(db, dept, self.max_dept_levels)
				gained = self._documents_owned_by(db, OwnerKind.DEPARTMENT, new_owners)
				targets = {user: set(gained) for user in users}
				for user_ids in chunked(sorted(users), IN_CLAUSE_SIZE):
					for user_id, document_id in db.execute(
						select(FlatACLRow.user_id, FlatACLRow.document_id)
						.join(Document, Document.id == FlatACLRow.document_id)
						.where(
							FlatACLRow.user_id.in_(user_ids),
							Document.owner_kind == OwnerKind.DEPARTMENT.value,
						)
					).tuples():
						targets[user_id].add(document_id)
				return self._rederive_pairs(db, targets)

			case DocumentOwnerChanged(document_id=doc_id):
				return self._rederive_document(db, doc_id)

		raise TypeError(f"Unsupported change {change!r}")

	def _rederive_pairs(self, db: Session, targets: dict[int, set[int]]) -> ExpansionResult:
		"""Make the rows for ``{user: documents}`` match what the user can view."""
		all_docs = set().union(*targets.values()) if targets else set()
		self._raise_on_orphans(db, all_docs)
		documents = self._load_documents(db, all_docs)
		result = ExpansionResult(documents=len(all_docs), users=len(targets))

		for user_id, doc_ids in targets.items():
			doc_ids = {d for d in doc_ids if d in documents}
			if not doc_ids:
				continue
			reach = self._reach(db, user_id)
			granted: set[int] = set()
			stored: set[int] = set()
			for batch in chunked(sorted(doc_ids), IN_CLAUSE_SIZE):
				granted.update(db.scalars(select(DirectGrant.document_id).where(
					DirectGrant.user_id == user_id,
					DirectGrant.document_id.in_(batch),
				)))
				stored.update(db.scalars(select(FlatACLRow.document_id).where(
					FlatACLRow.user_id == user_id,
					FlatACLRow.document_id.in_(batch),
				)))

			should = {
				d for d in doc_ids
				if reach is not None and reach.sees(documents[d], d in granted)
			}
			result.pairs_examined += len(doc_ids)
			result.added += self._insert_rows(db, [(user_id, d) for d in should - stored])
			result.removed += self._delete_rows(db, user_id, stored - should)
		return result

	def _rederive_document(self, db: Session, document_id: int) -> ExpansionResult:
		"""Replace the viewer set of one document."""
		self._raise_on_orphans(db, {document_id})
		documents = self._load_documents(db, {document_id})
		stored = set(db.scalars(
			select(FlatACLRow.user_id).where(FlatACLRow.document_id == document_id)
		))
		should: set[int] = set()
		if document_id in documents:
			should = self._viewers(db, documents[document_id])

		removed = 0
		for user_id in stored - should:
			removed += self._delete_rows(db, user_id, {document_id})
		added = self._insert_rows(db, [(u, document_id) for u in should - stored])
		return ExpansionResult(
			added=added,
			removed=removed,
			pairs_examined=len(stored | should),
			documents=1,
			users=len(stored | should),
		)

	def _reach(self, db: Session, user_id: int) -> _Reach | None:
		if db.get(User, user_id) is None:
			return None
		departments: set[int] = set()
		for department_id in db.scalars(
			select(DepartmentMember.department_id).where(DepartmentMember.user_id == user_id)
		):
			departments.update(get_ancestor_ids(db, department_id, self.max_dept_levels))
		customers = set(db.scalars(
			select(CustomerFollower.customer_id).where(CustomerFollower.user_id == user_id)
		))
		return _Reach(user_id=user_id, departments=departments, customers=customers)

	def _viewers(self, db: Session, document: tuple) -> set[int]:
		document_id, owner_kind, owner_id, creator_id = document
		viewers = set(db.scalars(
			select(DirectGrant.user_id).where(DirectGrant.document_id == document_id)
		))
		if creator_id is not None:
			viewers.add(creator_id)
		if owner_kind == OwnerKind.DEPARTMENT.value:
			subtree = get_subtree_ids(db, owner_id, self.max_dept_levels)
			viewers |= get_subtree_member_ids(db, subtree)
		else:
			viewers.update(db.scalars(
				select(CustomerFollower.user_id).where(CustomerFollower.customer_id == owner_id)
			))
		return viewers

	def _raise_on_orphans(self, db: Session, document_ids: set[int]) -> None:
		"""Stop an expansion that would build on rows naming deleted users."""
		issues = []
		for batch in chunked(sorted(document_ids), IN_CLAUSE_SIZE):
			issues.extend(
				ConsistencyIssue('orphaned', user_id, document_id)
				for user_id, document_id in db.execute(
					select(FlatACLRow.user_id, FlatACLRow.document_id).where(
						FlatACLRow.document_id.in_(batch),
						FlatACLRow.user_id.not_in(select(User.id)),
					)
				).tuples()
			)
		if issues:
			logger.error(f"Expansion aborted: {len(issues)} orphaned rows, first {issues[0]}")
			raise ConsistencyError(f"{len(issues)} orphaned flat ACL rows", issues)

	def verify(
		self,
		document_ids: Iterable[int] | None = None,
		strict: bool = False,
	) -> list[ConsistencyIssue]:
		"""Compare stored rows against the viewers derived from the entity tables.

		Raises:
			ConsistencyError: with ``strict`` and at least one issue.
		"""
		issues: list[ConsistencyIssue] = []
		with self.session_factory() as db, storage_errors():
			index = ViewerIndex.from_session(db, self.max_dept_levels)
			user_ids = set(db.scalars(select(User.id)))

			stmt = select(Document.id, Document.owner_kind, Document.owner_id, Document.creator_id)
			if document_ids is not None:
				wanted = sorted(set(document_ids))
				batches = [
					db.execute(stmt.where(Document.id.in_(batch))).tuples().all()
					for batch in chunked(wanted, IN_CLAUSE_SIZE)
				]
			else:
				wanted = None
				batches = chunked(db.execute(stmt.order_by(Document.id)).tuples().all(), IN_CLAUSE_SIZE)

			for batch in batches:
				stored: dict[int, set[int]] = defaultdict(set)
				for user_id, document_id in db.execute(
					select(FlatACLRow.user_id, FlatACLRow.document_id).where(
						FlatACLRow.document_id.in_([row[0] for row in batch])
					)
				).tuples():
					stored[document_id].add(user_id)

				for document_id, owner_kind, owner_id, creator_id in batch:
					expected = index.viewers(document_id, owner_kind, owner_id, creator_id)
					actual = stored.get(document_id, set())
					for user_id in sorted(expected - actual):
						issues.append(ConsistencyIssue('missing', user_id, document_id))
					for user_id in sorted(actual - expected):
						kind = 'extra' if user_id in user_ids else 'orphaned'
						issues.append(ConsistencyIssue(kind, user_id, document_id))

			if wanted is None:
				for user_id, document_id in db.execute(
					select(FlatACLRow.user_id, FlatACLRow.document_id).where(
						FlatACLRow.document_id.not_in(select(Document.id))
					)
				).tuples():
					issues.append(ConsistencyIssue('orphaned', user_id, document_id))

		if issues:
			logger.warning(f"Flat ACL verification found {len(issues)} issues, first {issues[0]}")
			if strict:
				raise ConsistencyError(f"{len(issues)} flat ACL inconsistencies", issues)
		else:
			logger.info("Flat ACL verification passed")
		return issues

	def _lock_keys(self, change: EntityChange) -> list[LockKey]:
		"""Owner scopes a change can touch, read outside the change's transaction."""
		with self.session_factory() as db, storage_errors():
			match change:
				case MemberAdded(department_id=dept) | MemberRemoved(department_id=dept):
					return [('department', get_root_id(db, dept, self.max_dept_levels))]
				case FollowerAdded(customer_id=customer) | FollowerRemoved(customer_id=customer):
					return [('customer', customer)]
				case DepartmentReparented(department_id=dept, new_parent_id=parent):
					keys = [('department', get_root_id(db, dept, self.max_dept_levels))]
					if parent is not None:
						keys.append(('department', get_root_id(db, parent, self.max_dept_levels)))
					return keys
				case DocumentOwnerChanged(document_id=doc_id, owner_kind=kind, owner_id=owner):
					keys = self._owner_scopes(db, [doc_id])
					if OwnerKind(kind) == OwnerKind.DEPARTMENT:
						keys.append(('department', get_root_id(db, owner, self.max_dept_levels)))
					else:
						keys.append(('customer', owner))
					return keys
		raise TypeError(f"Unsupported change {change!r}")

	def _lock_keys_for_documents(self, document_ids: list[int]) -> list[LockKey]:
		with self.session_factory() as db, storage_errors():
			return self._owner_scopes(db, document_ids)

	def _owner_scopes(self, db: Session, document_ids: list[int]) -> list[LockKey]:
		keys = []
		for document_id in document_ids:
			document = db.get(Document, document_id)
			if document is None:
				keys.append(('document', document_id))
			elif document.owner_kind == OwnerKind.DEPARTMENT.value:
				keys.append(('department', get_root_id(db, document.owner_id, self.max_dept_levels)))
			else:
				keys.append(('customer', document.owner_id))
		return keys

	@staticmethod
	def _require(db: Session, model, entity_id: int):
		entity = db.get(model, entity_id)
		if entity is None:
			raise ValidationError(f"Unknown {model.__name__.lower()} {entity_id}")
		return entity

	@staticmethod
	def _grant_exists(db: Session, user_id: int, document_id: int) -> bool:
		return db.scalar(select(exists().where(
			DirectGrant.user_id == user_id,
			DirectGrant.document_id == document_id,
		)))

	@staticmethod
	def _documents_owned_by(db: Session, kind: OwnerKind, owner_ids: list[int]) -> set[int]:
		if not owner_ids:
			return set()
		return set(db.scalars(select(Document.id).where(
			Document.owner_kind == kind.value,
			Document.owner_id.in_(owner_ids),
		)))

	@staticmethod
	def _load_documents(db: Session, document_ids: set[int]) -> dict[int, tuple]:
		documents = {}
		for batch in chunked(sorted(document_ids), IN_CLAUSE_SIZE):
			for row in db.execute(
				select(Document.id, Document.owner_kind, Document.owner_id, Document.creator_id)
				.where(Document.id.in_(batch))
			).tuples():
				documents[row[0]] = row
		return documents

	@staticmethod
	def _insert_rows(db: Session, pairs: list[tuple[int, int]]) -> int:
		for batch in chunked(pairs, IN_CLAUSE_SIZE):
			db.execute(
				insert(FlatACLRow),
				[{'user_id': u, 'document_id': d} for u, d in batch],
			)
		return len(pairs)

	@staticmethod
	def _delete_rows(db: Session, user_id: int, document_ids: set[int]) -> int:
		removed = 0
		for batch in chunked(sorted(document_ids), IN_CLAUSE_SIZE):
			removed += db.execute(delete(FlatACLRow).where(
				FlatACLRow.user_id == user_id,
				FlatACLRow.document_id.in_(batch),
			)).rowcount
		return removed


class FlatEngine:
	"""Benchmark-facing adapter over ``FlatACLRepository``."""

	name = "flat"

	def __init__(self, session_factory: sessionmaker[Session], **kwargs):
		self.repository = FlatACLRepository(session_factory, **kwargs)

	def check(self, user_id: int, document_id: int) -> bool:
		return self.repository.check(user_id, document_id)

	def apply(self, change: EntityChange) -> int:
		"""Apply a change; returns the number of rows added or removed."""
		return self.repository.apply(change).rows_touched

	def check_batch(self, user_id: int, document_ids: Iterable[int]) -> dict[int, bool]:
		return self.repository.check_batch(user_id, document_ids)

	def grant(self, user_id: int, document_id: int) -> bool:
		return self.repository.grant(user_id, document_id).added > 0

	def revoke(self, user_id: int, document_id: int) -> bool:
		return self.repository.revoke(user_id, document_id).removed > 0

	def list_viewable_documents(self, user_id: int) -> set[int]:
		return self.repository.list_viewable_documents(user_id)

	def count(self) -> int:
		return self.repository.count_rows()

	def storage_stats(self) -> dict:
		return self.repository.stats()
