# (c) Copyright Datacraft, 2026
"""Deterministic synthetic organization: departments, users, customers, documents.

The same ``CorpusConfig`` (seed included) always yields the same ``Corpus``.
A corpus is an immutable snapshot; both engines' loaders read it as is.
"""
import logging
import random
from dataclasses import dataclass
from functools import cached_property
from typing import Iterator

from pydantic import BaseModel, ConfigDict, Field

from permbench.config import Settings
from permbench.db.orm import OwnerKind
from permbench.flat.index import ViewerIndex
from permbench.rebac.engine import (
	member_key,
	subdepartment_key,
	follower_key,
	owner_key,
	creator_key,
	viewer_key,
)
from permbench.rebac.tuples import TupleKey

logger = logging.getLogger(__name__)

ROOT_DEPARTMENTS = 10


class CorpusConfig(BaseModel):
	model_config = ConfigDict(frozen=True)

	num_users: int = Field(gt=0, default=10_000)
	num_departments: int = Field(gt=0, default=2_000)
	num_customers: int = Field(gt=0, default=100_000)
	num_documents: int = Field(gt=0, default=500_000)
	max_dept_levels: int = Field(ge=1, default=5)
	max_dept_members: int = Field(gt=0, default=50)
	max_customer_followers: int = Field(ge=0, default=10)
	batch_size: int = Field(gt=0, default=1_000)
	department_owned_ratio: float = Field(ge=0, le=1, default=0.3)
	direct_grant_ratio: float = Field(ge=0, le=1, default=0.05)
	creator_ratio: float = Field(ge=0, le=1, default=0.5)
	seed: int = 42

	@classmethod
	def from_settings(cls, settings: Settings, **overrides) -> "CorpusConfig":
		values = {
			name: getattr(settings, name)
			for name in (
				'num_users', 'num_departments', 'num_customers', 'num_documents',
				'max_dept_levels', 'max_dept_members', 'max_customer_followers',
				'batch_size', 'seed',
			)
		}
		values.update({k: v for k, v in overrides.items() if v is not None})
		return cls(**values)


@dataclass(frozen=True)
class DepartmentRecord:
	id: int
	name: str
	parent_id: int | None
	level: int


@dataclass(frozen=True)
class UserRecord:
	id: int
	name: str
	department_id: int


@dataclass(frozen=True)
class CustomerRecord:
	id: int
	name: str
	follower_ids: tuple[int, ...]


@dataclass(frozen=True)
class DocumentRecord:
	id: int
	title: str
	owner_kind: OwnerKind
	owner_id: int
	creator_id: int | None


@dataclass(frozen=True)
class Corpus:
	"""
	Generated organization.

	Every collection is ordered by id and ids start at 1, so
	``departments[i - 1]`` is department ``i``.
	"""
	config: CorpusConfig
	departments: tuple[DepartmentRecord, ...]
	users: tuple[UserRecord, ...]
	customers: tuple[CustomerRecord, ...]
	documents: tuple[DocumentRecord, ...]
	# (user_id, document_id)
	grants: tuple[tuple[int, int], ...]

	def department(self, department_id: int) -> DepartmentRecord:
		return self.departments[department_id - 1]

	def document(self, document_id: int) -> DocumentRecord:
		return self.documents[document_id - 1]

	@property
	def depth(self) -> int:
		return max((d.level for d in self.departments), default=0)

	@cached_property
	def viewer_index(self) -> ViewerIndex:
		members: dict[int, list[int]] = {}
		for user in self.users:
			members.setdefault(user.department_id, []).append(user.id)
		grants: dict[int, list[int]] = {}
		for user_id, document_id in self.grants:
			grants.setdefault(document_id, []).append(user_id)
		return ViewerIndex(
			parents={d.id: d.parent_id for d in self.departments},
			members=members,
			followers={c.id: c.follower_ids for c in self.customers},
			grants=grants,
			max_levels=self.config.max_dept_levels,
		)

	def viewers(self, document_id: int) -> frozenset[int]:
		"""Reference answer: every user who may view the document."""
		document = self.document(document_id)
		return frozenset(self.viewer_index.viewers(
			document.id, document.owner_kind, document.owner_id, document.creator_id
		))

	def relation_tuples(self) -> Iterator[TupleKey]:
		"""The corpus as relationship tuples."""
		for department in self.departments:
			if department.parent_id is not None:
				yield subdepartment_key(department.parent_id, department.id)
		for user in self.users:
			yield member_key(user.department_id, user.id)
		for customer in self.customers:
			for user_id in customer.follower_ids:
				yield follower_key(customer.id, user_id)
		for document in self.documents:
			yield owner_key(document.id, document.owner_kind, document.owner_id)
			if document.creator_id is not None:
				yield creator_key(document.id, document.creator_id)
		for user_id, document_id in self.grants:
			yield viewer_key(document_id, user_id)

	def flat_rows(self) -> Iterator[tuple[int, int]]:
		"""The corpus pre-flattened to ``(user_id, document_id)`` pairs."""
		for document in self.documents:
			for user_id in sorted(self.viewers(document.id)):
				yield user_id, document.id


def generate_corpus(config: CorpusConfig) -> Corpus:
	"""Build a corpus; deterministic for a given config."""
	rng = random.Random(config.seed)

	departments = _generate_departments(rng, config)
	users = _generate_users(rng, config)

	customers = []
	for customer_id in range(1, config.num_customers + 1):
		count = min(rng.randint(0, config.max_customer_followers), config.num_users)
		followers = tuple(sorted(rng.sample(range(1, config.num_users + 1), count)))
		customers.append(CustomerRecord(customer_id, f"Customer {customer_id}", followers))

	documents = []
	grants = []
	for document_id in range(1, config.num_documents + 1):
		if rng.random() < config.department_owned_ratio:
			owner_kind = OwnerKind.DEPARTMENT
			owner_id = rng.randint(1, config.num_departments)
		else:
			owner_kind = OwnerKind.CUSTOMER
			owner_id = rng.randint(1, config.num_customers)
		creator_id = None
		if rng.random() < config.creator_ratio:
			creator_id = rng.randint(1, config.num_users)
		documents.append(DocumentRecord(
			document_id, f"Document {document_id}", owner_kind, owner_id, creator_id
		))
		if rng.random() < config.direct_grant_ratio:
			grants.append((rng.randint(1, config.num_users), document_id))

	corpus = Corpus(
		config=config,
		departments=tuple(departments),
		users=tuple(users),
		customers=tuple(customers),
		documents=tuple(documents),
		grants=tuple(grants),
	)
	logger.info(
		f"Generated corpus: {len(departments)} departments (depth {corpus.depth}), "
		f"{len(users)} users, {len(customers)} customers, {len(documents)} documents, "
		f"{len(grants)} direct grants"
	)
	return corpus


def _generate_departments(rng: random.Random, config: CorpusConfig) -> list[DepartmentRecord]:
	"""A forest of ``ROOT_DEPARTMENTS`` trees; children always get larger ids than parents."""
	departments: list[DepartmentRecord] = []
	# departments that may still take children
	open_parents: list[DepartmentRecord] = []
	roots = min(ROOT_DEPARTMENTS, config.num_departments)

	for department_id in range(1, config.num_departments + 1):
		if department_id <= roots or not open_parents:
			parent_id, level = None, 1
		else:
			parent = rng.choice(open_parents)
			parent_id, level = parent.id, parent.level + 1
		department = DepartmentRecord(department_id, f"Department {department_id}", parent_id, level)
		departments.append(department)
		if level < config.max_dept_levels:
			open_parents.append(department)
	return departments


def _generate_users(rng: random.Random, config: CorpusConfig) -> list[UserRecord]:
	"""One department per user, at most ``max_dept_members`` per department while room remains."""
	sizes = [0] * (config.num_departments + 1)
	capacity = config.num_departments * config.max_dept_members
	if config.num_users > capacity:
		logger.warning(
			f"{config.num_users} users exceed department capacity {capacity}; "
			f"some departments will hold more than {config.max_dept_members} members"
		)

	users = []
	for user_id in range(1, config.num_users + 1):
		department_id = rng.randint(1, config.num_departments)
		if user_id <= capacity:
			while sizes[department_id] >= config.max_dept_members:
				department_id = department_id % config.num_departments + 1
		sizes[department_id] += 1
		users.append(UserRecord(user_id, f"User {user_id}", department_id))
	return users
