# (c) Copyright Datacraft, 2026
"""Batch loading of a generated corpus into the shared database."""
import logging
from dataclasses import dataclass, asdict
from typing import Iterable

from sqlalchemy import insert
from sqlalchemy.orm import Session, sessionmaker

from permbench.config import get_settings
from permbench.db.departments import Department, DepartmentMember
from permbench.db.orm import Customer, CustomerFollower, DirectGrant, Document, User
from permbench.flat.models import FlatACLRow
from permbench.rebac.schema import RelationshipGraph, create_default_graph
from permbench.rebac.tuples import RelationTuple
from permbench.utils import chunked, retry_transient, storage_errors
from .generator import Corpus

logger = logging.getLogger(__name__)


@dataclass
class LoadSummary:
	departments: int = 0
	users: int = 0
	members: int = 0
	customers: int = 0
	followers: int = 0
	documents: int = 0
	grants: int = 0
	tuples: int = 0
	flat_rows: int = 0

	def as_dict(self) -> dict:
		return asdict(self)


def load_corpus(
	session_factory: sessionmaker[Session],
	corpus: Corpus,
	batch_size: int | None = None,
	graph: RelationshipGraph | None = None,
) -> LoadSummary:
	"""
	Load entities, relationship tuples and flat ACL rows.

	Each batch of ``batch_size`` rows is its own transaction. Every tuple is
	validated against the relation schema before its batch is written.

	Raises:
		ValidationError: the corpus produced a tuple the schema rejects.
	"""
	batch_size = batch_size or corpus.config.batch_size
	graph = graph or create_default_graph()
	settings = get_settings()
	insert_batch = retry_transient(
		attempts=settings.retry_attempts,
		backoff_seconds=settings.retry_backoff_seconds,
	)(_insert_batch)

	def load(model, rows: Iterable[dict]) -> int:
		count = 0
		for batch in chunked(rows, batch_size):
			insert_batch(session_factory, model, batch)
			count += len(batch)
		logger.info(f"Loaded {count} rows into {model.__tablename__}")
		return count

	summary = LoadSummary()
	summary.users = load(User, ({'id': u.id, 'name': u.name} for u in corpus.users))
	# parents always precede their children
	summary.departments = load(Department, (
		{'id': d.id, 'name': d.name, 'parent_id': d.parent_id, 'level': d.level}
		for d in corpus.departments
	))
	summary.members = load(DepartmentMember, (
		{'department_id': u.department_id, 'user_id': u.id} for u in corpus.users
	))
	summary.customers = load(Customer, ({'id': c.id, 'name': c.name} for c in corpus.customers))
	summary.followers = load(CustomerFollower, (
		{'customer_id': c.id, 'user_id': user_id}
		for c in corpus.customers
		for user_id in c.follower_ids
	))
	summary.documents = load(Document, (
		{
			'id': d.id,
			'title': d.title,
			'owner_kind': d.owner_kind.value,
			'owner_id': d.owner_id,
			'creator_id': d.creator_id,
		}
		for d in corpus.documents
	))
	summary.grants = load(DirectGrant, (
		{'user_id': user_id, 'document_id': document_id}
		for user_id, document_id in corpus.grants
	))
	summary.tuples = load(RelationTuple, _tuple_rows(corpus, graph))
	summary.flat_rows = load(FlatACLRow, (
		{'user_id': user_id, 'document_id': document_id}
		for user_id, document_id in corpus.flat_rows()
	))
	return summary


def _tuple_rows(corpus: Corpus, graph: RelationshipGraph) -> Iterable[dict]:
	for key in corpus.relation_tuples():
		graph.validate(key)
		yield {
			'object_type': key.object_type,
			'object_id': key.object_id,
			'relation': key.relation,
			'subject_type': key.subject_type,
			'subject_id': key.subject_id,
			'subject_relation': key.subject_relation or '',
		}


def _insert_batch(session_factory: sessionmaker[Session], model, rows: list[dict]) -> None:
	with session_factory() as db, storage_errors():
		db.execute(insert(model), rows)
		db.commit()
