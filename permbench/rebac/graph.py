# (c) Copyright Datacraft, 2026
"""Relationship graph traversal and permission checking."""
import logging
from dataclasses import dataclass, field

from permbench.utils import as_id, storage_errors
from .schema import (
	ObjectType,
	Relations,
	RelationshipGraph,
	Rewrite,
	This,
	ComputedUserset,
	TupleToUserset,
	Union,
	create_default_graph,
)
from .tuples import RelationshipStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 8

Node = tuple[str, str, str]


@dataclass
class CheckResult:
	"""Result of a permission check."""
	allowed: bool
	path: list[str] = field(default_factory=list)
	evaluation_count: int = 0
	cycle_detected: bool = False
	depth_exceeded: bool = False


@dataclass
class _Request:
	"""State scoped to one ``check`` call."""
	user_id: str
	# nodes on the current evaluation path
	visiting: set[Node] = field(default_factory=set)
	memo: dict[Node, list[str] | None] = field(default_factory=dict)
	evaluations: int = 0
	cycle_detected: bool = False
	depth_exceeded: bool = False


class RelationshipChecker:
	"""
	Check permissions using relationship graph traversal.

	Implements Zanzibar-style check algorithm with:
	- Direct tuple lookup
	- Userset pointer expansion
	- Computed relation and tuple-to-userset rewrites
	- Short-circuit union

	A node ``(object_type, object_id, relation)`` already on the current path
	resolves to false for that path, so cyclic usersets terminate. Results are
	memoized for the duration of one request only.
	"""

	def __init__(
		self,
		store: RelationshipStore,
		graph: RelationshipGraph | None = None,
		max_depth: int = DEFAULT_MAX_DEPTH,
	):
		self.store = store
		self.graph = graph or store.graph or create_default_graph()
		self.max_depth = max_depth

	def check(
		self,
		object_type: str,
		object_id: str | int,
		relation: str,
		subject_user: str | int,
	) -> bool:
		"""Whether ``user:subject_user`` has ``relation`` on the object.

		Missing objects, relations and users resolve to False.

		Raises:
			TransientStorageError: the database could not be reached.
		"""
		return self.check_detailed(object_type, object_id, relation, subject_user).allowed

	def check_detailed(
		self,
		object_type: str,
		object_id: str | int,
		relation: str,
		subject_user: str | int,
	) -> CheckResult:
		"""
		Check if a user has relation to object.

		Args:
			object_type: Type of object (document, department, customer)
			object_id: ID of the object
			relation: Relation to check (viewer, member, ...)
			subject_user: ID of the user

		Returns:
			CheckResult with allowed status and the granting path
		"""
		request = _Request(user_id=as_id(subject_user))
		with storage_errors():
			path = self._evaluate(
				request,
				(object_type, as_id(object_id), relation),
				depth=0,
			)

		if request.cycle_detected:
			logger.debug(f"Cycle cut while checking {object_type}:{object_id}#{relation}")
		return CheckResult(
			allowed=path is not None,
			path=path or [],
			evaluation_count=request.evaluations,
			cycle_detected=request.cycle_detected,
			depth_exceeded=request.depth_exceeded,
		)

	def _evaluate(self, request: _Request, node: Node, depth: int) -> list[str] | None:
		"""Evaluate one node; returns the granting path or None."""
		if node in request.memo:
			return request.memo[node]
		if node in request.visiting:
			request.cycle_detected = True
			return None
		if depth > self.max_depth:
			if not request.depth_exceeded:
				logger.warning(f"Max depth {self.max_depth} reached checking {_fmt(node)}")
			request.depth_exceeded = True
			return None

		object_type, _, relation = node
		definition = self.graph.get_definition(object_type, relation)
		if definition is None:
			return None

		request.evaluations += 1
		request.visiting.add(node)
		try:
			path = self._rewrite(request, node, definition.rewrite, depth)
		finally:
			request.visiting.discard(node)

		if path is not None:
			path = [_fmt(node)] + path
			request.memo[node] = path
		elif not request.depth_exceeded:
			# a depth-truncated false may be true from a shallower path
			request.memo[node] = None
		return path

	def _rewrite(
		self,
		request: _Request,
		node: Node,
		rewrite: Rewrite,
		depth: int,
	) -> list[str] | None:
		object_type, object_id, relation = node

		match rewrite:
			case This():
				# 1. Direct tuple
				if self.store.has_subject(
					object_type=object_type,
					object_id=object_id,
					relation=relation,
					subject_type=ObjectType.USER.value,
					subject_id=request.user_id,
				):
					return [f"@user:{request.user_id}"]
				# 2. Userset pointers, e.g. department:1#member@department:2#member
				for subj_type, subj_id, subj_relation in self.store.get_usersets(
					object_type, object_id, relation
				):
					path = self._evaluate(request, (subj_type, subj_id, subj_relation), depth + 1)
					if path is not None:
						return path
				return None

			case ComputedUserset(relation=computed):
				return self._evaluate(request, (object_type, object_id, computed), depth + 1)

			case TupleToUserset(tupleset=tupleset, computed_relation=computed):
				for target_type, target_id in self.store.get_subjects(
					object_type, object_id, tupleset
				):
					path = self._evaluate(request, (target_type, target_id, computed), depth + 1)
					if path is not None:
						return path
				return None

			case Union(children=children):
				for child in children:
					path = self._rewrite(request, node, child, depth)
					if path is not None:
						return path
				return None

		raise TypeError(f"Unsupported rewrite {rewrite!r}")

	def list_viewable_documents(self, user_id: str | int) -> set[str]:
		"""
		All document ids the user can view.

		Walks the viewer rewrite backwards: the user's departments and every
		department whose member userset contains them, followed customers,
		owned documents and direct grants.
		"""
		store = self.store
		uid = [as_id(user_id)]
		user = ObjectType.USER.value
		department = ObjectType.DEPARTMENT.value
		customer = ObjectType.CUSTOMER.value
		document = ObjectType.DOCUMENT.value

		with storage_errors():
			departments = {
				obj_id for _, obj_id in store.get_objects(user, uid, Relations.MEMBER, department)
			}
			frontier = list(departments)
			for _ in range(self.max_depth):
				if not frontier:
					break
				parents = store.get_objects(
					department,
					frontier,
					Relations.MEMBER,
					department,
					subject_relation=Relations.MEMBER,
				)
				frontier = [obj_id for _, obj_id in parents if obj_id not in departments]
				departments.update(frontier)

			customers = [
				obj_id for _, obj_id in store.get_objects(user, uid, Relations.FOLLOWER, customer)
			]

			documents: set[str] = set()
			for subject_type, subject_ids, relation in (
				(department, sorted(departments), Relations.OWNER_DEPARTMENT),
				(customer, customers, Relations.OWNER_CUSTOMER),
				(user, uid, Relations.OWNER),
				(user, uid, Relations.VIEWER),
			):
				documents.update(
					obj_id for _, obj_id in store.get_objects(
						subject_type, subject_ids, relation, document
					)
				)
		return documents


def _fmt(node: Node) -> str:
	object_type, object_id, relation = node
	return f"{object_type}:{object_id}#{relation}"
