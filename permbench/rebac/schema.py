# (c) Copyright Datacraft, 2026
"""Relation rewrite rules for the organizational namespace.

This is the schema/type definition, not the data. The set of relations is
fixed; every rewrite is one of four closed variants:

- ``This``: tuples stored on the relation itself, either a concrete user or a
  userset pointer ``type:id#relation``
- ``ComputedUserset``: another relation on the same object
- ``TupleToUserset``: follow the objects named by a tupleset relation, then
  evaluate a relation on each of them
- ``Union``: any branch grants
"""
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from permbench.errors import ValidationError

if TYPE_CHECKING:
	from .tuples import TupleKey


class ObjectType(str, Enum):
	USER = 'user'
	DEPARTMENT = 'department'
	CUSTOMER = 'customer'
	DOCUMENT = 'document'


class Relations:
	"""Recognized relation names."""
	MEMBER = 'member'
	FOLLOWER = 'follower'
	OWNER = 'owner'
	OWNER_DEPARTMENT = 'owner_department'
	OWNER_CUSTOMER = 'owner_customer'
	VIEWER = 'viewer'


@dataclass(frozen=True)
class This:
	pass


@dataclass(frozen=True)
class ComputedUserset:
	relation: str


@dataclass(frozen=True)
class TupleToUserset:
	tupleset: str
	computed_relation: str


@dataclass(frozen=True)
class Union:
	children: tuple["Rewrite", ...]


Rewrite = This | ComputedUserset | TupleToUserset | Union


@dataclass(frozen=True)
class SubjectKind:
	"""A subject shape a relation accepts: ``user``, ``department`` or ``department#member``."""
	type: str
	relation: str | None = None

	def __str__(self):
		return f"{self.type}#{self.relation}" if self.relation else self.type


@dataclass(frozen=True)
class RelationDefinition:
	"""A relation, its rewrite and the subjects that may be written to it."""
	name: str
	rewrite: Rewrite
	allowed_subjects: tuple[SubjectKind, ...] = ()


class RelationshipGraph:
	"""Defines the relationship model for the authorization system."""

	def __init__(self):
		self._definitions: dict[str, dict[str, RelationDefinition]] = {}

	def define_type(
		self,
		object_type: str,
		relations: dict[str, RelationDefinition],
	):
		"""Define relations for an object type."""
		self._definitions[object_type] = relations

	def get_definition(
		self,
		object_type: str,
		relation: str,
	) -> RelationDefinition | None:
		"""Get relation definition."""
		type_defs = self._definitions.get(object_type, {})
		return type_defs.get(relation)

	def validate(self, key: "TupleKey") -> None:
		"""Reject a tuple the schema cannot store.

		Raises:
			ValidationError: unknown relation, unknown userset relation, or a
				subject shape the relation does not accept.
		"""
		definition = self.get_definition(key.object_type, key.relation)
		if definition is None:
			raise ValidationError(
				f"Unknown relation {key.object_type}#{key.relation}"
			)
		if not key.object_id or not key.subject_id:
			raise ValidationError(f"Empty object or subject id in {key}")

		if key.subject_relation:
			if self.get_definition(key.subject_type, key.subject_relation) is None:
				raise ValidationError(
					f"Userset {key.subject_type}#{key.subject_relation} "
					f"is not defined for type {key.subject_type}"
				)
		elif key.subject_type != ObjectType.USER.value and key.subject_type not in self._definitions:
			raise ValidationError(f"Unknown subject type {key.subject_type}")

		kind = SubjectKind(key.subject_type, key.subject_relation or None)
		if kind not in definition.allowed_subjects:
			allowed = ', '.join(str(k) for k in definition.allowed_subjects)
			raise ValidationError(
				f"{key.object_type}#{key.relation} does not accept subject {kind} "
				f"(allowed: {allowed})"
			)


USER = SubjectKind(ObjectType.USER.value)


def create_default_graph() -> RelationshipGraph:
	"""Create the relationship graph for departments, customers and documents."""
	graph = RelationshipGraph()

	# department#member = direct members ∪ member of every child department.
	# The loader writes department:<parent>#member@department:<child>#member.
	graph.define_type(ObjectType.DEPARTMENT.value, {
		Relations.MEMBER: RelationDefinition(
			name=Relations.MEMBER,
			rewrite=This(),
			allowed_subjects=(
				USER,
				SubjectKind(ObjectType.DEPARTMENT.value, Relations.MEMBER),
			),
		),
	})

	graph.define_type(ObjectType.CUSTOMER.value, {
		Relations.FOLLOWER: RelationDefinition(
			name=Relations.FOLLOWER,
			rewrite=This(),
			allowed_subjects=(USER,),
		),
	})

	graph.define_type(ObjectType.DOCUMENT.value, {
		Relations.OWNER: RelationDefinition(
			name=Relations.OWNER,
			rewrite=This(),
			allowed_subjects=(USER,),
		),
		Relations.OWNER_DEPARTMENT: RelationDefinition(
			name=Relations.OWNER_DEPARTMENT,
			rewrite=This(),
			allowed_subjects=(SubjectKind(ObjectType.DEPARTMENT.value),),
		),
		Relations.OWNER_CUSTOMER: RelationDefinition(
			name=Relations.OWNER_CUSTOMER,
			rewrite=This(),
			allowed_subjects=(SubjectKind(ObjectType.CUSTOMER.value),),
		),
		Relations.VIEWER: RelationDefinition(
			name=Relations.VIEWER,
			rewrite=Union((
				This(),
				ComputedUserset(Relations.OWNER),
				TupleToUserset(Relations.OWNER_DEPARTMENT, Relations.MEMBER),
				TupleToUserset(Relations.OWNER_CUSTOMER, Relations.FOLLOWER),
			)),
			allowed_subjects=(USER,),
		),
	})

	return graph
