# (c) Copyright Datacraft, 2026
"""Relationship-Based Access Control (ReBAC) - Zanzibar-style module."""
from .schema import RelationshipGraph, ObjectType, Relations, create_default_graph
from .tuples import RelationTuple, RelationshipStore, TupleKey
from .graph import RelationshipChecker, CheckResult
from .engine import TupleEngine

__all__ = [
	'RelationTuple',
	'RelationshipStore',
	'TupleKey',
	'RelationshipGraph',
	'RelationshipChecker',
	'CheckResult',
	'ObjectType',
	'Relations',
	'create_default_graph',
	'TupleEngine',
]
