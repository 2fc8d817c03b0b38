# (c) Copyright Datacraft, 2026
"""Synthetic organization corpus and its loaders."""
from .generator import (
	Corpus,
	CorpusConfig,
	CustomerRecord,
	DepartmentRecord,
	DocumentRecord,
	UserRecord,
	generate_corpus,
)
from .loader import LoadSummary, load_corpus

__all__ = [
	'Corpus',
	'CorpusConfig',
	'CustomerRecord',
	'DepartmentRecord',
	'DocumentRecord',
	'UserRecord',
	'generate_corpus',
	'LoadSummary',
	'load_corpus',
]
