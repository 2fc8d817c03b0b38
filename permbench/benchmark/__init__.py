# (c) Copyright Datacraft, 2026
"""Side-by-side benchmark of the tuple and flat ACL engines."""
from .models import (
	BatchRequest,
	BenchmarkConfig,
	CheckRequest,
	EngineReport,
	LatencyStats,
	Mismatch,
	PermissionEngine,
	Scenario,
)
from .corpus import build_request_corpus
from .runner import (
	BenchmarkRunner,
	Deadline,
	build_batches,
	build_mutation_changes,
	cross_check,
	cross_check_listings,
	run_comparison,
)
from .reporting import ReportWriter

__all__ = [
	'BatchRequest',
	'BenchmarkConfig',
	'CheckRequest',
	'EngineReport',
	'LatencyStats',
	'Mismatch',
	'PermissionEngine',
	'Scenario',
	'build_request_corpus',
	'BenchmarkRunner',
	'Deadline',
	'build_batches',
	'build_mutation_changes',
	'cross_check',
	'cross_check_listings',
	'run_comparison',
	'ReportWriter',
]
