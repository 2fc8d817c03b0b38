# (c) Copyright Datacraft, 2026
"""Command line entry point: generate a corpus, benchmark, verify."""
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from permbench import __version__
from permbench.benchmark import (
	BenchmarkConfig,
	EngineReport,
	ReportWriter,
	Scenario,
	build_request_corpus,
	cross_check,
	run_comparison,
)
from permbench.config import get_settings
from permbench.db import create_db_engine, create_session_factory, init_db, reset_db
from permbench.db.departments import get_tree_depth
from permbench.errors import ConsistencyError, PermbenchError
from permbench.fixtures import CorpusConfig, generate_corpus, load_corpus
from permbench.flat import FlatEngine
from permbench.rebac import TupleEngine

console = Console()
logger = logging.getLogger(__name__)


def _session_factory(db_url: Optional[str]):
	engine = create_db_engine(db_url)
	init_db(engine)
	return engine, create_session_factory(engine)


def build_engines(session_factory) -> tuple[TupleEngine, FlatEngine]:
	"""Both engines, sized for the deepest department tree actually stored."""
	with session_factory() as db:
		levels = max(get_settings().max_dept_levels, get_tree_depth(db))
	logger.debug(f"Department tree depth limit: {levels}")
	return (
		TupleEngine(session_factory, max_dept_levels=levels),
		FlatEngine(session_factory, max_dept_levels=levels),
	)


def display_reports(reports: list[EngineReport]) -> None:
	table = Table(title="Benchmark results")
	for column in (
		"Engine", "Scenario", "Operation", "OK", "Errors", "Mean ms", "p50 ms", "p95 ms",
		"p99 ms", "Max ms", "req/s", "Mismatches", "Rows touched", "Stored", "Deadline",
	):
		table.add_column(column, justify="left" if column in ("Engine", "Scenario", "Operation") else "right")

	for report in reports:
		latency = report.latency
		table.add_row(
			report.engine,
			report.scenario.value,
			report.operation,
			str(report.completed),
			str(report.errors),
			f"{latency.mean:.3f}",
			f"{latency.p50:.3f}",
			f"{latency.p95:.3f}",
			f"{latency.p99:.3f}",
			f"{latency.max:.3f}",
			f"{latency.throughput:.1f}",
			f"[red]{report.mismatches}[/red]" if report.mismatches else "0",
			"-" if report.rows_touched is None else str(report.rows_touched),
			"-" if report.stored_records is None else str(report.stored_records),
			"[yellow]exceeded[/yellow]" if report.deadline_exceeded else "ok",
		)
	console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option('--db-url', envvar='PB_DB_URL', help='SQLAlchemy database URL')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), help='Log level')
@click.pass_context
def main(ctx: click.Context, db_url: Optional[str], log_level: Optional[str]) -> None:
	"""Compare a relationship-tuple engine with a flattened ACL."""
	settings = get_settings()
	logging.basicConfig(
		level=log_level or settings.log_level.value,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	ctx.obj = {'db_url': db_url or settings.db_url}


@main.command()
@click.option('--users', type=int, help='Number of users')
@click.option('--departments', type=int, help='Number of departments')
@click.option('--customers', type=int, help='Number of customers')
@click.option('--documents', type=int, help='Number of documents')
@click.option('--max-levels', type=int, help='Maximum department tree depth')
@click.option('--max-members', type=int, help='Maximum members per department')
@click.option('--max-followers', type=int, help='Maximum followers per customer')
@click.option('--batch-size', type=int, help='Rows per load transaction')
@click.option('--seed', type=int, help='Random seed')
@click.option('--reset/--no-reset', default=True, help='Drop existing tables first')
@click.pass_context
def generate(
	ctx: click.Context,
	users: Optional[int],
	departments: Optional[int],
	customers: Optional[int],
	documents: Optional[int],
	max_levels: Optional[int],
	max_members: Optional[int],
	max_followers: Optional[int],
	batch_size: Optional[int],
	seed: Optional[int],
	reset: bool,
) -> None:
	"""Generate a corpus and load it into both engines."""
	try:
		config = CorpusConfig.from_settings(
			get_settings(),
			num_users=users,
			num_departments=departments,
			num_customers=customers,
			num_documents=documents,
			max_dept_levels=max_levels,
			max_dept_members=max_members,
			max_customer_followers=max_followers,
			batch_size=batch_size,
			seed=seed,
		)
	except ValueError as e:
		console.print(f"[red]Invalid corpus configuration:[/red] {e}")
		sys.exit(2)

	engine = create_db_engine(ctx.obj['db_url'])
	if reset:
		reset_db(engine)
	else:
		init_db(engine)
	session_factory = create_session_factory(engine)

	with console.status("[cyan]Generating corpus...", spinner="dots"):
		corpus = generate_corpus(config)
	with console.status("[cyan]Loading corpus...", spinner="dots"):
		try:
			summary = load_corpus(session_factory, corpus)
		except PermbenchError as e:
			console.print(f"[red]Load failed:[/red] {e}")
			sys.exit(1)

	table = Table(title="Loaded corpus")
	table.add_column("Table")
	table.add_column("Rows", justify="right")
	for name, count in summary.as_dict().items():
		table.add_row(name, str(count))
	console.print(table)


@main.command()
@click.option('--scenario', type=click.Choice([s.value for s in Scenario]), default=Scenario.CHECK.value)
@click.option('--warmup', type=int, help='Warm-up rounds per engine')
@click.option('--rounds', type=int, help='Measured rounds per engine')
@click.option('--concurrency', '-c', type=int, help='Concurrent workers')
@click.option('--timeout', type=float, help='Deadline per engine in seconds')
@click.option('--corpus-size', type=int, help='Distinct check requests')
@click.option('--mutation-rounds', type=int, help='Change/undo pairs per change kind in the mutation scenario')
@click.option('--batch-size', type=int, help='Documents per batch check')
@click.option('--seed', type=int, help='Request corpus seed')
@click.option('--output-dir', type=click.Path(file_okay=False, path_type=Path), help='Report directory')
@click.pass_context
def benchmark(
	ctx: click.Context,
	scenario: str,
	warmup: Optional[int],
	rounds: Optional[int],
	concurrency: Optional[int],
	timeout: Optional[float],
	corpus_size: Optional[int],
	mutation_rounds: Optional[int],
	batch_size: Optional[int],
	seed: Optional[int],
	output_dir: Optional[Path],
) -> None:
	"""Benchmark both engines on the loaded corpus."""
	settings = get_settings()
	try:
		config = BenchmarkConfig.from_settings(
			settings,
			scenario=Scenario(scenario),
			warmup_rounds=warmup,
			measured_rounds=rounds,
			concurrency=concurrency,
			timeout_seconds=timeout,
			corpus_size=corpus_size,
			mutation_rounds=mutation_rounds,
			check_batch_size=batch_size,
			seed=seed,
		)
	except ValueError as e:
		console.print(f"[red]Invalid benchmark configuration:[/red] {e}")
		sys.exit(2)

	_, session_factory = _session_factory(ctx.obj['db_url'])
	try:
		engines = list(build_engines(session_factory))
		reports = run_comparison(session_factory, engines, config)
	except PermbenchError as e:
		console.print(f"[red]Benchmark failed:[/red] {e}")
		sys.exit(1)

	display_reports(reports)
	json_path, csv_path = ReportWriter(output_dir or settings.output_dir).write(reports, config.scenario.value)
	console.print(f"Report: {json_path}\nSummary: {csv_path}")
	if any(report.mismatches for report in reports):
		console.print("[yellow]Warning:[/yellow] engines disagreed on some requests")


@main.command()
@click.option('--sample', type=int, help='Check requests to cross-check between engines')
@click.option('--strict', is_flag=True, help='Exit non-zero on any inconsistency')
@click.pass_context
def verify(ctx: click.Context, sample: Optional[int], strict: bool) -> None:
	"""Verify the flat ACL table and cross-check both engines."""
	settings = get_settings()
	_, session_factory = _session_factory(ctx.obj['db_url'])
	tuples, flat = build_engines(session_factory)

	with console.status("[cyan]Verifying flat ACL rows...", spinner="dots"):
		try:
			issues = flat.repository.verify(strict=strict)
		except ConsistencyError as e:
			console.print(f"[red]Consistency error:[/red] {e}")
			for issue in e.issues[:20]:
				console.print(f"  {issue}")
			sys.exit(1)

	if issues:
		console.print(f"[yellow]{len(issues)} flat ACL issues[/yellow]")
		for issue in issues[:20]:
			console.print(f"  {issue}")
	else:
		console.print("[green]Flat ACL rows match the relationships[/green]")

	config = BenchmarkConfig.from_settings(settings, corpus_size=sample or settings.cross_check_sample)
	requests = build_request_corpus(session_factory, config)
	checked, mismatches = cross_check([tuples, flat], requests, len(requests))
	if mismatches:
		console.print(f"[red]{len(mismatches)} of {checked} checks disagree[/red]")
		for mismatch in mismatches[:20]:
			console.print(f"  {mismatch}")
		if strict:
			sys.exit(1)
	else:
		console.print(f"[green]Engines agree on {checked} checks[/green]")


if __name__ == '__main__':
	main()
