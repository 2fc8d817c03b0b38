# (c) Copyright Datacraft, 2026
"""Benchmark report files.

JSON holds the full records; the CSV next to it carries the numeric columns
one row per engine per scenario.
"""
import csv
import json
import logging
from datetime import datetime
from pathlib import Path

from .models import EngineReport

logger = logging.getLogger(__name__)

CSV_FIELDS = [
	'engine', 'scenario', 'operation', 'warmup_rounds', 'measured_rounds', 'concurrency',
	'completed', 'errors', 'deadline_exceeded',
	'mean', 'p50', 'p95', 'p99', 'min', 'max', 'throughput',
	'mismatches', 'rows_touched', 'stored_records', 'wall_seconds',
]


class ReportWriter:

	def __init__(self, output_dir: Path | str):
		self.output_dir = Path(output_dir)

	def write(
		self,
		reports: list[EngineReport],
		label: str,
		timestamp: datetime | None = None,
	) -> tuple[Path, Path]:
		"""Write ``benchmark_<label>_<timestamp>.json`` and ``.csv``; returns both paths."""
		self.output_dir.mkdir(parents=True, exist_ok=True)
		stamp = (timestamp or datetime.now()).strftime("%Y%m%d_%H%M%S")
		base = self.output_dir / f"benchmark_{label}_{stamp}"
		json_path = base.with_suffix(".json")
		csv_path = base.with_suffix(".csv")

		json_path.write_text(json.dumps(
			[report.model_dump(mode="json") for report in reports],
			indent=2,
		))

		with csv_path.open("w", newline="") as f:
			writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
			writer.writeheader()
			for report in reports:
				writer.writerow(csv_row(report))

		logger.info(f"Wrote benchmark report {json_path} and {csv_path}")
		return json_path, csv_path


def csv_row(report: EngineReport) -> dict:
	row = report.model_dump(mode="json", exclude={'latency', 'mismatch_samples', 'storage', 'started_at'})
	row.update(report.latency.model_dump())
	return {name: row.get(name) for name in CSV_FIELDS}
