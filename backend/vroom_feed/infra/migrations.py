"""Apply the SQL files under ``backend/migrations`` in version order."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from vroom_feed.infra import postgres

_LOG = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"


async def apply_migrations(conn, directory: Optional[Path] = None) -> list[str]:
	"""Run every migration not yet recorded in ``schema_migrations``; returns applied versions."""
	paths = sorted((directory or MIGRATIONS_DIR).glob("*.sql"))
	await conn.execute(
		"""
		CREATE TABLE IF NOT EXISTS schema_migrations (
			version TEXT PRIMARY KEY,
			applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
		)
		"""
	)
	rows = await conn.fetch("SELECT version FROM schema_migrations")
	done = {row["version"] for row in rows}
	applied: list[str] = []
	for path in paths:
		version = path.name.split("_", 1)[0]
		if version in done:
			continue
		async with conn.transaction():
			await conn.execute(path.read_text())
			await conn.execute(
				"INSERT INTO schema_migrations (version) VALUES ($1) ON CONFLICT (version) DO NOTHING",
				version,
			)
		_LOG.info("migrations.applied", extra={"migration_file": path.name})
		applied.append(version)
	return applied


async def main() -> None:
	pool = await postgres.init_pool()
	try:
		async with pool.acquire() as conn:
			await apply_migrations(conn)
	finally:
		await postgres.close_pool()


if __name__ == "__main__":
	asyncio.run(main())
