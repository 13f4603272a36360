"""
bewhere_pipeline — ETL framework and dataset pipelines for the bewhere platform.

Architecture:
  core/        — Extractor / Transformer / Loader contracts and the Pipeline runner
  pipelines/   — dataset plugins (départements, population, monthly crime) and the registry
  utils/       — structlog configuration, retry, cached fetcher, run logger, validation
  orchestrator — dependency-ordered multi-dataset runs and run history
  cli          — `bewhere-etl` click entry point

Quick start:
    import asyncio
    from bewhere_shared.db import Database
    from bewhere_pipeline.orchestrator import Orchestrator

    with Database() as db:
        results = asyncio.run(Orchestrator(db).run_all(dry_run=True))

CLI:
    bewhere-etl run --all --dry-run
    bewhere-etl run --dataset departements
    bewhere-etl status --limit 5
"""

__version__ = "0.1.0"
