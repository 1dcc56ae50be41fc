"""
Pipeline execution engine for market data ingestion.

Modules:
    stages: Resumable stage machine (START → FETCH → TRANSFORM → IMPORT →
        POST_PROCESSING → FINISH) with durable stage/status
    windows: Fetch window planning and incremental range computation
    adapters: Source adapter contract (fetch/parse functions + limits)
    fetcher: Chunked fetch engine with retry, backoff and window shrinking
    journal: Append-only run audit log
    runner: Run creation and per-run stage handlers
    scheduler: APScheduler integration for periodic runs

Subpackages:
    extractors: Concrete source adapters and their registry
    transformers: Candidate normalization and validation
    loaders: Time-series store and the upsert/reconciliation engine

Architecture:
    The stage machine owns the run. Stage handlers receive a read-only
    context and return counts, which the machine folds into the run.

    1. FETCH - the chunked fetcher pulls provider-sized windows into a
       flat file, resuming from the latest stored observation
    2. IMPORT - the loader classifies every candidate as new, unchanged,
       changed or invalid and applies inserts/updates in batches

Usage:
    from core.database import async_session_maker
    from ingestion.runner import PipelineRunner

    runner = PipelineRunner(async_session_maker)
    run = await runner.run_pipeline(pipeline_id)
    print(run.stage, run.status, run.n_successful)

Error Handling:
    All components raise the exceptions of core.exceptions. A stage-ending
    exception marks the run FAILED and is written to the run's audit log.
"""
