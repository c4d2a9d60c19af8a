"""
Integration sync pipeline.

Stages talk only through the event bus and the store:

Modules:
    scheduler: polls the Job Store and dispatches due jobs
    jobs: job lifecycle (claim, fail, complete, continuation, recurrence)
    bus: topic-based publish/subscribe with wildcard subscriptions
    stage: shared stage boundary (error logging, failed events, job retry)
    ledger: per-run batch bookkeeping for stages that act once per run
    processor: normalize, hash and persist fetched pages
    sweeper: soft-delete entities a complete run no longer saw
    runner: wires every stage from one PipelineContext

Subpackages:
    adapters: sync driver and per-integration fetch strategies
    connectors: paginated HTTP clients
    transformers: per-integration record normalizers
    linkers: relationship driver and match strategies
    analyzers: analyzer worker, analyzers and the alert manager

Usage:
    from pipeline.runner import PipelineRunner, build_context
    runner = PipelineRunner(build_context(settings))
    runner.start()
"""
