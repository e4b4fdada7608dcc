"""Screen capture pipeline: job model, orchestration, pool and history."""
