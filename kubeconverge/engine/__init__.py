"""Scheduling, convergence and run execution.

Submodules:
    retry        -- RetryPolicy (bounded exponential backoff).
    resolve      -- Reference substitution over resolved producer outputs.
    convergence  -- Per-resource create/update/replace decision and retries.
    scheduler    -- Event-driven DAG scheduler.
    run          -- ApplyRun and TeardownRun.
    engine       -- Engine facade (apply, destroy, preview).
"""

from kubeconverge.engine.convergence import ConvergenceError, ConvergenceLoop, ConvergenceOutcome, summarize
from kubeconverge.engine.engine import Engine
from kubeconverge.engine.retry import RetryPolicy
from kubeconverge.engine.run import ApplyRun, TeardownRun
from kubeconverge.engine.scheduler import DagScheduler, SchedulerHooks

__all__ = [
    "ApplyRun",
    "ConvergenceError",
    "ConvergenceLoop",
    "ConvergenceOutcome",
    "DagScheduler",
    "Engine",
    "RetryPolicy",
    "SchedulerHooks",
    "TeardownRun",
    "summarize",
]
