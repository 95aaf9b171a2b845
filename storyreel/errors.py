"""
Error taxonomy for the generation pipeline.

  PreconditionFailure - a costed or dependent stage cannot start (no remote call made)
  ProviderFailure     - a remote provider explicitly reported failure
  TimeoutFailure      - polling ceiling reached, outcome unknown
  PersistenceFailure  - durable storage / record write failed
  RunCancelled        - the run's cancellation token fired
  RunConflict         - a run id is already registered

Components raise these unmodified; only the orchestrator turns them into a
FAILED run outcome.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every pipeline failure."""

    kind = "pipeline_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PreconditionFailure(PipelineError):
    """Raised before any remote call when a stage's precondition is not met."""

    kind = "precondition_failure"

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or reason)
        self.reason = reason


class ProviderFailure(PipelineError):
    """A remote generation job reported failure."""

    kind = "provider_failure"

    def __init__(self, message: str, provider: str = "", job_id: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.job_id = job_id


class TimeoutFailure(PipelineError):
    """Polling gave up before the remote job reached a terminal state."""

    kind = "timeout_failure"

    def __init__(self, message: str, job_id: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.job_id = job_id
        self.attempts = attempts


class PersistenceFailure(PipelineError):
    """Durable storage or record persistence failed."""

    kind = "persistence_failure"

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class RunCancelled(PipelineError):
    kind = "cancelled"

    def __init__(self, message: str = "Run cancelled"):
        super().__init__(message)


class RunConflict(PipelineError):
    """A run id was reused; ids identify exactly one run."""

    kind = "run_conflict"

    def __init__(self, run_id: str):
        super().__init__(f"Run already exists: {run_id}")
        self.run_id = run_id
