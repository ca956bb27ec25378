"""
Taskhive

Coordination core for a distributed agent-task platform: claim pending
tasks for runners, materialize tasks from cron schedules and external
triggers, and drive worker sessions through follow-ups and resumes.
"""

__version__ = "0.1.0"

# Claims
from taskhive.claims import ClaimRequest, ClaimResult, EnvironmentInventory, claim_tasks

# Configuration
from taskhive.config import Settings

# Errors
from taskhive.errors import (
    AuthenticationError,
    CapacityExceededError,
    NotFoundError,
    QuotaExceededError,
    TaskhiveError,
    ValidationFailedError,
)

# Live input
from taskhive.message_queue import MessageStream

# Models
from taskhive.models import Account, Task, TaskSchedule, Worker, Workspace

# Resume
from taskhive.resume import ResumeStrategy, build_reconstructed_prompt, choose_resume_strategy

# Scheduling
from taskhive.scheduler import TickResult, run_schedule_tick

# Sessions
from taskhive.session_client import AgentSessionClient, SessionEvent, SessionRequest
from taskhive.workers import WorkerManager

__all__ = [
    # Version
    "__version__",
    # Models
    "Account",
    "Workspace",
    "Task",
    "Worker",
    "TaskSchedule",
    # Config
    "Settings",
    # Claims
    "ClaimRequest",
    "ClaimResult",
    "EnvironmentInventory",
    "claim_tasks",
    # Scheduling
    "TickResult",
    "run_schedule_tick",
    # Sessions
    "AgentSessionClient",
    "SessionEvent",
    "SessionRequest",
    "WorkerManager",
    "MessageStream",
    "ResumeStrategy",
    "build_reconstructed_prompt",
    "choose_resume_strategy",
    # Errors
    "TaskhiveError",
    "AuthenticationError",
    "ValidationFailedError",
    "NotFoundError",
    "CapacityExceededError",
    "QuotaExceededError",
]
