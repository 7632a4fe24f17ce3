"""
Enforcement System Services

Deadline failure -> Consequence decision -> Idempotent execution
-> Exactly-once notification.

- UnitStateMachine: lifecycle of goals, checkpoints and submissions
- DeadlineMonitor: overdue detection, pending -> failed
- ConsequenceDecisionEngine: one record per (unit, stake kind), mercy gate
- ConsequenceExecutor: idempotent dispatch to collaborators, bounded retries
- NotificationQueue / ClientSession: exactly-once display across sessions
- PushChannel: advisory per-owner fan-out
"""

from .state_machine import UnitStateMachine, is_overdue
from .deadline_engine import DeadlineMonitor
from .decision_engine import ConsequenceDecisionEngine, StakeDecision
from .executor import ConsequenceExecutor, ExecutionOutcome, backoff_delay
from .notification_queue import NotificationQueue, ClientSession, ConsequenceNotification
from .push_channel import PushChannel, Subscription
from .workers import PeriodicWorker, start_workers, stop_workers
from .errors import (
    EnforcementError,
    InvalidTransitionError,
    UnitNotFailedError,
    RecordNotFoundError,
    NotificationNotShownError,
    CollaboratorError,
    RetryableCollaboratorError,
    PermanentCollaboratorError,
)

__all__ = [
    'UnitStateMachine',
    'is_overdue',
    'DeadlineMonitor',
    'ConsequenceDecisionEngine',
    'StakeDecision',
    'ConsequenceExecutor',
    'ExecutionOutcome',
    'backoff_delay',
    'NotificationQueue',
    'ClientSession',
    'ConsequenceNotification',
    'PushChannel',
    'Subscription',
    'PeriodicWorker',
    'start_workers',
    'stop_workers',
    # Errors
    'EnforcementError',
    'InvalidTransitionError',
    'UnitNotFailedError',
    'RecordNotFoundError',
    'NotificationNotShownError',
    'CollaboratorError',
    'RetryableCollaboratorError',
    'PermanentCollaboratorError',
]
