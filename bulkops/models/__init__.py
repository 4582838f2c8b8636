# models/__init__.py

from .job import (
    JobState,
    JobType,
    ControlAction,
    Outcome,
    UpdateType,
    ItemResult,
    StepOutcome,
    JobRecord,
    JobStatusView,
    UpdateEvent,
    DeletionItem,
    SubmitJobRequest,
    SubmitJobResponse,
    ControlRequest,
    TickResponse,
    TERMINAL_STATES,
    InvalidTransitionError,
    make_job_key,
    make_control_key,
    parse_email_list
)

__all__ = [
    'JobState',
    'JobType',
    'ControlAction',
    'Outcome',
    'UpdateType',
    'ItemResult',
    'StepOutcome',
    'JobRecord',
    'JobStatusView',
    'UpdateEvent',
    'DeletionItem',
    'SubmitJobRequest',
    'SubmitJobResponse',
    'ControlRequest',
    'TickResponse',
    'TERMINAL_STATES',
    'InvalidTransitionError',
    'make_job_key',
    'make_control_key',
    'parse_email_list'
]
