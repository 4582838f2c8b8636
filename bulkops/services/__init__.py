# services/__init__.py

from .steps import StepRunner, build_step_executors
from .projects import ProjectRegistry
from .worker import JobWorker
from .tick_executor import TickExecutor
from .job_control import JobControlService

__all__ = ['StepRunner', 'build_step_executors', 'ProjectRegistry', 'JobWorker', 'TickExecutor', 'JobControlService']
