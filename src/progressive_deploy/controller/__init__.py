"""Controller: work queue and the operator worker loop."""

from progressive_deploy.controller.manager import Operator
from progressive_deploy.controller.queue import ShutDown, WorkQueue

__all__ = [
    "Operator",
    "ShutDown",
    "WorkQueue",
]
