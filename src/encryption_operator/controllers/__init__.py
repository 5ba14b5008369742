"""Encryption controllers."""

from .base import BaseController
from .condition import ConditionController
from .key import KeyController
from .migration import MigrationController
from .prune import PruneController
from .state import StateController

__all__ = [
    "BaseController",
    "ConditionController",
    "KeyController",
    "MigrationController",
    "PruneController",
    "StateController",
]
