"""Repositories backing the checkpoint and projection stores."""

from .base import BaseRepository
from .checkpoint_repository import CheckpointRepository
from .projection_repository import ProjectionRepository

__all__ = [
    "BaseRepository",
    "CheckpointRepository",
    "ProjectionRepository",
]
