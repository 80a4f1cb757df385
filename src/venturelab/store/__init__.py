"""Persistence for runs, hypotheses and input resources."""

from .protocol import PipelineStore
from .sqlite import RunStore

__all__ = ["PipelineStore", "RunStore"]
