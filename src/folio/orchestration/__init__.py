"""Orchestration package."""

from .session import EXECUTIONS_REQ_ID, BrokerSession

__all__ = ["BrokerSession", "EXECUTIONS_REQ_ID"]
