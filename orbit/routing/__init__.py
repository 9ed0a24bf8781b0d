"""Routing module."""
from .delegation_router import DelegationRouter

__all__ = ['DelegationRouter']
