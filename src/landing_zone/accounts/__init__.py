"""Account inventory loading and lookup."""

from .directory import Account, AccountDirectory

__all__ = ['Account', 'AccountDirectory']
