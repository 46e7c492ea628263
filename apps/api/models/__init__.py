"""Models package."""

from .account import Account
from .transaction import Transaction
from .generation_job import GenerationJob
