"""Models package."""

from .user import User
from .credit_account import CreditAccount
from .credit_transaction import CreditTransaction
from .project import GenerationProject
from .pipeline_execution import PipelineExecution
from .generation_result import GenerationResult
