"""
Compose stacks: file storage, validation, the compose tool driver and the
service coordinating them with StackRecords.
"""

from stacks.compose_validator import ComposeValidationError, ComposeValidator
from stacks.stack_driver import StackContainer, StackDriver, reduce_stack_status
from stacks.stack_service import StackService
from stacks.stack_storage import StackStorage, validate_stack_name

__all__ = [
    'ComposeValidationError',
    'ComposeValidator',
    'StackContainer',
    'StackDriver',
    'StackService',
    'StackStorage',
    'reduce_stack_status',
    'validate_stack_name',
]
